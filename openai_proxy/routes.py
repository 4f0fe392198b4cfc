from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse

from openai_proxy.proxy.forwarder import RequestForwarder

router = APIRouter()

HEALTH_MESSAGE = "Azure OpenAI Proxy is running."
PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]


def get_forwarder(request: Request) -> RequestForwarder:
    return request.app.state.forwarder


@router.get("/", response_class=PlainTextResponse)
async def health() -> str:
    return HEALTH_MESSAGE


# Registered last so it only catches what the routes above don't
@router.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
async def proxy_all(
    request: Request,
    path: str,
    forwarder: RequestForwarder = Depends(get_forwarder),
):
    """Catch-all route that forwards every request to the upstream."""
    return await forwarder.forward(request)
