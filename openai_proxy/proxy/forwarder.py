import logging
from typing import List, Optional, Tuple
from urllib.parse import quote

import httpx
from fastapi import Request, Response
from opentelemetry import trace
from starlette.requests import ClientDisconnect

from openai_proxy.oauth.credentials import TokenProvider
from openai_proxy.proxy.headers import build_outbound_headers
from openai_proxy.proxy.relay import (
    CREDENTIALS_FAILED_MESSAGE,
    forwarding_failed_response,
    relay_response,
)
from openai_proxy.utils.exception_logging import log_exception_with_details
from openai_proxy.utils.traced_requests import traced_request

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

# httpx adds these to every request; the upstream should only see what the
# caller sent, otherwise it may e.g. compress a body the caller cannot decode.
_CLIENT_DEFAULT_HEADERS = ("accept", "accept-encoding", "user-agent")


def create_upstream_client(
    timeout: Optional[float] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Shared client for all upstream calls; ``None`` disables httpx timeouts."""
    client = httpx.AsyncClient(
        timeout=httpx.Timeout(timeout),
        follow_redirects=False,
        transport=transport,
    )
    for name in _CLIENT_DEFAULT_HEADERS:
        client.headers.pop(name, None)
    return client


def resolve_target_url(upstream_base: httpx.URL, request: Request) -> httpx.URL:
    """
    Keep the upstream's scheme, host and port and take the path and query
    string from the inbound request, byte for byte.
    """
    raw_path = request.scope.get("raw_path") or quote(request.url.path).encode("ascii")
    raw_path = raw_path.split(b"?", 1)[0]
    query_string = request.scope.get("query_string") or b""
    if query_string:
        raw_path = raw_path + b"?" + query_string
    return upstream_base.copy_with(raw_path=raw_path)


def outbound_raw_headers(
    request: Request, token: str, target_url: httpx.URL
) -> List[Tuple[bytes, bytes]]:
    """
    Outbound headers as byte pairs. Header bytes are latin-1 on both sides,
    httpx would encode ``str`` values as ASCII and reject bytes >= 0x80.
    """
    pairs = [
        (name.decode("latin-1"), value.decode("latin-1"))
        for name, value in request.headers.raw
    ]
    return [
        (name.encode("latin-1"), value.encode("latin-1"))
        for name, value in build_outbound_headers(
            pairs, token, target_url.netloc.decode("ascii")
        )
    ]


def _has_body(request: Request) -> bool:
    return "content-length" in request.headers or "transfer-encoding" in request.headers


class RequestForwarder:
    """Forwards inbound requests to one upstream, authenticating as the proxy."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        upstream_base: httpx.URL,
        token_provider: TokenProvider,
    ):
        self.client = client
        self.upstream_base = upstream_base
        self.token_provider = token_provider

    async def forward(self, request: Request) -> Response:
        target_url = resolve_target_url(self.upstream_base, request)

        with traced_request(
            tracer,
            "proxy_request",
            f"Proxying {request.method} {request.url.path} -> {target_url}",
            {"proxy.target_url": str(target_url), "proxy.method": request.method},
        ) as span:
            try:
                token = await self.token_provider.get_token()
            except Exception as e:
                log_exception_with_details(
                    logger, "[Proxy] Could not obtain upstream token;", e
                )
                span.set_attribute("proxy.error", "credential")
                return forwarding_failed_response(CREDENTIALS_FAILED_MESSAGE)

            headers = outbound_raw_headers(request, token, target_url)
            upstream_request = self.client.build_request(
                request.method,
                target_url,
                headers=headers,
                content=request.stream() if _has_body(request) else None,
            )

            try:
                upstream_response = await self.client.send(upstream_request, stream=True)
            except httpx.HTTPError as e:
                log_exception_with_details(
                    logger,
                    f"[Proxy] Forwarding {request.method} to {target_url} failed;",
                    e,
                )
                span.set_attribute("proxy.error", type(e).__name__)
                return forwarding_failed_response()
            except ClientDisconnect:
                logger.info(
                    f"[Proxy] Client disconnected while sending the body for {target_url}"
                )
                span.set_attribute("proxy.error", "client_disconnect")
                return forwarding_failed_response()

            span.set_attribute("proxy.status_code", upstream_response.status_code)
            return relay_response(upstream_response)
