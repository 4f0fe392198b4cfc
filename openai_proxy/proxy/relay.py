import logging
from typing import AsyncIterator, List, Tuple

import httpx
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from openai_proxy.proxy.headers import sanitize_headers
from openai_proxy.utils.exception_logging import log_exception_with_details

logger = logging.getLogger("uvicorn.error")

FORWARDING_FAILED_MESSAGE = "Failed to forward request to Azure OpenAI."
CREDENTIALS_FAILED_MESSAGE = "Failed to acquire credentials for Azure OpenAI."


def relay_headers(upstream_response: httpx.Response) -> List[Tuple[bytes, bytes]]:
    """Sanitized upstream headers as raw ASGI header pairs, duplicates preserved."""
    pairs = [
        (name.decode("latin-1"), value.decode("latin-1"))
        for name, value in upstream_response.headers.raw
    ]
    return [
        (name.encode("latin-1"), value.encode("latin-1"))
        for name, value in sanitize_headers(pairs)
    ]


async def stream_upstream_body(upstream_response: httpx.Response) -> AsyncIterator[bytes]:
    """
    Pipe the upstream body chunk by chunk. Raw bytes are relayed so any
    content-encoding stays consistent with the relayed headers.
    """
    try:
        async for chunk in upstream_response.aiter_raw():
            yield chunk
    except httpx.HTTPError as e:
        # Status and headers are already on the wire, the only option left is
        # to abort the downstream connection.
        log_exception_with_details(
            logger, "[Proxy] Upstream body stream failed;", e
        )
        raise
    finally:
        await upstream_response.aclose()


def relay_response(upstream_response: httpx.Response) -> StreamingResponse:
    """Mirror an upstream response downstream without buffering its body."""
    response = StreamingResponse(
        stream_upstream_body(upstream_response),
        status_code=upstream_response.status_code or 502,
        # Covers a downstream disconnect before the body iterator was started
        background=BackgroundTask(upstream_response.aclose),
    )
    response.raw_headers = relay_headers(upstream_response)
    return response


def forwarding_failed_response(message: str = FORWARDING_FAILED_MESSAGE) -> JSONResponse:
    """
    Terminal 502 for failures before anything was sent downstream. The
    connection is closed afterwards since the inbound body may be half read.
    """
    return JSONResponse(
        status_code=502,
        content={"error": message},
        headers={"connection": "close"},
    )
