from typing import Awaitable, Callable, List, Optional

import httpx

Handler = Callable[[httpx.Request, bytes], Awaitable[httpx.Response]]


async def echo_handler(request: httpx.Request, body: bytes) -> httpx.Response:
    """Reply with the method, URL, header list and body the upstream received."""
    return httpx.Response(
        200,
        json={
            "method": request.method,
            "url": str(request.url),
            "headers": [[name, value] for name, value in request.headers.multi_items()],
            "body": body.decode("utf-8"),
        },
    )


class RecordingTransport(httpx.AsyncBaseTransport):
    """
    Stub upstream for an httpx.AsyncClient.

    Unlike httpx.MockTransport it consumes the request body chunk by chunk,
    so tests can observe how the proxy streams it.
    """

    def __init__(
        self,
        handler: Handler = echo_handler,
        error: Optional[Exception] = None,
        on_chunk: Optional[Callable[[bytes], None]] = None,
    ):
        self.handler = handler
        self.error = error
        self.on_chunk = on_chunk
        self.requests: List[httpx.Request] = []
        self.chunks: List[bytes] = []
        self.responses: List[httpx.Response] = []

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error

        received = []
        async for chunk in request.stream:
            if chunk:
                received.append(chunk)
                self.chunks.append(chunk)
                if self.on_chunk:
                    self.on_chunk(chunk)

        response = await self.handler(request, b"".join(received))
        self.responses.append(response)
        if not response.is_stream_consumed:
            return response
        # Transports hand back an unread stream, as a real httpcore response does.
        return httpx.Response(
            response.status_code,
            headers=response.headers.raw,
            stream=httpx.ByteStream(response.content),
            request=request,
        )
