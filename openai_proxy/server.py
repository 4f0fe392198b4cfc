import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional, Sequence

import httpx
import uvicorn
from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SpanExporter,
    SpanExportResult,
)
from prometheus_client import Info
from prometheus_fastapi_instrumentator import Instrumentator

from openai_proxy import vars as proxy_vars
from openai_proxy.oauth.credentials import TokenProvider, TokenProviderFactory
from openai_proxy.proxy.forwarder import RequestForwarder, create_upstream_client
from openai_proxy.routes import router
from openai_proxy.vars import ConfigurationError, Settings, load_settings

logger = logging.getLogger("uvicorn.error")

app_info = Info("fastapi_app_info", "Application Info")

# Per-chunk ASGI events; a streamed completion produces hundreds of them
_NOISY_ASGI_EVENTS = {"http.request", "http.response.body"}


class FilteringSpanExporter(SpanExporter):
    """
    Wrapper exporter that filters out the ASGI body spans produced for every
    chunk of a streamed request or response body.
    """

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        filtered_spans = [
            span
            for span in spans
            if not (
                span.attributes
                and span.attributes.get("asgi.event.type") in _NOISY_ASGI_EVENTS
            )
        ]
        if filtered_spans:
            return self.exporter.export(filtered_spans)
        return SpanExportResult.SUCCESS

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


def configure_tracing() -> None:
    """Install the process-wide tracer provider, exporting via OTLP if configured."""
    tracer_provider = TracerProvider(
        resource=Resource.create({"service.name": proxy_vars.SERVICE_NAME})
    )
    if proxy_vars.OTLP_ENDPOINT:
        # "k1=v1,k2=v2" is parsed into metadata pairs by the exporter
        otlp_exporter = OTLPSpanExporter(
            endpoint=proxy_vars.OTLP_ENDPOINT,
            headers=proxy_vars.OTLP_HEADERS or None,
        )
        tracer_provider.add_span_processor(
            BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
        )
    trace.set_tracer_provider(tracer_provider)


def create_app(
    settings: Optional[Settings] = None,
    token_provider: Optional[TokenProvider] = None,
    client: Optional[httpx.AsyncClient] = None,
    instrument: bool = True,
) -> FastAPI:
    """
    Build the proxy application. The token provider and upstream client are
    created once here and shared by every request.
    """
    settings = settings or load_settings()
    token_provider = token_provider or TokenProviderFactory().get()
    client = client or create_upstream_client(settings.timeout)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        await client.aclose()
        await token_provider.aclose()

    # Docs routes would shadow upstream paths of the same name
    app = FastAPI(
        title="Azure OpenAI Proxy",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.forwarder = RequestForwarder(
        client, settings.upstream_base, token_provider
    )

    if instrument:
        instrumentator = Instrumentator().instrument(app)
        # Must be registered before the catch-all route or it gets forwarded
        if proxy_vars.METRICS_PATH:
            instrumentator.expose(app, endpoint=proxy_vars.METRICS_PATH)
        FastAPIInstrumentor.instrument_app(app)

    app.include_router(router)
    return app


def main() -> None:
    logging.basicConfig(
        level=proxy_vars.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s :: %(message)s",
        stream=sys.stdout,
    )
    try:
        settings = load_settings()
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        raise SystemExit(1)

    logger.info(f"Using OpenAI at: {settings.upstream_base}")

    configure_tracing()
    app_info.info({"app_name": proxy_vars.SERVICE_NAME})
    app = create_app(settings)

    logger.info(f"Azure OpenAI proxy listening on port {settings.port}")
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=proxy_vars.LOG_LEVEL.lower(),
    )
