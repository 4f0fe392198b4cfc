import logging
from contextlib import contextmanager
from typing import Dict, Optional

from opentelemetry.trace import Tracer

logger = logging.getLogger("uvicorn.error")


@contextmanager
def traced_request(
    tracer: Tracer,
    operation: str,
    start_message: str,
    extra_attrs: Optional[Dict] = None,
):
    """Context manager to create a span, set common attributes, and log a start message."""
    with tracer.start_as_current_span(operation) as span:
        for key, value in (extra_attrs or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        logger.debug(start_message)
        yield span
