"""
Exception logging helpers that unpack exception groups.

Streaming responses run inside anyio task groups, so a failing upstream pipe
often surfaces as an ExceptionGroup wrapping the actual httpx error.
"""

import logging
from typing import List


def _safe_str(obj) -> str:
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return f"<{type(obj).__name__} (string conversion failed)>"


def _sub_exceptions(exception: BaseException) -> List[BaseException]:
    try:
        return list(getattr(exception, "exceptions", None) or [])
    except Exception:
        return []


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: BaseException,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception with its traceback. Exception groups get one line for the
    group and one line (with traceback) per sub-exception.

    Never raises; a failing logger must not take the request path down with it.
    """
    try:
        sub_exceptions = _sub_exceptions(exception)
        if not sub_exceptions:
            logger.log(
                level, f"{prefix} Exception: {_safe_str(exception)}", exc_info=exception
            )
            return

        logger.log(
            level,
            f"{prefix} Exception with {len(sub_exceptions)} sub-exceptions: "
            f"{_safe_str(exception)}",
        )
        for i, sub_exc in enumerate(sub_exceptions):
            logger.log(
                level,
                f"{prefix} Sub-exception {i + 1}: {type(sub_exc).__name__}: "
                f"{_safe_str(sub_exc)}",
                exc_info=sub_exc,
            )
    except Exception:
        try:
            logger.log(logging.ERROR, f"{prefix} Exception (logging failed)")
        except Exception:
            pass
