"""Structured JSON logging with trace correlation."""
import sys
import json
import logging
from contextvars import ContextVar
from loguru import logger as loguru_logger
from opentelemetry import trace

from src.rollout.core.config import settings

# X-Correlation-ID of the request being served, set by RequestContextMiddleware
request_correlation_id: ContextVar[str] = ContextVar("request_correlation_id", default="")


def get_trace_id() -> str:
    """Get the OpenTelemetry trace ID.

    Outside a recording span (tracing off, background progress driver) the
    request correlation id stands in so log lines can still be joined.
    """
    span = trace.get_current_span()
    if span and span.is_recording():
        span_context = span.get_span_context()
        if span_context.is_valid:
            return format(span_context.trace_id, "032x")

    return request_correlation_id.get() or "no-trace"


class InterceptHandler(logging.Handler):
    """Intercept standard logging and redirect to loguru."""

    def emit(self, record):
        try:
            level = loguru_logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        loguru_logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def json_formatter(record) -> str:
    """Format a loguru record as one JSON line.

    Deployment context bound with ``logger.bind(deployment_id=...)`` ends up
    in ``extra`` and is merged into the entry.
    """
    log_entry = {
        "timestamp": record["time"].strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
        "level": record["level"].name,
        "message": record["message"],
        "trace_id": get_trace_id(),
        "correlation_id": request_correlation_id.get() or None,
        "service": settings.PROJECT_NAME,
        "module": record["name"],
        "function": record["function"],
        "line": record["line"],
    }

    if record["exception"]:
        exc = record["exception"]
        log_entry["exception"] = {
            "type": exc.type.__name__ if exc.type else "Unknown",
            "value": str(exc.value) if exc.value else "",
        }

    if record["extra"]:
        log_entry.update({k: str(v) for k, v in record["extra"].items()})

    # loguru treats the returned string as a template, so braces are escaped
    return json.dumps(log_entry).replace("{", "{{").replace("}", "}}") + "\n"


def setup_logging():
    """Setup structured JSON logging for production."""
    log_level = "DEBUG" if settings.DEBUG else "INFO"

    loguru_logger.remove()

    if settings.ENV == "production":
        loguru_logger.add(
            sys.stderr,
            format=json_formatter,
            level=log_level,
            serialize=False,
        )
    else:
        loguru_logger.add(
            sys.stderr,
            format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
            level=log_level,
            colorize=True,
        )

    # Intercept standard logging (uvicorn, fastapi, httpx)
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for logger_name in ["uvicorn", "uvicorn.access", "uvicorn.error", "fastapi", "httpx"]:
        logging.getLogger(logger_name).handlers = [InterceptHandler()]
