"""Request context middleware for correlation and logging."""
import time
import uuid
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from loguru import logger

from src.rollout.core.logging import request_correlation_id
from src.rollout.monitoring.tracing import get_current_span, record_exception, set_span_attributes

CORRELATION_HEADER = "X-Correlation-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Adds a correlation id to every request and rejects work during shutdown."""

    async def dispatch(self, request: Request, call_next):
        if getattr(request.app.state, "shutting_down", False):
            logger.warning(f"⚠️  Rejecting {request.method} {request.url.path} during shutdown")
            return JSONResponse(
                status_code=503,
                content={"detail": "Service is shutting down", "error": "ShuttingDown"},
            )

        start_time = time.time()
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        token = request_correlation_id.set(correlation_id)

        span = get_current_span()
        set_span_attributes(
            span,
            correlation_id=correlation_id,
            http_method=request.method,
            http_path=request.url.path,
        )
        request.state.correlation_id = correlation_id

        logger.debug(f"➡️  {request.method} {request.url.path}")

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"❌ {request.method} {request.url.path} failed: {e}")
            record_exception(span, e)
            raise
        finally:
            request_correlation_id.reset(token)

        latency_ms = round((time.time() - start_time) * 1000, 2)
        set_span_attributes(span, http_status_code=response.status_code, http_response_time_ms=latency_ms)

        log = logger.warning if response.status_code >= 400 else logger.info
        log(
            f"{request.method} {request.url.path} → {response.status_code}",
            extra={
                "correlation_id": correlation_id,
                "latency_ms": latency_ms,
                "status_code": response.status_code,
            }
        )

        response.headers[CORRELATION_HEADER] = correlation_id
        response.headers["X-Process-Time"] = f"{latency_ms / 1000:.4f}"
        return response
