"""Main FastAPI application."""
import asyncio
import signal
import threading
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from src.rollout.core.config import settings
from src.rollout.core.errors import (
    InvalidStateError,
    NotFoundError,
    RolloutError,
    TrafficShiftError,
    ValidationError,
)
from src.rollout.core.middleware import RequestContextMiddleware
from src.rollout.monitoring.metrics import PrometheusMiddleware, metrics_endpoint
from src.rollout.monitoring.tracing import setup_tracing
from src.rollout.api import api_router
from src.rollout.api.health import router as health_router
from src.rollout.services.container import RolloutServices, build_services
from src.rollout.core.limiter import limiter
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from src.rollout.core.logging import setup_logging

# Global shutdown event
shutdown_event = asyncio.Event()

ERROR_STATUS = {
    ValidationError: 422,
    NotFoundError: 404,
    InvalidStateError: 409,
    TrafficShiftError: 502,
}


async def rollout_error_handler(request: Request, exc: RolloutError) -> JSONResponse:
    """Map domain errors to HTTP responses naming the violated rule."""
    status_code = next(
        (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
        500,
    )
    logger.warning(f"{request.method} {request.url.path} rejected: {type(exc).__name__}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


def create_app(services: Optional[RolloutServices] = None) -> FastAPI:
    """Create FastAPI application with all middleware and routes.

    Args:
        services: Pre-built service graph (tests); built from settings otherwise
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle: startup and graceful shutdown."""
        logger.info(f"🚀 Starting {settings.PROJECT_NAME} v{settings.VERSION}")

        owned = services is None
        app.state.services = services or build_services(settings)

        # Register signal handlers for graceful shutdown
        def shutdown_handler(signum, frame):
            logger.warning(f"⚠️  Received signal {signum}, initiating graceful shutdown...")
            app.state.shutting_down = True
            shutdown_event.set()

        # signal.signal only works from the main thread (not under TestClient)
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGTERM, shutdown_handler)
            signal.signal(signal.SIGINT, shutdown_handler)

        logger.info("✅ Service is ready to accept requests")

        yield

        logger.info("🛑 Shutting down gracefully...")
        if settings.SHUTDOWN_GRACE_SECONDS > 0:
            await asyncio.sleep(settings.SHUTDOWN_GRACE_SECONDS)  # Allow inflight requests to complete
        if owned:
            await app.state.services.close()
        logger.info("✅ Shutdown complete")

    # Setup structured logging
    setup_logging()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        lifespan=lifespan,
    )

    # Initialize state
    app.state.shutting_down = False
    app.state.services = services

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(RolloutError, rollout_error_handler)

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(PrometheusMiddleware)

    # Setup distributed tracing
    setup_tracing(app)

    # Include routers
    app.include_router(health_router, prefix="/api", tags=["health"])
    app.include_router(api_router, prefix=settings.API_V1_STR)

    # Prometheus metrics endpoint
    app.add_route("/metrics", metrics_endpoint)

    logger.info("📦 Application configured successfully")

    return app


app = create_app()
