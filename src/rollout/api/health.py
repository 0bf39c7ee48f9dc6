"""Health check endpoints."""
import pybreaker
from fastapi import APIRouter, Request, Response, status
from prometheus_client import Gauge
from loguru import logger

from src.rollout.core.config import settings
from src.rollout.core.circuit_breaker import metrics_breaker
from src.rollout.models.schemas import HealthResponse

router = APIRouter()

SERVICE_READY = Gauge("service_ready", "Service readiness: 1=ready, 0=not ready")


@router.get("/healthz", status_code=status.HTTP_200_OK, response_model=HealthResponse)
async def healthz():
    """Liveness check: is the process alive?"""
    return HealthResponse(
        status="ok",
        version=settings.VERSION,
        service=settings.PROJECT_NAME,
    )


@router.get("/ready", status_code=status.HTTP_200_OK)
async def ready(request: Request, response: Response):
    """
    Readiness check: is the service ready to receive traffic?

    Checks:
    - Controller services wired
    - Metrics gateway circuit breaker not open
    """
    checks = {
        "services_ready": getattr(request.app.state, "services", None) is not None,
        "metrics_circuit_closed": metrics_breaker.current_state != pybreaker.STATE_OPEN,
    }

    is_ready = all(checks.values())
    SERVICE_READY.set(1 if is_ready else 0)

    if not is_ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        logger.warning(f"Service NOT READY: {checks}")
        return {
            "status": "not_ready",
            "checks": checks,
            "circuit_state": metrics_breaker.current_state,
        }

    return {
        "status": "ready",
        "checks": checks,
    }
