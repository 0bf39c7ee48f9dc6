"""Deployment lifecycle endpoints with distributed tracing."""
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from loguru import logger

from src.rollout.core.config import settings
from src.rollout.core.limiter import MUTATION_LIMIT, limiter
from src.rollout.deployment.controller import LifecycleController
from src.rollout.deployment.models import DeploymentStatus
from src.rollout.models.schemas import CompleteRollbackRequest, DeploymentCreate, RollbackRequest
from src.rollout.monitoring.tracing import set_span_attributes, tracer
from src.rollout.services.container import get_controller

router = APIRouter()


@router.post("/deployments", status_code=status.HTTP_201_CREATED)
@limiter.limit(MUTATION_LIMIT)
async def create_deployment(
    request: Request,
    body: DeploymentCreate,
    controller: LifecycleController = Depends(get_controller),
):
    deployment = await controller.create(body.to_domain())
    return deployment.to_dict()


@router.get("/deployments")
async def list_deployments(
    status_filter: Optional[DeploymentStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=settings.DEFAULT_LIST_LIMIT, ge=1, le=500),
    controller: LifecycleController = Depends(get_controller),
):
    deployments = await controller.list(status=status_filter, limit=limit)
    return [d.to_dict() for d in deployments]


@router.get("/deployments/{deployment_id}")
async def get_deployment(deployment_id: int, controller: LifecycleController = Depends(get_controller)):
    return (await controller.get(deployment_id)).to_dict()


@router.post("/deployments/{deployment_id}/start")
@limiter.limit(MUTATION_LIMIT)
async def start_deployment(
    request: Request,
    deployment_id: int,
    controller: LifecycleController = Depends(get_controller),
):
    return (await controller.start(deployment_id)).to_dict()


@router.post("/deployments/{deployment_id}/progress")
@limiter.limit(MUTATION_LIMIT)
async def progress_deployment(
    request: Request,
    deployment_id: int,
    controller: LifecycleController = Depends(get_controller),
):
    """
    Evaluate canary health and take at most one step.

    Safe to call on a timer: calls before the increment interval has elapsed
    return ``outcome: not_due`` without evaluating metrics.
    """
    with tracer.start_as_current_span("progress_endpoint") as span:
        result = await controller.progress(deployment_id)
        set_span_attributes(span, deployment_id=deployment_id, outcome=result.outcome.value)
        logger.info(
            f"Progress of deployment {deployment_id}: {result.outcome.value}",
            extra={
                "deployment_id": deployment_id,
                "outcome": result.outcome.value,
                "canary_percent": result.deployment.current_canary_percent,
            }
        )
        return result.to_dict()


@router.post("/deployments/{deployment_id}/pause")
@limiter.limit(MUTATION_LIMIT)
async def pause_deployment(
    request: Request,
    deployment_id: int,
    controller: LifecycleController = Depends(get_controller),
):
    return (await controller.pause(deployment_id)).to_dict()


@router.post("/deployments/{deployment_id}/resume")
@limiter.limit(MUTATION_LIMIT)
async def resume_deployment(
    request: Request,
    deployment_id: int,
    controller: LifecycleController = Depends(get_controller),
):
    return (await controller.resume(deployment_id)).to_dict()


@router.post("/deployments/{deployment_id}/promote")
@limiter.limit(MUTATION_LIMIT)
async def promote_deployment(
    request: Request,
    deployment_id: int,
    controller: LifecycleController = Depends(get_controller),
):
    return (await controller.promote(deployment_id)).to_dict()


@router.post("/deployments/{deployment_id}/cancel")
@limiter.limit(MUTATION_LIMIT)
async def cancel_deployment(
    request: Request,
    deployment_id: int,
    controller: LifecycleController = Depends(get_controller),
):
    return (await controller.cancel(deployment_id)).to_dict()


@router.post("/deployments/{deployment_id}/rollback", status_code=status.HTTP_201_CREATED)
@limiter.limit(MUTATION_LIMIT)
async def rollback_deployment(
    request: Request,
    deployment_id: int,
    body: Optional[RollbackRequest] = None,
    controller: LifecycleController = Depends(get_controller),
):
    body = body or RollbackRequest()
    record = await controller.rollback(deployment_id, body.reason, initiated_by=body.initiated_by)
    return record.to_dict()


@router.post("/deployments/{deployment_id}/approval-timeout")
@limiter.limit(MUTATION_LIMIT)
async def check_approval_timeout(
    request: Request,
    deployment_id: int,
    controller: LifecycleController = Depends(get_controller),
):
    record = await controller.check_approval_timeout(deployment_id)
    return {"rolled_back": record is not None, "rollback": record.to_dict() if record else None}


@router.get("/deployments/{deployment_id}/steps")
async def get_steps(deployment_id: int, controller: LifecycleController = Depends(get_controller)):
    return [step.to_dict() for step in await controller.get_steps(deployment_id)]


@router.get("/deployments/{deployment_id}/metrics")
async def get_metrics(
    deployment_id: int,
    limit: int = Query(default=100, ge=1, le=1000),
    controller: LifecycleController = Depends(get_controller),
):
    return [s.to_dict() for s in await controller.get_metrics(deployment_id, limit=limit)]


@router.get("/deployments/{deployment_id}/analysis")
async def analyze_deployment(deployment_id: int, controller: LifecycleController = Depends(get_controller)):
    """Current health verdict. Reads metrics but never changes the deployment."""
    return (await controller.analyze(deployment_id)).to_dict()


@router.get("/deployments/{deployment_id}/rollbacks")
async def get_rollback_history(deployment_id: int, controller: LifecycleController = Depends(get_controller)):
    return [r.to_dict() for r in await controller.get_rollback_history(deployment_id)]


@router.post("/rollbacks/{rollback_id}/complete")
@limiter.limit(MUTATION_LIMIT)
async def complete_rollback(
    request: Request,
    rollback_id: int,
    body: CompleteRollbackRequest,
    controller: LifecycleController = Depends(get_controller),
):
    record = await controller.complete_rollback(rollback_id, body.success, body.error_message)
    return record.to_dict()


@router.post("/rollbacks/{rollback_id}/execute")
@limiter.limit(MUTATION_LIMIT)
async def execute_rollback(
    request: Request,
    rollback_id: int,
    controller: LifecycleController = Depends(get_controller),
):
    """Revert traffic to stable and record the outcome. Failed attempts can be retried."""
    return (await controller.execute_rollback(rollback_id)).to_dict()
