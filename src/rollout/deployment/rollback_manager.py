"""Rollback execution and bookkeeping.

A deployment enters ``rolling_back`` when a rollback is initiated and only
reaches the terminal ``rolled_back`` state once the rollback is completed
successfully. Failed rollbacks stay retryable.

Callers are expected to hold the deployment's lock; the lifecycle
controller does this for every entry point.
"""
from datetime import datetime
from typing import Callable, List, Optional

from loguru import logger

from src.rollout.core.errors import InvalidStateError, RollbackFailure, TrafficShiftError
from src.rollout.deployment import state_machine
from src.rollout.deployment.executor import TrafficExecutor
from src.rollout.deployment.models import (
    DeploymentStatus,
    RollbackRecord,
    RollbackStatus,
    RollbackTrigger,
    StepStatus,
    utcnow,
)
from src.rollout.deployment.repository import DeploymentRepository
from src.rollout.monitoring.metrics import ROLLBACKS, export_canary_percent


class RollbackManager:
    """Initiates, completes and executes rollbacks."""

    def __init__(
        self,
        repository: DeploymentRepository,
        executor: TrafficExecutor,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.executor = executor
        self.clock = clock

    async def initiate(
        self,
        deployment_id: int,
        reason: str,
        trigger: RollbackTrigger,
        initiated_by: Optional[str] = None,
    ) -> RollbackRecord:
        """Open a rollback and move the deployment to ``rolling_back``.

        Args:
            deployment_id: Deployment to roll back
            reason: Human-readable cause
            trigger: What caused the rollback
            initiated_by: User id, or "system" for automatic rollbacks

        Returns:
            The new rollback record in ``initiated`` state

        Raises:
            NotFoundError: unknown deployment
            InvalidStateError: terminal deployment or a rollback already in flight
        """
        deployment = await self.repository.get(deployment_id)
        if deployment.status == DeploymentStatus.ROLLING_BACK:
            raise InvalidStateError(
                f"deployment {deployment_id} is already rolling back",
                operation="rollback",
                state=deployment.status.value,
            )
        state_machine.require_operation(deployment, "rollback")

        now = self.clock()
        active = await self.repository.active_step(deployment_id)
        record = await self.repository.append_rollback(RollbackRecord(
            id=0,
            deployment_id=deployment_id,
            trigger=RollbackTrigger(trigger),
            reason=reason,
            initiated_by=initiated_by or "system",
            canary_percent_at_rollback=deployment.current_canary_percent,
            step_at_rollback=active.step_number if active else None,
            rollback_to_version=deployment.stable_version,
            rollback_to_image=deployment.stable_image,
            initiated_at=now,
        ))

        if active is not None:
            active.status = StepStatus.FAILED
            active.completed_at = now
            active.notes = reason
            await self.repository.update_step(active)

        state_machine.transition(deployment, DeploymentStatus.ROLLING_BACK, f"Rolling back: {reason}")
        deployment.awaiting_approval = False
        await self.repository.save(deployment)

        ROLLBACKS.labels(trigger=record.trigger.value, status=record.status.value).inc()
        logger.warning(
            f"Rollback {record.id} initiated for deployment {deployment_id} "
            f"at {deployment.current_canary_percent}% ({record.trigger.value}): {reason}"
        )
        return record

    async def complete(
        self,
        rollback_id: int,
        success: bool,
        error_message: Optional[str] = None,
    ) -> RollbackRecord:
        """Record the outcome of a rollback.

        Repeating a call with the same outcome is a no-op. A failed rollback
        may later be completed successfully; a completed one is final.

        Raises:
            NotFoundError: unknown rollback id
            InvalidStateError: contradicting an already completed rollback
        """
        record = await self.repository.get_rollback(rollback_id)

        if record.status == RollbackStatus.COMPLETED:
            if success:
                logger.debug(f"Rollback {rollback_id} already completed")
                return record
            raise InvalidStateError(
                f"rollback {rollback_id} already completed and cannot be marked failed",
                operation="complete_rollback",
                state=record.status.value,
            )
        if record.status == RollbackStatus.FAILED and not success:
            logger.debug(f"Rollback {rollback_id} already marked failed")
            return record

        deployment = await self.repository.get(record.deployment_id)
        if deployment.status != DeploymentStatus.ROLLING_BACK:
            raise InvalidStateError.for_transition("complete rollback of", deployment.status.value)

        now = self.clock()
        record.completed_at = now
        if success:
            record.status = RollbackStatus.COMPLETED
            record.error_message = None
            state_machine.transition(
                deployment,
                DeploymentStatus.ROLLED_BACK,
                "Successfully rolled back to stable version",
            )
            deployment.current_canary_percent = 0
            deployment.completed_at = now
            export_canary_percent(deployment)
            logger.info(f"✅ Rollback {rollback_id} completed, deployment {deployment.id} rolled back")
        else:
            record.status = RollbackStatus.FAILED
            record.error_message = error_message
            deployment.status_message = f"Rollback failed: {error_message}"
            logger.error(f"❌ Rollback {rollback_id} of deployment {deployment.id} failed: {error_message}")

        await self.repository.save_rollback(record)
        await self.repository.save(deployment)
        ROLLBACKS.labels(trigger=record.trigger.value, status=record.status.value).inc()
        return record

    async def execute(self, rollback_id: int) -> RollbackRecord:
        """Revert traffic to stable and complete the rollback with the outcome.

        Executor errors are recorded as a failed, retryable rollback rather
        than raised.
        """
        record = await self.repository.get_rollback(rollback_id)
        if record.status == RollbackStatus.COMPLETED:
            return record

        deployment = await self.repository.get(record.deployment_id)
        try:
            await self.executor.revert(deployment)
        except TrafficShiftError as e:
            failure = RollbackFailure(rollback_id, str(e))
            return await self.complete(rollback_id, False, str(failure))
        return await self.complete(rollback_id, True)

    async def history(self, deployment_id: int) -> List[RollbackRecord]:
        await self.repository.get(deployment_id)
        return await self.repository.list_rollbacks(deployment_id)
