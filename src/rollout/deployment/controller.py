"""Lifecycle controller for progressive canary rollouts.

The controller is purely reactive: an operator or the external progress
driver calls :meth:`LifecycleController.progress` once per interval, and the
controller reads fresh metrics, classifies them and then advances, holds,
pauses for approval, promotes or hands off to the rollback manager.

Every mutating entry point runs under the deployment's lock, so two racing
``progress`` calls cannot both advance the same step.

Example:
    >>> controller = LifecycleController(repository, gateway)
    >>> deployment = await controller.create(DeploymentConfig(
    ...     name="api-v2", target_deployment="api", canary_image="api:2.0"))
    >>> await controller.start(deployment.id)
    >>> result = await controller.progress(deployment.id)
    >>> result.outcome
    <ProgressOutcome.ADVANCED: 'advanced'>
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from src.rollout.core.errors import GatewayUnavailable, TrafficShiftError
from src.rollout.deployment import state_machine
from src.rollout.deployment.executor import DryRunTrafficExecutor, TrafficExecutor
from src.rollout.deployment.health_analyzer import HealthAnalyzer, HealthVerdict
from src.rollout.deployment.locks import DeploymentLocks
from src.rollout.deployment.metrics_gateway import MetricsGateway
from src.rollout.deployment.models import (
    CanaryDeployment,
    DeploymentConfig,
    DeploymentStatus,
    DeploymentStep,
    MetricSnapshot,
    RollbackRecord,
    RollbackTrigger,
    StepStatus,
    utcnow,
)
from src.rollout.deployment.repository import DeploymentRepository
from src.rollout.deployment.rollback_manager import RollbackManager
from src.rollout.deployment.scheduler import StepScheduler
from src.rollout.monitoring.metrics import PROGRESS_OUTCOMES, export_canary_percent
from src.rollout.monitoring.tracing import record_exception, set_span_attributes, tracer


class ProgressOutcome(str, Enum):
    NOT_DUE = "not_due"
    HELD = "held"
    ADVANCED = "advanced"
    AWAITING_APPROVAL = "awaiting_approval"
    PROMOTED = "promoted"
    ROLLING_BACK = "rolling_back"
    FAILED = "failed"


@dataclass
class ProgressResult:
    """Deployment state after one ``progress`` call plus what happened."""
    deployment: CanaryDeployment
    outcome: ProgressOutcome
    step: Optional[DeploymentStep] = None
    verdict: Optional[HealthVerdict] = None
    rollback: Optional[RollbackRecord] = None
    next_due_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deployment": self.deployment.to_dict(),
            "outcome": self.outcome.value,
            "step": self.step.to_dict() if self.step else None,
            "verdict": self.verdict.to_dict() if self.verdict else None,
            "rollback": self.rollback.to_dict() if self.rollback else None,
            "next_due_at": self.next_due_at.isoformat() if self.next_due_at else None,
        }


class LifecycleController:
    """Drives canary deployments through their state machine."""

    def __init__(
        self,
        repository: DeploymentRepository,
        gateway: MetricsGateway,
        analyzer: Optional[HealthAnalyzer] = None,
        scheduler: Optional[StepScheduler] = None,
        executor: Optional[TrafficExecutor] = None,
        rollback_manager: Optional[RollbackManager] = None,
        locks: Optional[DeploymentLocks] = None,
        clock: Callable[[], datetime] = utcnow,
        auto_execute_rollback: bool = False,
    ):
        """Initialize the controller.

        Args:
            repository: Store for deployments, steps, snapshots and rollbacks
            gateway: Source of health numbers
            analyzer: Health classification (default rules if omitted)
            scheduler: Step arithmetic and interval gating
            executor: Applies traffic weights (dry-run if omitted)
            rollback_manager: Shares repository, executor and clock if omitted
            locks: Per-deployment lock registry
            clock: Returns the current UTC time
            auto_execute_rollback: Revert traffic as soon as an automatic
                rollback is initiated
        """
        self.repository = repository
        self.gateway = gateway
        self.analyzer = analyzer or HealthAnalyzer()
        self.scheduler = scheduler or StepScheduler()
        self.executor = executor or DryRunTrafficExecutor()
        self.rollback_manager = rollback_manager or RollbackManager(repository, self.executor, clock)
        self.locks = locks or DeploymentLocks()
        self.clock = clock
        self.auto_execute_rollback = auto_execute_rollback

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    async def create(self, config: DeploymentConfig) -> CanaryDeployment:
        return await self.repository.create(config)

    async def get(self, deployment_id: int) -> CanaryDeployment:
        return await self.repository.get(deployment_id)

    async def list(
        self,
        status: Optional[DeploymentStatus] = None,
        limit: int = 50,
    ) -> List[CanaryDeployment]:
        return await self.repository.list(status=status, limit=limit)

    async def get_steps(self, deployment_id: int) -> List[DeploymentStep]:
        await self.repository.get(deployment_id)
        return await self.repository.list_steps(deployment_id)

    async def get_metrics(self, deployment_id: int, limit: int = 100) -> List[MetricSnapshot]:
        await self.repository.get(deployment_id)
        return await self.repository.list_snapshots(deployment_id, limit=limit)

    async def get_rollback_history(self, deployment_id: int) -> List[RollbackRecord]:
        return await self.rollback_manager.history(deployment_id)

    async def analyze(self, deployment_id: int) -> HealthVerdict:
        """Current verdict for a deployment, without changing any state."""
        deployment = await self.repository.get(deployment_id)
        step = await self.repository.latest_step(deployment_id)
        elapsed = self.scheduler.step_elapsed(step, self.clock())
        verdict = await self._evaluate(deployment, elapsed)
        return await self.analyzer.annotate(deployment, verdict)

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    async def start(self, deployment_id: int) -> CanaryDeployment:
        """Route the initial share of traffic to the canary and open step #1."""
        async with self.locks.hold(deployment_id):
            deployment = await self.repository.get(deployment_id)
            state_machine.require_operation(deployment, "start")

            now = self.clock()
            state_machine.walk(
                deployment,
                (DeploymentStatus.INITIALIZING, DeploymentStatus.PROGRESSING),
            )
            deployment.started_at = now
            deployment.last_progress_at = now
            deployment.current_canary_percent = deployment.initial_canary_percent
            deployment.status_message = (
                f"Canary started at {deployment.initial_canary_percent}% traffic"
            )
            step = await self.repository.append_step(
                deployment_id, deployment.initial_canary_percent, started_at=now
            )

            try:
                await self.executor.apply_traffic(deployment, deployment.current_canary_percent)
            except TrafficShiftError as e:
                deployment.current_canary_percent = 0
                await self._fail(deployment, step, e)
                return deployment

            await self.repository.save(deployment)
            self._export_percent(deployment)
            logger.info(
                f"🚀 Deployment {deployment.id} ({deployment.name}) started "
                f"at {deployment.current_canary_percent}%"
            )
            return deployment

    async def progress(self, deployment_id: int) -> ProgressResult:
        """Evaluate health and take at most one step.

        Returns:
            ProgressResult with the outcome; ``not_due`` and ``held`` leave
            status and traffic untouched

        Raises:
            NotFoundError: unknown deployment
            InvalidStateError: deployment is not progressing
        """
        async with self.locks.hold(deployment_id):
            with tracer.start_as_current_span("canary.progress") as span:
                set_span_attributes(span, **{"canary.deployment_id": deployment_id})
                result = await self._progress_locked(deployment_id)
                set_span_attributes(
                    span,
                    **{
                        "canary.outcome": result.outcome.value,
                        "canary.percent": result.deployment.current_canary_percent,
                        "canary.status": result.deployment.status.value,
                    },
                )

        PROGRESS_OUTCOMES.labels(outcome=result.outcome.value).inc()
        if result.verdict is not None:
            result.verdict = await self.analyzer.annotate(result.deployment, result.verdict)
        return result

    async def pause(self, deployment_id: int) -> CanaryDeployment:
        async with self.locks.hold(deployment_id):
            deployment = await self.repository.get(deployment_id)
            state_machine.require_operation(deployment, "pause")
            state_machine.transition(deployment, DeploymentStatus.PAUSED, "Paused by operator")
            deployment.paused_at = self.clock()
            return await self.repository.save(deployment)

    async def resume(self, deployment_id: int) -> CanaryDeployment:
        """Return to progressing. Resuming an approval pause grants the approval."""
        async with self.locks.hold(deployment_id):
            deployment = await self.repository.get(deployment_id)
            state_machine.require_operation(deployment, "resume")
            if deployment.awaiting_approval:
                deployment.awaiting_approval = False
                deployment.approval_granted = True
                message = "Approval granted, final step will run on next progress"
            else:
                message = "Resumed by operator"
            state_machine.transition(deployment, DeploymentStatus.PROGRESSING, message)
            deployment.paused_at = None
            return await self.repository.save(deployment)

    async def promote(self, deployment_id: int) -> CanaryDeployment:
        """Cut all traffic over to the canary now."""
        async with self.locks.hold(deployment_id):
            deployment = await self.repository.get(deployment_id)
            state_machine.require_operation(deployment, "promote")

            active = await self.repository.active_step(deployment_id)
            try:
                await self.executor.apply_traffic(deployment, deployment.target_canary_percent)
            except TrafficShiftError as e:
                if deployment.status == DeploymentStatus.PROGRESSING:
                    await self._fail(deployment, active, e)
                    return deployment
                raise

            now = self.clock()
            if active is not None:
                await self._close_step(active, StepStatus.COMPLETED, now, notes="Promoted manually")
            elif deployment.current_canary_percent != deployment.target_canary_percent:
                final = await self.repository.append_step(
                    deployment_id, deployment.target_canary_percent, started_at=now
                )
                await self._close_step(final, StepStatus.COMPLETED, now, notes="Promoted manually")

            deployment.current_canary_percent = deployment.target_canary_percent
            self._finish_promotion(deployment, now, "Promoted manually")
            await self.repository.save(deployment)
            self._export_percent(deployment)
            return deployment

    async def cancel(self, deployment_id: int) -> CanaryDeployment:
        """Stop controlling the deployment. Traffic is left where it is."""
        async with self.locks.hold(deployment_id):
            deployment = await self.repository.get(deployment_id)
            state_machine.require_operation(deployment, "cancel")

            now = self.clock()
            active = await self.repository.active_step(deployment_id)
            if active is not None:
                await self._close_step(active, StepStatus.SKIPPED, now, notes="Deployment cancelled")

            state_machine.transition(
                deployment,
                DeploymentStatus.CANCELLED,
                f"Cancelled at {deployment.current_canary_percent}% canary traffic",
            )
            deployment.awaiting_approval = False
            deployment.completed_at = now
            await self.repository.save(deployment)
            self._export_percent(deployment)
            logger.info(f"Deployment {deployment.id} cancelled, traffic left at {deployment.current_canary_percent}%")
            return deployment

    async def rollback(
        self,
        deployment_id: int,
        reason: str = "Manual rollback",
        initiated_by: Optional[str] = None,
    ) -> RollbackRecord:
        async with self.locks.hold(deployment_id):
            return await self.rollback_manager.initiate(
                deployment_id, reason, RollbackTrigger.MANUAL, initiated_by=initiated_by
            )

    async def complete_rollback(
        self,
        rollback_id: int,
        success: bool,
        error_message: Optional[str] = None,
    ) -> RollbackRecord:
        record = await self.repository.get_rollback(rollback_id)
        async with self.locks.hold(record.deployment_id):
            return await self.rollback_manager.complete(rollback_id, success, error_message)

    async def execute_rollback(self, rollback_id: int) -> RollbackRecord:
        record = await self.repository.get_rollback(rollback_id)
        async with self.locks.hold(record.deployment_id):
            record = await self.rollback_manager.execute(rollback_id)
        self._export_percent(await self.repository.get(record.deployment_id))
        return record

    async def check_approval_timeout(self, deployment_id: int) -> Optional[RollbackRecord]:
        """Roll back a deployment that has waited too long for approval.

        Returns:
            The rollback record if one was initiated, otherwise None
        """
        async with self.locks.hold(deployment_id):
            deployment = await self.repository.get(deployment_id)
            if not deployment.awaiting_approval or deployment.approval_timeout_minutes is None:
                return None
            if deployment.status != DeploymentStatus.PAUSED or deployment.paused_at is None:
                return None

            waited = self.clock() - deployment.paused_at
            if waited < timedelta(minutes=deployment.approval_timeout_minutes):
                return None

            record = await self.rollback_manager.initiate(
                deployment_id,
                f"Manual approval not granted within {deployment.approval_timeout_minutes} minutes",
                RollbackTrigger.APPROVAL_TIMEOUT,
            )
            if self.auto_execute_rollback:
                record = await self.rollback_manager.execute(record.id)
            return record

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _progress_locked(self, deployment_id: int) -> ProgressResult:
        deployment = await self.repository.get(deployment_id)
        state_machine.require_operation(deployment, "progress")

        now = self.clock()
        latest = await self.repository.latest_step(deployment_id)
        if not self.scheduler.is_due(deployment, latest, now):
            logger.debug(f"Deployment {deployment_id} not due until {self.scheduler.next_due_at(deployment, latest)}")
            return ProgressResult(
                deployment=deployment,
                outcome=ProgressOutcome.NOT_DUE,
                step=latest,
                next_due_at=self.scheduler.next_due_at(deployment, latest),
            )

        verdict = await self._evaluate(deployment, self.scheduler.step_elapsed(latest, now))
        await self._record_snapshot(deployment, verdict)
        deployment.last_progress_at = now
        await self.repository.save(deployment)
        active = await self.repository.active_step(deployment_id)

        if verdict.should_rollback:
            record = await self.rollback_manager.initiate(
                deployment_id,
                "; ".join(verdict.reasons),
                verdict.rollback_trigger,
            )
            if self.auto_execute_rollback:
                record = await self.rollback_manager.execute(record.id)
            deployment = await self.repository.get(deployment_id)
            self._export_percent(deployment)
            return ProgressResult(
                deployment=deployment,
                outcome=ProgressOutcome.ROLLING_BACK,
                verdict=verdict,
                rollback=record,
            )

        if not verdict.should_promote:
            logger.info(f"Deployment {deployment_id} held at {deployment.current_canary_percent}% ({verdict.analysis_result.value})")
            return ProgressResult(
                deployment=deployment,
                outcome=ProgressOutcome.HELD,
                step=active,
                verdict=verdict,
            )

        next_percent = self.scheduler.next_percent(deployment)
        success_rate = self.scheduler.success_rate(verdict.snapshot)
        reaches_target = next_percent == deployment.target_canary_percent

        if deployment.require_manual_approval and reaches_target and not deployment.approval_granted:
            if active is not None:
                active = await self._close_step(active, StepStatus.COMPLETED, now, success_rate)
            state_machine.transition(
                deployment,
                DeploymentStatus.PAUSED,
                f"Awaiting manual approval before moving to {next_percent}%",
            )
            deployment.awaiting_approval = True
            deployment.paused_at = now
            await self.repository.save(deployment)
            logger.info(f"⏸️ Deployment {deployment_id} awaiting approval at {deployment.current_canary_percent}%")
            return ProgressResult(
                deployment=deployment,
                outcome=ProgressOutcome.AWAITING_APPROVAL,
                step=active,
                verdict=verdict,
            )

        if active is not None:
            await self._close_step(active, StepStatus.COMPLETED, now, success_rate)
        step = await self.repository.append_step(deployment_id, next_percent, started_at=now)

        try:
            await self.executor.apply_traffic(deployment, next_percent)
        except TrafficShiftError as e:
            step = await self._fail(deployment, step, e)
            return ProgressResult(
                deployment=deployment,
                outcome=ProgressOutcome.FAILED,
                step=step,
                verdict=verdict,
            )

        deployment.current_canary_percent = next_percent
        if reaches_target:
            step = await self._close_step(step, StepStatus.COMPLETED, now, success_rate)
            self._finish_promotion(deployment, now, f"Promoted after reaching {next_percent}%")
            outcome = ProgressOutcome.PROMOTED
        else:
            deployment.status_message = f"Canary at {next_percent}% traffic"
            outcome = ProgressOutcome.ADVANCED
            logger.info(f"Deployment {deployment_id} advanced to {next_percent}%")

        await self.repository.save(deployment)
        self._export_percent(deployment)
        return ProgressResult(
            deployment=deployment,
            outcome=outcome,
            step=step,
            verdict=verdict,
            next_due_at=None if reaches_target else self.scheduler.next_due_at(deployment, step),
        )

    async def _evaluate(self, deployment: CanaryDeployment, elapsed: Optional[timedelta]) -> HealthVerdict:
        with tracer.start_as_current_span("canary.analyze") as span:
            try:
                snapshot = await self.gateway.fetch(deployment)
            except GatewayUnavailable as e:
                record_exception(span, e)
                return self.analyzer.unknown(deployment, str(e))

            snapshot.deployment_id = deployment.id
            snapshot.canary_percent = deployment.current_canary_percent
            verdict = self.analyzer.classify(deployment, snapshot, elapsed)
            set_span_attributes(
                span,
                **{
                    "canary.health": verdict.analysis_result.value,
                    "canary.error_rate": snapshot.canary_error_rate,
                    "canary.latency_ms": snapshot.canary_avg_latency,
                },
            )
            return verdict

    async def _record_snapshot(self, deployment: CanaryDeployment, verdict: HealthVerdict) -> None:
        if verdict.snapshot is None:
            return
        verdict.snapshot.analysis_result = verdict.analysis_result
        verdict.snapshot.analysis_notes = "; ".join(verdict.reasons)
        await self.repository.append_snapshot(verdict.snapshot)

    async def _close_step(
        self,
        step: DeploymentStep,
        status: StepStatus,
        now: datetime,
        success_rate: Optional[float] = None,
        notes: Optional[str] = None,
    ) -> DeploymentStep:
        step.status = status
        step.completed_at = now
        if status == StepStatus.COMPLETED:
            step.success_rate = success_rate
        if notes is not None:
            step.notes = notes
        return await self.repository.update_step(step)

    async def _fail(
        self,
        deployment: CanaryDeployment,
        step: Optional[DeploymentStep],
        error: TrafficShiftError,
    ) -> Optional[DeploymentStep]:
        now = self.clock()
        if step is not None and step.status == StepStatus.RUNNING:
            step = await self._close_step(step, StepStatus.FAILED, now, notes=str(error))
        state_machine.transition(
            deployment,
            DeploymentStatus.FAILED,
            f"Traffic shift to {error.percent}% failed: {error}",
        )
        deployment.completed_at = now
        await self.repository.save(deployment)
        self._export_percent(deployment)
        logger.error(f"🔴 Deployment {deployment.id} failed: {error}")
        return step

    def _finish_promotion(self, deployment: CanaryDeployment, now: datetime, message: str) -> None:
        state_machine.walk(
            deployment,
            (DeploymentStatus.PROMOTING, DeploymentStatus.PROMOTED),
            message,
        )
        deployment.awaiting_approval = False
        deployment.completed_at = now
        logger.info(f"✅ Deployment {deployment.id} ({deployment.name}) promoted")

    def _export_percent(self, deployment: CanaryDeployment) -> None:
        export_canary_percent(deployment)

