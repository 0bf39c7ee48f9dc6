"""Durable store for canary deployments, their steps, snapshots and rollbacks.

The controller only talks to :class:`DeploymentRepository`; the in-memory
implementation backs the service by default and the test suite. Records are
copied on the way in and out so that a caller never shares state with the
store without an explicit save.
"""
import copy
import itertools
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from typing import Deque, Dict, List, Optional

from loguru import logger

from src.rollout.core.errors import InvalidStateError, NotFoundError, ValidationError
from src.rollout.deployment.models import (
    CanaryDeployment,
    DeploymentConfig,
    DeploymentStatus,
    DeploymentStep,
    HealthThresholds,
    MetricSnapshot,
    RollbackRecord,
    StepStatus,
    TrafficSplitType,
)


def validate_config(config: DeploymentConfig) -> None:
    """Check a create-input for internal consistency.

    Raises:
        ValidationError: naming the first offending field
    """
    for name in ("name", "target_deployment", "canary_image"):
        if not (getattr(config, name) or "").strip():
            raise ValidationError(name, "must not be empty")

    try:
        TrafficSplitType(config.traffic_split_type)
    except ValueError:
        raise ValidationError(
            "traffic_split_type",
            f"must be one of {[t.value for t in TrafficSplitType]}",
        )

    validate_traffic(
        config.initial_canary_percent,
        config.target_canary_percent,
        config.increment_percent,
        config.increment_interval_minutes,
    )
    if config.approval_timeout_minutes is not None and config.approval_timeout_minutes <= 0:
        raise ValidationError("approval_timeout_minutes", "must be > 0 when set")
    validate_thresholds(config.thresholds)


def validate_traffic(initial: int, target: int, increment: int, interval: int) -> None:
    if not 1 <= initial <= 100:
        raise ValidationError("initial_canary_percent", "must be between 1 and 100")
    if not 1 <= target <= 100:
        raise ValidationError("target_canary_percent", "must be between 1 and 100")
    if target < initial:
        raise ValidationError("target_canary_percent", f"must be >= initial_canary_percent ({initial})")
    if increment <= 0:
        raise ValidationError("increment_percent", "must be > 0")
    if increment > 100:
        raise ValidationError("increment_percent", "must be <= 100")
    if interval <= 0:
        raise ValidationError("increment_interval_minutes", "must be > 0")


def validate_thresholds(thresholds: HealthThresholds) -> None:
    if not 0 < thresholds.error_rate_pct <= 100:
        raise ValidationError("error_rate_threshold", "must be > 0 and <= 100")
    if thresholds.latency_ms <= 0:
        raise ValidationError("latency_threshold_ms", "must be > 0")
    if not 0 < thresholds.success_rate_pct <= 100:
        raise ValidationError("success_rate_threshold", "must be > 0 and <= 100")
    if thresholds.min_healthy_pods < 1:
        raise ValidationError("min_healthy_pods", "must be >= 1")


class DeploymentRepository(ABC):
    """Storage contract used by the lifecycle controller and rollback manager."""

    @abstractmethod
    async def create(self, config: DeploymentConfig) -> CanaryDeployment:
        """Validate the config and persist a new deployment in ``pending``."""

    @abstractmethod
    async def get(self, deployment_id: int) -> CanaryDeployment:
        """Return a deployment or raise NotFoundError."""

    @abstractmethod
    async def list(
        self,
        status: Optional[DeploymentStatus] = None,
        limit: int = 50,
    ) -> List[CanaryDeployment]:
        """Newest first, optionally filtered by status."""

    @abstractmethod
    async def save(self, deployment: CanaryDeployment) -> CanaryDeployment:
        pass

    @abstractmethod
    async def delete(self, deployment_id: int) -> None:
        """Delete a deployment with its steps, snapshots and rollbacks."""

    @abstractmethod
    async def append_step(
        self,
        deployment_id: int,
        target_percent: int,
        status: StepStatus = StepStatus.RUNNING,
        started_at=None,
    ) -> DeploymentStep:
        """Open the next step; step numbers are assigned by the store."""

    @abstractmethod
    async def update_step(self, step: DeploymentStep) -> DeploymentStep:
        """Persist a step transition. Only running steps may change."""

    @abstractmethod
    async def list_steps(self, deployment_id: int) -> List[DeploymentStep]:
        """Steps ordered by step number."""

    @abstractmethod
    async def append_snapshot(self, snapshot: MetricSnapshot) -> MetricSnapshot:
        pass

    @abstractmethod
    async def list_snapshots(self, deployment_id: int, limit: int = 100) -> List[MetricSnapshot]:
        """Most recent first."""

    @abstractmethod
    async def append_rollback(self, record: RollbackRecord) -> RollbackRecord:
        """Persist a new rollback record; the store assigns the id."""

    @abstractmethod
    async def save_rollback(self, record: RollbackRecord) -> RollbackRecord:
        pass

    @abstractmethod
    async def get_rollback(self, rollback_id: int) -> RollbackRecord:
        """Return a rollback record or raise NotFoundError."""

    @abstractmethod
    async def list_rollbacks(self, deployment_id: int) -> List[RollbackRecord]:
        """Most recent first."""

    async def active_step(self, deployment_id: int) -> Optional[DeploymentStep]:
        """The running step of a deployment, if any."""
        for step in reversed(await self.list_steps(deployment_id)):
            if step.status == StepStatus.RUNNING:
                return step
        return None

    async def latest_step(self, deployment_id: int) -> Optional[DeploymentStep]:
        steps = await self.list_steps(deployment_id)
        return steps[-1] if steps else None


class InMemoryDeploymentRepository(DeploymentRepository):
    """Process-local repository with counters per entity type."""

    def __init__(self, snapshot_history: int = 500):
        self._deployment_ids = itertools.count(1)
        self._step_ids = itertools.count(1)
        self._rollback_ids = itertools.count(1)
        self._deployments: Dict[int, CanaryDeployment] = {}
        self._steps: Dict[int, List[DeploymentStep]] = defaultdict(list)
        self._snapshots: Dict[int, Deque[MetricSnapshot]] = defaultdict(
            lambda: deque(maxlen=snapshot_history)
        )
        self._rollbacks: Dict[int, RollbackRecord] = {}

    async def create(self, config: DeploymentConfig) -> CanaryDeployment:
        validate_config(config)
        deployment = CanaryDeployment.from_config(next(self._deployment_ids), config)
        self._deployments[deployment.id] = copy.deepcopy(deployment)
        logger.info(
            f"Created canary deployment {deployment.id} ({deployment.name}) "
            f"{deployment.initial_canary_percent}% -> {deployment.target_canary_percent}% "
            f"in steps of {deployment.increment_percent}%"
        )
        return deployment

    async def get(self, deployment_id: int) -> CanaryDeployment:
        try:
            return copy.deepcopy(self._deployments[deployment_id])
        except KeyError:
            raise NotFoundError("Deployment", deployment_id) from None

    async def list(
        self,
        status: Optional[DeploymentStatus] = None,
        limit: int = 50,
    ) -> List[CanaryDeployment]:
        deployments = [
            d for d in self._deployments.values()
            if status is None or d.status == status
        ]
        deployments.sort(key=lambda d: (d.created_at, d.id), reverse=True)
        return [copy.deepcopy(d) for d in deployments[:max(limit, 0)]]

    async def save(self, deployment: CanaryDeployment) -> CanaryDeployment:
        if deployment.id not in self._deployments:
            raise NotFoundError("Deployment", deployment.id)
        if not 0 <= deployment.current_canary_percent <= deployment.target_canary_percent <= 100:
            raise InvalidStateError(
                f"canary percent {deployment.current_canary_percent} outside "
                f"0..{deployment.target_canary_percent}"
            )
        self._deployments[deployment.id] = copy.deepcopy(deployment)
        return deployment

    async def delete(self, deployment_id: int) -> None:
        if self._deployments.pop(deployment_id, None) is None:
            raise NotFoundError("Deployment", deployment_id)
        self._steps.pop(deployment_id, None)
        self._snapshots.pop(deployment_id, None)
        for rollback_id in [r.id for r in self._rollbacks.values() if r.deployment_id == deployment_id]:
            del self._rollbacks[rollback_id]

    async def append_step(
        self,
        deployment_id: int,
        target_percent: int,
        status: StepStatus = StepStatus.RUNNING,
        started_at=None,
    ) -> DeploymentStep:
        await self.get(deployment_id)
        steps = self._steps[deployment_id]
        step = DeploymentStep(
            id=next(self._step_ids),
            deployment_id=deployment_id,
            step_number=len(steps) + 1,
            target_percent=target_percent,
            status=status,
            started_at=started_at,
        )
        steps.append(copy.deepcopy(step))
        return step

    async def update_step(self, step: DeploymentStep) -> DeploymentStep:
        steps = self._steps.get(step.deployment_id, [])
        for index, stored in enumerate(steps):
            if stored.id == step.id:
                if stored.status != StepStatus.RUNNING:
                    raise InvalidStateError(
                        f"step {stored.step_number} is {stored.status.value} and cannot be modified"
                    )
                steps[index] = copy.deepcopy(step)
                return step
        raise NotFoundError("Step", step.id)

    async def list_steps(self, deployment_id: int) -> List[DeploymentStep]:
        return [copy.deepcopy(s) for s in self._steps.get(deployment_id, [])]

    async def append_snapshot(self, snapshot: MetricSnapshot) -> MetricSnapshot:
        self._snapshots[snapshot.deployment_id].append(copy.deepcopy(snapshot))
        return snapshot

    async def list_snapshots(self, deployment_id: int, limit: int = 100) -> List[MetricSnapshot]:
        history = list(self._snapshots.get(deployment_id, ()))
        history.reverse()
        return [copy.deepcopy(s) for s in history[:max(limit, 0)]]

    async def append_rollback(self, record: RollbackRecord) -> RollbackRecord:
        record.id = next(self._rollback_ids)
        self._rollbacks[record.id] = copy.deepcopy(record)
        return record

    async def save_rollback(self, record: RollbackRecord) -> RollbackRecord:
        if record.id not in self._rollbacks:
            raise NotFoundError("Rollback", record.id)
        self._rollbacks[record.id] = copy.deepcopy(record)
        return record

    async def get_rollback(self, rollback_id: int) -> RollbackRecord:
        try:
            return copy.deepcopy(self._rollbacks[rollback_id])
        except KeyError:
            raise NotFoundError("Rollback", rollback_id) from None

    async def list_rollbacks(self, deployment_id: int) -> List[RollbackRecord]:
        records = [r for r in self._rollbacks.values() if r.deployment_id == deployment_id]
        records.sort(key=lambda r: (r.initiated_at, r.id), reverse=True)
        return [copy.deepcopy(r) for r in records]
