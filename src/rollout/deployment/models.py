"""Domain records for progressive canary rollouts.

All percentages are integers in 0..100; error and success rates are
percentages (0-100), latencies are milliseconds.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeploymentStatus(str, Enum):
    """Lifecycle states of a canary deployment."""
    PENDING = "pending"
    INITIALIZING = "initializing"
    PROGRESSING = "progressing"
    PAUSED = "paused"
    PROMOTING = "promoting"
    PROMOTED = "promoted"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    DeploymentStatus.PROMOTED,
    DeploymentStatus.ROLLED_BACK,
    DeploymentStatus.FAILED,
    DeploymentStatus.CANCELLED,
})


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class TrafficSplitType(str, Enum):
    PERCENTAGE = "percentage"
    HEADER = "header"
    COOKIE = "cookie"


class RollbackTrigger(str, Enum):
    MANUAL = "manual"
    ERROR_RATE = "error_rate"
    LATENCY = "latency"
    POD_FAILURE = "pod_failure"
    APPROVAL_TIMEOUT = "approval_timeout"


class RollbackStatus(str, Enum):
    INITIATED = "initiated"
    COMPLETED = "completed"
    FAILED = "failed"


class HealthStatus(str, Enum):
    """Health classification, ordered from best to worst (unknown aside)."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class HealthThresholds:
    """Limits used to classify canary health."""
    error_rate_pct: float = 5.0
    latency_ms: float = 1000.0
    success_rate_pct: float = 95.0
    min_healthy_pods: int = 1


@dataclass
class RollbackFlags:
    """Which breached conditions may trigger an automatic rollback."""
    auto_rollback_enabled: bool = True
    on_error_rate: bool = True
    on_latency: bool = True
    on_pod_failure: bool = True


@dataclass
class DeploymentConfig:
    """Create-input for a canary deployment (validated by the repository)."""
    name: str
    target_deployment: str
    canary_image: str
    namespace: str = "default"
    canary_version: Optional[str] = None
    stable_image: Optional[str] = None
    stable_version: Optional[str] = None
    traffic_split_type: TrafficSplitType = TrafficSplitType.PERCENTAGE
    initial_canary_percent: int = 10
    target_canary_percent: int = 100
    increment_percent: int = 10
    increment_interval_minutes: int = 5
    thresholds: HealthThresholds = field(default_factory=HealthThresholds)
    rollback: RollbackFlags = field(default_factory=RollbackFlags)
    require_manual_approval: bool = False
    approval_timeout_minutes: Optional[int] = None
    created_by: Optional[str] = None
    git_commit: Optional[str] = None
    git_branch: Optional[str] = None
    pull_request_url: Optional[str] = None


@dataclass
class CanaryDeployment:
    """One progressive rollout from the stable to the canary version."""
    id: int
    name: str
    namespace: str
    target_deployment: str
    canary_image: str
    canary_version: Optional[str]
    stable_image: Optional[str]
    stable_version: Optional[str]
    traffic_split_type: TrafficSplitType
    initial_canary_percent: int
    target_canary_percent: int
    increment_percent: int
    increment_interval_minutes: int
    thresholds: HealthThresholds
    rollback: RollbackFlags
    require_manual_approval: bool
    approval_timeout_minutes: Optional[int] = None
    current_canary_percent: int = 0
    status: DeploymentStatus = DeploymentStatus.PENDING
    status_message: Optional[str] = None
    awaiting_approval: bool = False
    approval_granted: bool = False
    paused_at: Optional[datetime] = None
    created_by: Optional[str] = None
    git_commit: Optional[str] = None
    git_branch: Optional[str] = None
    pull_request_url: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    last_progress_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_config(cls, deployment_id: int, config: DeploymentConfig) -> "CanaryDeployment":
        return cls(
            id=deployment_id,
            name=config.name,
            namespace=config.namespace,
            target_deployment=config.target_deployment,
            canary_image=config.canary_image,
            canary_version=config.canary_version,
            stable_image=config.stable_image,
            stable_version=config.stable_version,
            traffic_split_type=TrafficSplitType(config.traffic_split_type),
            initial_canary_percent=config.initial_canary_percent,
            target_canary_percent=config.target_canary_percent,
            increment_percent=config.increment_percent,
            increment_interval_minutes=config.increment_interval_minutes,
            thresholds=config.thresholds,
            rollback=config.rollback,
            require_manual_approval=config.require_manual_approval,
            approval_timeout_minutes=config.approval_timeout_minutes,
            created_by=config.created_by,
            git_commit=config.git_commit,
            git_branch=config.git_branch,
            pull_request_url=config.pull_request_url,
        )

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass
class DeploymentStep:
    """One traffic plateau. Immutable once it leaves ``running``."""
    id: int
    deployment_id: int
    step_number: int
    target_percent: int
    status: StepStatus = StepStatus.RUNNING
    success_rate: Optional[float] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass
class MetricSnapshot:
    """Point-in-time health read for the canary and stable cohorts."""
    canary_error_rate: float = 0.0
    canary_avg_latency: float = 0.0
    canary_healthy_pods: int = 0
    canary_total_pods: int = 0
    stable_error_rate: float = 0.0
    stable_avg_latency: float = 0.0
    deployment_id: Optional[int] = None
    canary_percent: Optional[int] = None
    analysis_result: Optional[HealthStatus] = None
    analysis_notes: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def canary_success_rate(self) -> float:
        return 100.0 - self.canary_error_rate

    def to_dict(self) -> Dict[str, Any]:
        data = _serialize(asdict(self))
        data["canary_success_rate"] = self.canary_success_rate
        return data


@dataclass
class RollbackRecord:
    """One rollback event of a deployment."""
    id: int
    deployment_id: int
    trigger: RollbackTrigger
    reason: str
    initiated_by: str
    canary_percent_at_rollback: int
    step_at_rollback: Optional[int] = None
    rollback_to_version: Optional[str] = None
    rollback_to_image: Optional[str] = None
    status: RollbackStatus = RollbackStatus.INITIATED
    error_message: Optional[str] = None
    initiated_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass
class CanaryTemplate:
    """Reusable default traffic and threshold configuration."""
    id: int
    name: str
    description: Optional[str] = None
    traffic_split_type: TrafficSplitType = TrafficSplitType.PERCENTAGE
    initial_canary_percent: int = 10
    target_canary_percent: int = 100
    increment_percent: int = 10
    increment_interval_minutes: int = 5
    thresholds: HealthThresholds = field(default_factory=HealthThresholds)
    auto_rollback_enabled: bool = True
    require_manual_approval: bool = False
    is_default: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


def _serialize(value: Any) -> Any:
    """Convert enums and datetimes in an ``asdict`` tree to JSON-friendly values."""
    if isinstance(value, dict):
        return {key: _serialize(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_serialize(item) for item in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value
