"""Canary deployment lifecycle: state machine, health analysis and rollback."""

from .models import (
    CanaryDeployment,
    CanaryTemplate,
    DeploymentConfig,
    DeploymentStatus,
    DeploymentStep,
    HealthStatus,
    HealthThresholds,
    MetricSnapshot,
    RollbackFlags,
    RollbackRecord,
    RollbackStatus,
    RollbackTrigger,
    StepStatus,
    TrafficSplitType,
)

from .controller import (
    LifecycleController,
    ProgressOutcome,
    ProgressResult,
)

from .health_analyzer import (
    DEFAULT_RULES,
    HealthAnalyzer,
    HealthRule,
    HealthVerdict,
)

from .repository import (
    DeploymentRepository,
    InMemoryDeploymentRepository,
)

from .rollback_manager import RollbackManager
from .templates import TemplateStore

__all__ = [
    # Models
    "CanaryDeployment",
    "CanaryTemplate",
    "DeploymentConfig",
    "DeploymentStatus",
    "DeploymentStep",
    "HealthStatus",
    "HealthThresholds",
    "MetricSnapshot",
    "RollbackFlags",
    "RollbackRecord",
    "RollbackStatus",
    "RollbackTrigger",
    "StepStatus",
    "TrafficSplitType",
    # Controller
    "LifecycleController",
    "ProgressOutcome",
    "ProgressResult",
    # Health analysis
    "DEFAULT_RULES",
    "HealthAnalyzer",
    "HealthRule",
    "HealthVerdict",
    # Storage
    "DeploymentRepository",
    "InMemoryDeploymentRepository",
    "TemplateStore",
    # Rollback
    "RollbackManager",
]
