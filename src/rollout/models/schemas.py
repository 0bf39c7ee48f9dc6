from pydantic import BaseModel, Field, ConfigDict
from typing import Any, Dict, Optional

from src.rollout.deployment.models import (
    CanaryTemplate,
    DeploymentConfig,
    HealthThresholds,
    RollbackFlags,
    TrafficSplitType,
)


class ThresholdsIn(BaseModel):
    error_rate_threshold: float = Field(default=5.0, description="Max canary error rate, percent")
    latency_threshold_ms: float = Field(default=1000.0, description="Max canary average latency")
    success_rate_threshold: float = Field(default=95.0, description="Min canary success rate, percent")
    min_healthy_pods: int = Field(default=1, description="Min ready canary pods")

    def to_domain(self) -> HealthThresholds:
        return HealthThresholds(
            error_rate_pct=self.error_rate_threshold,
            latency_ms=self.latency_threshold_ms,
            success_rate_pct=self.success_rate_threshold,
            min_healthy_pods=self.min_healthy_pods,
        )


class DeploymentCreate(BaseModel):
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
    thresholds: ThresholdsIn = Field(default_factory=ThresholdsIn)
    auto_rollback_enabled: bool = True
    rollback_on_error_rate: bool = True
    rollback_on_latency: bool = True
    rollback_on_pod_failure: bool = True
    require_manual_approval: bool = False
    approval_timeout_minutes: Optional[int] = Field(
        default=None, description="Roll back automatically after waiting this long for approval"
    )
    created_by: Optional[str] = None
    git_commit: Optional[str] = None
    git_branch: Optional[str] = None
    pull_request_url: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "checkout-v2.4.0",
                "target_deployment": "checkout",
                "canary_image": "registry.local/checkout:2.4.0",
                "stable_image": "registry.local/checkout:2.3.1",
                "initial_canary_percent": 10,
                "increment_percent": 10,
                "increment_interval_minutes": 5,
                "thresholds": {"error_rate_threshold": 5, "latency_threshold_ms": 1000},
            }
        }
    )

    def to_domain(self) -> DeploymentConfig:
        data = self.model_dump(exclude={
            "thresholds",
            "auto_rollback_enabled",
            "rollback_on_error_rate",
            "rollback_on_latency",
            "rollback_on_pod_failure",
        })
        return DeploymentConfig(
            **data,
            thresholds=self.thresholds.to_domain(),
            rollback=RollbackFlags(
                auto_rollback_enabled=self.auto_rollback_enabled,
                on_error_rate=self.rollback_on_error_rate,
                on_latency=self.rollback_on_latency,
                on_pod_failure=self.rollback_on_pod_failure,
            ),
        )


class FromTemplateRequest(BaseModel):
    """Deployment identity plus optional overrides of the template's settings."""
    name: str
    target_deployment: str
    canary_image: str
    namespace: Optional[str] = None
    canary_version: Optional[str] = None
    stable_image: Optional[str] = None
    stable_version: Optional[str] = None
    initial_canary_percent: Optional[int] = None
    target_canary_percent: Optional[int] = None
    increment_percent: Optional[int] = None
    increment_interval_minutes: Optional[int] = None
    require_manual_approval: Optional[bool] = None
    approval_timeout_minutes: Optional[int] = None
    created_by: Optional[str] = None
    git_commit: Optional[str] = None
    git_branch: Optional[str] = None
    pull_request_url: Optional[str] = None

    def overrides(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class TemplateCreate(BaseModel):
    name: str
    description: Optional[str] = None
    traffic_split_type: TrafficSplitType = TrafficSplitType.PERCENTAGE
    initial_canary_percent: int = 10
    target_canary_percent: int = 100
    increment_percent: int = 10
    increment_interval_minutes: int = 5
    thresholds: ThresholdsIn = Field(default_factory=ThresholdsIn)
    auto_rollback_enabled: bool = True
    require_manual_approval: bool = False
    is_default: bool = False

    def to_domain(self) -> CanaryTemplate:
        data = self.model_dump(exclude={"thresholds"})
        return CanaryTemplate(id=0, thresholds=self.thresholds.to_domain(), **data)


class TemplateUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    traffic_split_type: Optional[TrafficSplitType] = None
    initial_canary_percent: Optional[int] = None
    target_canary_percent: Optional[int] = None
    increment_percent: Optional[int] = None
    increment_interval_minutes: Optional[int] = None
    error_rate_threshold: Optional[float] = None
    latency_threshold_ms: Optional[float] = None
    success_rate_threshold: Optional[float] = None
    min_healthy_pods: Optional[int] = None
    auto_rollback_enabled: Optional[bool] = None
    require_manual_approval: Optional[bool] = None
    is_default: Optional[bool] = None

    def changes(self) -> Dict[str, Any]:
        data = self.model_dump(exclude_none=True)
        thresholds = {
            domain: data.pop(field)
            for field, domain in (
                ("error_rate_threshold", "error_rate_pct"),
                ("latency_threshold_ms", "latency_ms"),
                ("success_rate_threshold", "success_rate_pct"),
                ("min_healthy_pods", "min_healthy_pods"),
            )
            if field in data
        }
        if thresholds:
            data["thresholds"] = thresholds
        return data


class RollbackRequest(BaseModel):
    reason: str = Field(default="Manual rollback", description="Why the canary is being rolled back")
    initiated_by: Optional[str] = None


class CompleteRollbackRequest(BaseModel):
    success: bool
    error_message: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    service: str
