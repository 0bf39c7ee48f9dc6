"""Step progression arithmetic and interval gating."""
from datetime import datetime, timedelta
from typing import Optional

from src.rollout.deployment.models import CanaryDeployment, DeploymentStep, MetricSnapshot


class StepScheduler:
    """Decides where the next step lands and whether it is due yet.

    The scheduler is stateless; everything it needs lives on the deployment
    and its latest step, so it can be shared across deployments.
    """

    def next_percent(self, deployment: CanaryDeployment) -> int:
        """Traffic share of the next step, capped at the target."""
        return min(
            deployment.current_canary_percent + deployment.increment_percent,
            deployment.target_canary_percent,
        )

    def interval(self, deployment: CanaryDeployment) -> timedelta:
        return timedelta(minutes=deployment.increment_interval_minutes)

    def step_elapsed(self, step: Optional[DeploymentStep], now: datetime) -> Optional[timedelta]:
        """Time the step has been running, or None if it never started."""
        if step is None or step.started_at is None:
            return None
        return now - step.started_at

    def is_due(
        self,
        deployment: CanaryDeployment,
        step: Optional[DeploymentStep],
        now: datetime,
    ) -> bool:
        """True once a full increment interval has passed since the step started."""
        elapsed = self.step_elapsed(step, now)
        if elapsed is None:
            return True
        return elapsed >= self.interval(deployment)

    def next_due_at(self, deployment: CanaryDeployment, step: Optional[DeploymentStep]) -> Optional[datetime]:
        if step is None or step.started_at is None:
            return None
        return step.started_at + self.interval(deployment)

    def success_rate(self, snapshot: Optional[MetricSnapshot]) -> Optional[float]:
        """Success rate recorded on a completed step, rounded to 2 decimals."""
        if snapshot is None:
            return None
        return round(max(0.0, min(100.0, snapshot.canary_success_rate)), 2)
