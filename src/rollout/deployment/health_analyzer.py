"""Health classification and promote/rollback recommendation.

Classification walks an ordered list of rules. Every ``unhealthy`` rule is
evaluated and each breach adds a reason; ``degraded`` rules are only
consulted when no ``unhealthy`` rule fired. Unhealthy dominates degraded,
which dominates healthy.

Example:
    >>> analyzer = HealthAnalyzer()
    >>> verdict = analyzer.classify(deployment, snapshot, step_elapsed=timedelta(minutes=5))
    >>> if verdict.should_rollback:
    >>>     await rollback_manager.initiate(deployment.id, verdict.reasons[0], verdict.rollback_trigger)
"""
from dataclasses import dataclass, field, replace
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from loguru import logger

from src.rollout.deployment.advisor import Advisor
from src.rollout.deployment.models import (
    CanaryDeployment,
    HealthStatus,
    HealthThresholds,
    MetricSnapshot,
    RollbackFlags,
    RollbackTrigger,
)
from src.rollout.monitoring.metrics import HEALTH_VERDICTS


class RuleKind(str, Enum):
    ERROR_RATE = "error_rate"
    LATENCY = "latency"
    POD_FAILURE = "pod_failure"
    SUCCESS_RATE = "success_rate"


@dataclass(frozen=True)
class HealthRule:
    """One classification condition.

    ``flag`` names the :class:`RollbackFlags` attribute that allows this
    breach to trigger an automatic rollback; rules without a flag never do.
    """
    kind: RuleKind
    severity: HealthStatus
    breached: Callable[[MetricSnapshot, HealthThresholds], bool]
    describe: Callable[[MetricSnapshot, HealthThresholds], str]
    trigger: Optional[RollbackTrigger] = None
    flag: Optional[str] = None

    def allows_rollback(self, flags: RollbackFlags) -> bool:
        return self.flag is not None and bool(getattr(flags, self.flag))


DEFAULT_RULES: Sequence[HealthRule] = (
    HealthRule(
        kind=RuleKind.ERROR_RATE,
        severity=HealthStatus.UNHEALTHY,
        breached=lambda s, t: s.canary_error_rate > t.error_rate_pct,
        describe=lambda s, t: f"Error rate {s.canary_error_rate:.2f}% exceeds threshold {t.error_rate_pct}%",
        trigger=RollbackTrigger.ERROR_RATE,
        flag="on_error_rate",
    ),
    HealthRule(
        kind=RuleKind.LATENCY,
        severity=HealthStatus.UNHEALTHY,
        breached=lambda s, t: s.canary_avg_latency > t.latency_ms,
        describe=lambda s, t: f"Latency {s.canary_avg_latency:.0f}ms exceeds threshold {t.latency_ms}ms",
        trigger=RollbackTrigger.LATENCY,
        flag="on_latency",
    ),
    HealthRule(
        kind=RuleKind.POD_FAILURE,
        severity=HealthStatus.UNHEALTHY,
        breached=lambda s, t: s.canary_healthy_pods < t.min_healthy_pods,
        describe=lambda s, t: f"Healthy pods {s.canary_healthy_pods} below minimum {t.min_healthy_pods}",
        trigger=RollbackTrigger.POD_FAILURE,
        flag="on_pod_failure",
    ),
    HealthRule(
        kind=RuleKind.SUCCESS_RATE,
        severity=HealthStatus.DEGRADED,
        breached=lambda s, t: s.canary_success_rate < t.success_rate_pct,
        describe=lambda s, t: f"Success rate {s.canary_success_rate:.2f}% below threshold {t.success_rate_pct}%",
    ),
)


@dataclass
class HealthVerdict:
    """Outcome of one health evaluation."""
    analysis_result: HealthStatus
    reasons: List[str] = field(default_factory=list)
    should_promote: bool = False
    should_rollback: bool = False
    rollback_trigger: Optional[RollbackTrigger] = None
    breached: List[RuleKind] = field(default_factory=list)
    snapshot: Optional[MetricSnapshot] = None
    advisory: Optional[str] = None

    @property
    def is_healthy(self) -> bool:
        return self.analysis_result == HealthStatus.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "analysis_result": self.analysis_result.value,
            "is_healthy": self.is_healthy,
            "reasons": list(self.reasons),
            "should_promote": self.should_promote,
            "should_rollback": self.should_rollback,
            "rollback_trigger": self.rollback_trigger.value if self.rollback_trigger else None,
            "breached": [kind.value for kind in self.breached],
            "metrics": self.snapshot.to_dict() if self.snapshot else None,
            "advisory": self.advisory,
        }


class HealthAnalyzer:
    """Turns a snapshot plus a deployment's thresholds into a verdict."""

    def __init__(
        self,
        rules: Sequence[HealthRule] = DEFAULT_RULES,
        advisor: Optional[Advisor] = None,
    ):
        """Initialize the analyzer.

        Args:
            rules: Ordered rules; unhealthy rules must come before degraded ones
            advisor: Optional source of free-text advice for bad verdicts
        """
        self.rules = tuple(rules)
        self.advisor = advisor

    def classify(
        self,
        deployment: CanaryDeployment,
        snapshot: MetricSnapshot,
        step_elapsed: Optional[timedelta],
    ) -> HealthVerdict:
        """Classify a snapshot against the deployment's thresholds.

        Args:
            deployment: Deployment whose thresholds and rollback flags apply
            snapshot: Fresh metrics for the canary and stable cohorts
            step_elapsed: How long the current step has been running

        Returns:
            HealthVerdict with reasons and recommendations
        """
        thresholds = deployment.thresholds
        flags = deployment.rollback

        unhealthy = [
            rule for rule in self.rules
            if rule.severity == HealthStatus.UNHEALTHY and rule.breached(snapshot, thresholds)
        ]
        if unhealthy:
            fired = unhealthy
            result = HealthStatus.UNHEALTHY
        else:
            fired = [
                rule for rule in self.rules
                if rule.severity == HealthStatus.DEGRADED and rule.breached(snapshot, thresholds)
            ]
            result = HealthStatus.DEGRADED if fired else HealthStatus.HEALTHY

        reasons = [rule.describe(snapshot, thresholds) for rule in fired]

        rollback_rule = None
        if result == HealthStatus.UNHEALTHY and flags.auto_rollback_enabled:
            rollback_rule = next((rule for rule in fired if rule.allows_rollback(flags)), None)

        interval = timedelta(minutes=deployment.increment_interval_minutes)
        should_promote = (
            result == HealthStatus.HEALTHY
            and step_elapsed is not None
            and step_elapsed >= interval
        )
        if result == HealthStatus.HEALTHY:
            reasons.append(
                f"Success rate {snapshot.canary_success_rate:.2f}% meets threshold "
                f"{thresholds.success_rate_pct}%"
            )

        verdict = HealthVerdict(
            analysis_result=result,
            reasons=reasons,
            should_promote=should_promote,
            should_rollback=rollback_rule is not None,
            rollback_trigger=rollback_rule.trigger if rollback_rule else None,
            breached=[rule.kind for rule in fired],
            snapshot=snapshot,
        )
        HEALTH_VERDICTS.labels(result=result.value).inc()

        if verdict.should_rollback:
            logger.warning(f"Deployment {deployment.id} unhealthy, rollback recommended: {reasons}")
        elif result != HealthStatus.HEALTHY:
            logger.warning(f"Deployment {deployment.id} {result.value}: {reasons}")
        else:
            logger.info(f"Deployment {deployment.id} healthy at {deployment.current_canary_percent}%")
        return verdict

    def unknown(self, deployment: CanaryDeployment, reason: str) -> HealthVerdict:
        """Fail-safe verdict when no metrics could be read."""
        HEALTH_VERDICTS.labels(result=HealthStatus.UNKNOWN.value).inc()
        logger.warning(f"Deployment {deployment.id} health unknown: {reason}")
        return HealthVerdict(
            analysis_result=HealthStatus.UNKNOWN,
            reasons=[f"Metrics unavailable: {reason}"],
        )

    async def annotate(self, deployment: CanaryDeployment, verdict: HealthVerdict) -> HealthVerdict:
        """Attach advisory text to a degraded or unhealthy verdict.

        Called after the controller has acted on the verdict; the returned copy
        carries the same decision fields.
        """
        if self.advisor is None or verdict.snapshot is None:
            return verdict
        if verdict.analysis_result not in (HealthStatus.DEGRADED, HealthStatus.UNHEALTHY):
            return verdict

        try:
            advisory = await self.advisor.advise(deployment, verdict.snapshot, verdict.reasons)
        except Exception as e:
            logger.warning(f"Advisory for deployment {deployment.id} dropped: {e!r}")
            return verdict
        return replace(verdict, advisory=advisory)
