"""Example driving a canary rollout in-process against simulated metrics.

Runs two rollouts with the dry-run executor: a good build that walks all
the way to 100%, and a bad build whose error rate spikes at 40% traffic
and is rolled back automatically.

Usage:
    python -m examples.local_rollout
"""
import asyncio
from datetime import datetime, timedelta, timezone

from loguru import logger

from src.rollout.core.logging import setup_logging
from src.rollout.deployment import (
    CanaryDeployment,
    DeploymentConfig,
    HealthThresholds,
    InMemoryDeploymentRepository,
    LifecycleController,
    MetricSnapshot,
    ProgressOutcome,
)
from src.rollout.deployment.executor import DryRunTrafficExecutor
from src.rollout.deployment.metrics_gateway import MetricsGateway


class SimulatedClock:
    """Jumps forward one increment interval on every tick."""

    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def tick(self, minutes: int) -> None:
        self.now += timedelta(minutes=minutes)


class SimulatedGateway(MetricsGateway):
    """Healthy metrics, except for canaries marked broken once they see real traffic."""

    def __init__(self, broken_at_percent: int = 0):
        self.broken_at_percent = broken_at_percent

    async def fetch(self, deployment: CanaryDeployment) -> MetricSnapshot:
        broken = (
            self.broken_at_percent
            and deployment.current_canary_percent >= self.broken_at_percent
        )
        return MetricSnapshot(
            canary_error_rate=12.0 if broken else 0.4,
            canary_avg_latency=180.0,
            canary_healthy_pods=3,
            canary_total_pods=3,
            stable_error_rate=0.3,
            stable_avg_latency=170.0,
        )


async def run_rollout(name: str, gateway: MetricsGateway) -> None:
    clock = SimulatedClock()
    executor = DryRunTrafficExecutor()
    controller = LifecycleController(
        repository=InMemoryDeploymentRepository(),
        gateway=gateway,
        executor=executor,
        clock=clock,
    )

    deployment = await controller.create(DeploymentConfig(
        name=name,
        target_deployment="checkout",
        canary_image=f"registry.local/checkout:{name}",
        initial_canary_percent=10,
        increment_percent=15,
        increment_interval_minutes=5,
        thresholds=HealthThresholds(error_rate_pct=2.0, latency_ms=400.0),
    ))
    await controller.start(deployment.id)
    logger.info(f"[{name}] started at {executor.weights[deployment.id]}%")

    while True:
        clock.tick(deployment.increment_interval_minutes)
        result = await controller.progress(deployment.id)
        logger.info(
            f"[{name}] {result.outcome.value} -> "
            f"{result.deployment.current_canary_percent}% ({result.deployment.status.value})"
        )

        if result.outcome == ProgressOutcome.ROLLING_BACK:
            record = await controller.execute_rollback(result.rollback.id)
            logger.warning(f"[{name}] rollback {record.status.value}: {record.reason}")
            break
        if result.deployment.status.is_terminal:
            break

    final = await controller.get(deployment.id)
    steps = await controller.get_steps(deployment.id)
    logger.info(
        f"[{name}] finished {final.status.value} after {len(steps)} steps, "
        f"traffic at {executor.weights[deployment.id]}%"
    )


async def main():
    setup_logging()
    await run_rollout("2.4.0", SimulatedGateway())
    await run_rollout("2.4.1-bad", SimulatedGateway(broken_at_percent=40))


if __name__ == "__main__":
    asyncio.run(main())
