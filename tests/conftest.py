import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

# Disable OTLP export during tests to prevent connection errors
os.environ["OTEL_EXPORTER_OTLP_ENDPOINT"] = "none"
os.environ["SHUTDOWN_GRACE_SECONDS"] = "0"

# Import app modules AFTER setting the environment variables
from src.rollout.core.limiter import limiter
from src.rollout.core.errors import GatewayUnavailable, TrafficShiftError
from src.rollout.deployment.controller import LifecycleController
from src.rollout.deployment.executor import TrafficExecutor
from src.rollout.deployment.metrics_gateway import MetricsGateway
from src.rollout.deployment.models import CanaryDeployment, DeploymentConfig, MetricSnapshot
from src.rollout.deployment.repository import InMemoryDeploymentRepository
from src.rollout.deployment.templates import TemplateStore
from src.rollout.main import create_app
from src.rollout.services.container import RolloutServices

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class ManualClock:
    """Clock the test advances explicitly."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0) -> datetime:
        self.now += timedelta(minutes=minutes, seconds=seconds)
        return self.now


def healthy_snapshot(**overrides) -> MetricSnapshot:
    values = dict(
        canary_error_rate=0.5,
        canary_avg_latency=120.0,
        canary_healthy_pods=3,
        canary_total_pods=3,
        stable_error_rate=0.4,
        stable_avg_latency=110.0,
    )
    values.update(overrides)
    return MetricSnapshot(**values)


class StaticMetricsGateway(MetricsGateway):
    """Returns a copy of whatever snapshot the test put in ``snapshot``."""

    def __init__(self, snapshot: Optional[MetricSnapshot] = None):
        self.snapshot = snapshot or healthy_snapshot()
        self.calls = 0

    async def fetch(self, deployment: CanaryDeployment) -> MetricSnapshot:
        self.calls += 1
        await asyncio.sleep(0)
        s = self.snapshot
        return MetricSnapshot(
            canary_error_rate=s.canary_error_rate,
            canary_avg_latency=s.canary_avg_latency,
            canary_healthy_pods=s.canary_healthy_pods,
            canary_total_pods=s.canary_total_pods,
            stable_error_rate=s.stable_error_rate,
            stable_avg_latency=s.stable_avg_latency,
        )


class UnavailableMetricsGateway(MetricsGateway):
    async def fetch(self, deployment: CanaryDeployment) -> MetricSnapshot:
        raise GatewayUnavailable(f"Metrics for deployment {deployment.id} not available within 0.1s")


class RecordingExecutor(TrafficExecutor):
    """Records applied weights; fails for percents listed in ``fail_on``."""

    def __init__(self):
        self.calls: List[Tuple[int, int]] = []
        self.weights: Dict[int, int] = {}
        self.fail_on: set = set()

    async def apply_traffic(self, deployment: CanaryDeployment, percent: int) -> None:
        self.calls.append((deployment.id, percent))
        if percent in self.fail_on:
            raise TrafficShiftError(f"ingress {deployment.target_deployment} not found", percent)
        self.weights[deployment.id] = percent


def make_config(**overrides) -> DeploymentConfig:
    values = dict(
        name="checkout-v2",
        target_deployment="checkout",
        canary_image="registry.local/checkout:2.0.0",
        stable_image="registry.local/checkout:1.9.3",
        stable_version="1.9.3",
    )
    values.update(overrides)
    return DeploymentConfig(**values)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def repository():
    return InMemoryDeploymentRepository()


@pytest.fixture
def gateway():
    return StaticMetricsGateway()


@pytest.fixture
def executor():
    return RecordingExecutor()


@pytest.fixture
def controller(repository, gateway, executor, clock):
    return LifecycleController(
        repository=repository,
        gateway=gateway,
        executor=executor,
        clock=clock,
    )


@pytest.fixture
def services(controller, repository, gateway, executor):
    return RolloutServices(
        controller=controller,
        templates=TemplateStore(),
        repository=repository,
        gateway=gateway,
        executor=executor,
    )


@pytest.fixture
def client(services):
    limiter.reset()
    # Context manager triggers the lifespan events (startup/shutdown)
    with TestClient(create_app(services=services)) as c:
        yield c


@pytest.fixture
def make_deployment_config():
    return make_config


@pytest.fixture
def make_snapshot():
    return healthy_snapshot


@pytest.fixture
def unavailable_gateway():
    return UnavailableMetricsGateway()
