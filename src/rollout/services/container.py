"""Wiring of the controller and its collaborators from settings."""
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from loguru import logger

from src.rollout.core.config import Settings, settings as default_settings
from src.rollout.core.errors import ValidationError
from src.rollout.deployment.advisor import Advisor, ChatCompletionAdvisor
from src.rollout.deployment.controller import LifecycleController
from src.rollout.deployment.executor import (
    DryRunTrafficExecutor,
    KubectlTrafficExecutor,
    TrafficExecutor,
)
from src.rollout.deployment.health_analyzer import HealthAnalyzer
from src.rollout.deployment.metrics_gateway import MetricsGateway, PrometheusMetricsGateway
from src.rollout.deployment.repository import DeploymentRepository, InMemoryDeploymentRepository
from src.rollout.deployment.templates import TemplateStore


@dataclass
class RolloutServices:
    """Everything the HTTP layer needs, owned by the application lifespan."""
    controller: LifecycleController
    templates: TemplateStore
    repository: DeploymentRepository
    gateway: MetricsGateway
    executor: TrafficExecutor
    advisor: Optional[Advisor] = None

    async def close(self) -> None:
        await self.gateway.close()
        if self.advisor is not None:
            await self.advisor.close()
        logger.info("Rollout services closed")


def build_executor(config: Settings) -> TrafficExecutor:
    if config.TRAFFIC_EXECUTOR == "dry_run":
        return DryRunTrafficExecutor()
    if config.TRAFFIC_EXECUTOR == "kubectl":
        return KubectlTrafficExecutor(
            ingress_suffix=config.CANARY_INGRESS_SUFFIX,
            header_name=config.CANARY_HEADER_NAME,
            cookie_name=config.CANARY_COOKIE_NAME,
            timeout=config.KUBECTL_TIMEOUT_SECONDS,
        )
    raise ValidationError("TRAFFIC_EXECUTOR", "must be one of ['dry_run', 'kubectl']")


def build_services(
    config: Settings = default_settings,
    repository: Optional[DeploymentRepository] = None,
    gateway: Optional[MetricsGateway] = None,
    executor: Optional[TrafficExecutor] = None,
    advisor: Optional[Advisor] = None,
) -> RolloutServices:
    """Assemble the service graph; explicit collaborators win over settings."""
    repository = repository or InMemoryDeploymentRepository(snapshot_history=config.METRIC_HISTORY_LIMIT)
    gateway = gateway or PrometheusMetricsGateway(
        prometheus_url=config.PROMETHEUS_URL,
        timeout=config.METRICS_TIMEOUT_SECONDS,
        window=config.METRICS_WINDOW,
    )
    executor = executor or build_executor(config)
    if advisor is None and config.ADVISOR_ENABLED:
        advisor = ChatCompletionAdvisor(
            url=config.ADVISOR_URL,
            model=config.ADVISOR_MODEL,
            api_key=config.ADVISOR_API_KEY,
            timeout=config.ADVISOR_TIMEOUT_SECONDS,
        )

    controller = LifecycleController(
        repository=repository,
        gateway=gateway,
        analyzer=HealthAnalyzer(advisor=advisor),
        executor=executor,
        auto_execute_rollback=config.AUTO_EXECUTE_ROLLBACK,
    )
    logger.info(
        f"Rollout services ready (executor={type(executor).__name__}, "
        f"gateway={type(gateway).__name__}, advisor={'on' if advisor else 'off'})"
    )
    return RolloutServices(
        controller=controller,
        templates=TemplateStore(),
        repository=repository,
        gateway=gateway,
        executor=executor,
        advisor=advisor,
    )


def get_services(request: Request) -> RolloutServices:
    return request.app.state.services


def get_controller(request: Request) -> LifecycleController:
    return get_services(request).controller


def get_templates(request: Request) -> TemplateStore:
    return get_services(request).templates
