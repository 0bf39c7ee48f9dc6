"""Health numbers for the canary and stable cohorts of a deployment.

The controller consumes :class:`MetricsGateway`; the Prometheus
implementation below assumes pods expose the usual HTTP request counters
labelled with ``namespace``, ``deployment`` and ``track`` (canary/stable),
and that kube-state-metrics is scraped for pod readiness.

Example:
    >>> gateway = PrometheusMetricsGateway("http://prometheus:9090", timeout=5)
    >>> snapshot = await gateway.fetch(deployment)
    >>> snapshot.canary_error_rate
    0.42
"""
import asyncio
import math
import time
import warnings
from abc import ABC, abstractmethod
from typing import Dict, Optional

import httpx
import pybreaker
from loguru import logger

from src.rollout.core.circuit_breaker import metrics_breaker
from src.rollout.core.errors import GatewayUnavailable
from src.rollout.deployment.models import CanaryDeployment, MetricSnapshot
from src.rollout.monitoring.metrics import GATEWAY_FAILURES, GATEWAY_LATENCY

# Stable cohort is only compared on request health, not pod counts
STABLE_METRICS = ("error_rate", "avg_latency")


class MetricsGateway(ABC):
    """Source of point-in-time health numbers for a deployment."""

    @abstractmethod
    async def fetch(self, deployment: CanaryDeployment) -> MetricSnapshot:
        """Return a fresh snapshot.

        Raises:
            GatewayUnavailable: if the source cannot answer within its timeout
        """

    async def close(self) -> None:
        pass


class PrometheusMetricsGateway(MetricsGateway):
    """Reads canary/stable cohort metrics from Prometheus."""

    def __init__(
        self,
        prometheus_url: str = "http://prometheus:9090",
        timeout: float = 10.0,
        window: str = "5m",
        breaker: Optional[pybreaker.CircuitBreaker] = None,
    ):
        """Initialize the gateway.

        Args:
            prometheus_url: Prometheus server URL
            timeout: Upper bound in seconds for a whole snapshot
            window: PromQL range used for rates
            breaker: Circuit breaker guarding the Prometheus calls
        """
        self.prometheus_url = prometheus_url.rstrip("/")
        self.timeout = timeout
        self.window = window
        self.breaker = breaker or metrics_breaker

        series = 'http_requests_total{{namespace="{namespace}",deployment="{name}",track="{track}"{extra}}}'
        self.queries = {
            "error_rate": (
                "(sum(rate(" + series.replace("{extra}", ',status=~"5.."') + "[{window}]))"
                " / sum(rate(" + series.replace("{extra}", "") + "[{window}]))) * 100"
            ),
            "avg_latency": (
                'sum(rate(http_request_duration_seconds_sum{{namespace="{namespace}",deployment="{name}",track="{track}"}}[{window}]))'
                ' / sum(rate(http_request_duration_seconds_count{{namespace="{namespace}",deployment="{name}",track="{track}"}}[{window}])) * 1000'
            ),
            "healthy_pods": 'sum(kube_pod_status_ready{{namespace="{namespace}",pod=~"{name}-{track}-.*",condition="true"}})',
            "total_pods": 'count(kube_pod_info{{namespace="{namespace}",pod=~"{name}-{track}-.*"}})',
        }
        # Per-request budget so a hung Prometheus fails inside the breaker
        self.query_timeout = timeout / (len(self.queries) + len(STABLE_METRICS))
        self.client = httpx.Client(timeout=self.query_timeout)

    async def fetch(self, deployment: CanaryDeployment) -> MetricSnapshot:
        started = time.monotonic()
        try:
            snapshot = await asyncio.wait_for(
                asyncio.to_thread(self.breaker.call, self._fetch_sync, deployment),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            GATEWAY_FAILURES.labels(reason="timeout").inc()
            raise GatewayUnavailable(
                f"Metrics for deployment {deployment.id} not available within {self.timeout}s"
            ) from e
        except pybreaker.CircuitBreakerError as e:
            GATEWAY_FAILURES.labels(reason="circuit_open").inc()
            raise GatewayUnavailable(f"Metrics gateway circuit open: {e}") from e
        except (httpx.HTTPError, ValueError, KeyError, IndexError) as e:
            GATEWAY_FAILURES.labels(reason="query_error").inc()
            logger.error(f"Failed to fetch metrics for deployment {deployment.id}: {e}")
            raise GatewayUnavailable(str(e)) from e
        finally:
            GATEWAY_LATENCY.observe(time.monotonic() - started)

        logger.debug(
            f"Snapshot for deployment {deployment.id}: canary error {snapshot.canary_error_rate:.2f}% "
            f"latency {snapshot.canary_avg_latency:.0f}ms "
            f"pods {snapshot.canary_healthy_pods}/{snapshot.canary_total_pods}"
        )
        return snapshot

    def _fetch_sync(self, deployment: CanaryDeployment) -> MetricSnapshot:
        """Query every metric for both cohorts (runs in a worker thread)."""
        canary = self._cohort(deployment, "canary")
        stable = self._cohort(deployment, "stable", metrics=STABLE_METRICS)

        return MetricSnapshot(
            deployment_id=deployment.id,
            canary_percent=deployment.current_canary_percent,
            canary_error_rate=canary["error_rate"],
            canary_avg_latency=canary["avg_latency"],
            canary_healthy_pods=int(canary["healthy_pods"]),
            canary_total_pods=int(canary["total_pods"]),
            stable_error_rate=stable["error_rate"],
            stable_avg_latency=stable["avg_latency"],
        )

    def _cohort(self, deployment: CanaryDeployment, track: str, metrics=None) -> Dict[str, float]:
        values = {}
        for metric_name in metrics or self.queries:
            query = self.queries[metric_name].format(
                namespace=deployment.namespace,
                name=deployment.target_deployment,
                track=track,
                window=self.window,
            )
            values[metric_name] = self._query_prometheus(query)
        return values

    def _query_prometheus(self, query: str) -> float:
        """Execute an instant query and return the first sample as float.

        Raises:
            httpx.HTTPError: If the request fails
            ValueError: If Prometheus reports an error
        """
        response = self.client.get(f"{self.prometheus_url}/api/v1/query", params={"query": query})
        response.raise_for_status()

        data = response.json()
        if data["status"] != "success":
            raise ValueError(f"Prometheus query failed: {data}")

        result = data["data"]["result"]
        if not result:
            warnings.warn(f"No data returned for query: {query}")
            return 0.0

        value_str = result[0]["value"][1]
        try:
            value = float(value_str)
        except (ValueError, TypeError):
            warnings.warn(f"Invalid metric value: {value_str}")
            return 0.0

        # rate()/rate() with no traffic yields NaN
        return 0.0 if math.isnan(value) or math.isinf(value) else value

    async def close(self) -> None:
        """Close HTTP client."""
        self.client.close()
