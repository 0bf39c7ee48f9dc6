"""Free-text advisory summaries for degraded or unhealthy canaries.

Advice is attached to a verdict after the promote/rollback decision has been
made and never feeds back into it.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import List, Optional

import httpx
import pybreaker
from loguru import logger

from src.rollout.core.circuit_breaker import advisor_breaker
from src.rollout.deployment.models import CanaryDeployment, MetricSnapshot

SYSTEM_PROMPT = (
    "You are a DevOps expert analyzing canary deployments. Be concise and actionable."
)


class Advisor(ABC):
    """Produces a short human-readable recommendation."""

    @abstractmethod
    async def advise(
        self,
        deployment: CanaryDeployment,
        snapshot: MetricSnapshot,
        reasons: List[str],
    ) -> Optional[str]:
        pass

    async def close(self) -> None:
        pass


def build_prompt(deployment: CanaryDeployment, snapshot: MetricSnapshot, reasons: List[str]) -> str:
    thresholds = deployment.thresholds
    return (
        "Analyze this canary deployment and provide a brief recommendation:\n\n"
        f"Deployment: {deployment.name}\n"
        f"Target: {deployment.target_deployment}\n"
        f"Current Traffic: {deployment.current_canary_percent}%\n"
        f"Canary Image: {deployment.canary_image}\n\n"
        "Metrics:\n"
        f"- Canary Error Rate: {snapshot.canary_error_rate:.2f}%\n"
        f"- Stable Error Rate: {snapshot.stable_error_rate:.2f}%\n"
        f"- Canary Latency: {snapshot.canary_avg_latency:.0f}ms\n"
        f"- Stable Latency: {snapshot.stable_avg_latency:.0f}ms\n"
        f"- Healthy Pods: {snapshot.canary_healthy_pods}/{snapshot.canary_total_pods}\n\n"
        f"Issues: {', '.join(reasons)}\n\n"
        "Thresholds:\n"
        f"- Error Rate: {thresholds.error_rate_pct}%\n"
        f"- Latency: {thresholds.latency_ms}ms\n"
        f"- Min Healthy Pods: {thresholds.min_healthy_pods}\n\n"
        "Provide a brief (2-3 sentences) recommendation on whether to rollback, "
        "pause, or continue the deployment."
    )


class ChatCompletionAdvisor(Advisor):
    """Asks an OpenAI-compatible chat completions endpoint for advice."""

    def __init__(
        self,
        url: str,
        model: str,
        api_key: Optional[str] = None,
        timeout: float = 15.0,
        breaker: Optional[pybreaker.CircuitBreaker] = None,
    ):
        self.url = url
        self.model = model
        self.timeout = timeout
        self.breaker = breaker or advisor_breaker
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = httpx.Client(timeout=timeout, headers=headers)

    async def advise(
        self,
        deployment: CanaryDeployment,
        snapshot: MetricSnapshot,
        reasons: List[str],
    ) -> Optional[str]:
        prompt = build_prompt(deployment, snapshot, reasons)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.breaker.call, self._complete_sync, prompt),
                timeout=self.timeout,
            )
        except (
            asyncio.TimeoutError,
            pybreaker.CircuitBreakerError,
            httpx.HTTPError,
            KeyError,
            IndexError,
            TypeError,
            ValueError,
        ) as e:
            # Advisory only: a missing recommendation never blocks a decision
            logger.warning(f"Advisor unavailable for deployment {deployment.id}: {e!r}")
            return None

    def _complete_sync(self, prompt: str) -> str:
        response = self.client.post(
            self.url,
            json={
                "model": self.model,
                "messages": [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
            },
        )
        response.raise_for_status()
        content = response.json()["choices"][0]["message"]["content"]
        return content if isinstance(content, str) else "Unable to generate recommendation"

    async def close(self) -> None:
        self.client.close()
