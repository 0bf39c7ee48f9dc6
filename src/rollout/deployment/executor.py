"""Action-execution boundary: applying canary traffic weights.

The controller decides *what* share of traffic the canary should get; a
:class:`TrafficExecutor` makes it so. ``KubectlTrafficExecutor`` drives an
NGINX ingress canary via annotations; ``DryRunTrafficExecutor`` only logs.
"""
import asyncio
import subprocess
from abc import ABC, abstractmethod
from typing import Dict, List

from loguru import logger

from src.rollout.core.errors import TrafficShiftError
from src.rollout.deployment.models import CanaryDeployment, TrafficSplitType

ANNOTATION_PREFIX = "nginx.ingress.kubernetes.io"


class TrafficExecutor(ABC):
    """Applies a canary traffic share to the serving layer."""

    @abstractmethod
    async def apply_traffic(self, deployment: CanaryDeployment, percent: int) -> None:
        """Route ``percent`` of traffic to the canary.

        Raises:
            TrafficShiftError: if the weight could not be applied
        """

    async def revert(self, deployment: CanaryDeployment) -> None:
        """Send all traffic back to stable."""
        await self.apply_traffic(deployment, 0)


class DryRunTrafficExecutor(TrafficExecutor):
    """Records requested weights without touching any cluster."""

    def __init__(self):
        self.weights: Dict[int, int] = {}

    async def apply_traffic(self, deployment: CanaryDeployment, percent: int) -> None:
        logger.info(f"[dry-run] Deployment {deployment.id}: canary weight -> {percent}%")
        self.weights[deployment.id] = percent


class KubectlTrafficExecutor(TrafficExecutor):
    """Patches the canary Ingress of a deployment with kubectl."""

    def __init__(
        self,
        ingress_suffix: str = "-canary",
        header_name: str = "X-Canary",
        cookie_name: str = "canary",
        timeout: float = 30.0,
        kubectl: str = "kubectl",
    ):
        self.ingress_suffix = ingress_suffix
        self.header_name = header_name
        self.cookie_name = cookie_name
        self.timeout = timeout
        self.kubectl = kubectl

    def ingress_name(self, deployment: CanaryDeployment) -> str:
        return f"{deployment.target_deployment}{self.ingress_suffix}"

    def annotations(self, deployment: CanaryDeployment, percent: int) -> List[str]:
        """Annotations for the deployment's split type at the given weight."""
        annotations = [
            f"{ANNOTATION_PREFIX}/canary=true",
            f"{ANNOTATION_PREFIX}/canary-weight={percent}",
        ]
        if deployment.traffic_split_type == TrafficSplitType.HEADER:
            annotations.append(f"{ANNOTATION_PREFIX}/canary-by-header={self.header_name}")
        elif deployment.traffic_split_type == TrafficSplitType.COOKIE:
            annotations.append(f"{ANNOTATION_PREFIX}/canary-by-cookie={self.cookie_name}")
        return annotations

    def build_command(self, deployment: CanaryDeployment, percent: int) -> List[str]:
        return [
            self.kubectl, "annotate", "ingress", self.ingress_name(deployment),
            *self.annotations(deployment, percent),
            "--overwrite",
            "-n", deployment.namespace,
        ]

    async def apply_traffic(self, deployment: CanaryDeployment, percent: int) -> None:
        cmd = self.build_command(deployment, percent)
        logger.info(f"--> Setting canary weight of {self.ingress_name(deployment)} to {percent}%")
        try:
            await asyncio.to_thread(
                subprocess.run,
                cmd,
                check=True,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.CalledProcessError as e:
            logger.error(f"kubectl annotate failed: {e.stderr}")
            raise TrafficShiftError(
                f"kubectl exited with {e.returncode}: {(e.stderr or '').strip()}", percent
            ) from e
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.error(f"kubectl annotate failed: {e}")
            raise TrafficShiftError(str(e), percent) from e
