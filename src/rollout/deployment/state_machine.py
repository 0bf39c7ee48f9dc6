"""Authoritative transition table for canary deployments.

::

    pending -> initializing -> progressing <-> paused -> promoting -> promoted
    pending|initializing|progressing|paused -> rolling_back -> rolled_back
    pending|initializing|progressing|paused -> cancelled
    progressing -> failed
"""
from typing import Dict, FrozenSet, Iterable

from loguru import logger

from src.rollout.core.errors import InvalidStateError
from src.rollout.deployment.models import CanaryDeployment, DeploymentStatus as S
from src.rollout.monitoring.metrics import CANARY_TRANSITIONS

_ABORTABLE = frozenset({S.PENDING, S.INITIALIZING, S.PROGRESSING, S.PAUSED})

TRANSITIONS: Dict[S, FrozenSet[S]] = {
    S.PENDING: frozenset({S.INITIALIZING, S.ROLLING_BACK, S.CANCELLED}),
    S.INITIALIZING: frozenset({S.PROGRESSING, S.ROLLING_BACK, S.CANCELLED}),
    S.PROGRESSING: frozenset({S.PAUSED, S.PROMOTING, S.ROLLING_BACK, S.CANCELLED, S.FAILED}),
    S.PAUSED: frozenset({S.PROGRESSING, S.PROMOTING, S.ROLLING_BACK, S.CANCELLED}),
    S.PROMOTING: frozenset({S.PROMOTED}),
    S.ROLLING_BACK: frozenset({S.ROLLED_BACK}),
    S.PROMOTED: frozenset(),
    S.ROLLED_BACK: frozenset(),
    S.FAILED: frozenset(),
    S.CANCELLED: frozenset(),
}

# Source states accepted by each operator-facing operation
OPERATION_SOURCES: Dict[str, FrozenSet[S]] = {
    "start": frozenset({S.PENDING}),
    "progress": frozenset({S.PROGRESSING}),
    "pause": frozenset({S.PROGRESSING}),
    "resume": frozenset({S.PAUSED}),
    "promote": frozenset({S.PROGRESSING, S.PAUSED}),
    "cancel": _ABORTABLE,
    "rollback": _ABORTABLE,
}


def can_transition(source: S, target: S) -> bool:
    return target in TRANSITIONS[source]


def require_operation(deployment: CanaryDeployment, operation: str) -> None:
    """Reject an operation the deployment's current state does not allow.

    Raises:
        InvalidStateError: e.g. "cannot promote deployment in state rolled_back"
    """
    if deployment.status not in OPERATION_SOURCES[operation]:
        raise InvalidStateError.for_transition(operation, deployment.status.value)


def transition(deployment: CanaryDeployment, target: S, message: str = None) -> CanaryDeployment:
    """Move a deployment along one edge of the table, in place."""
    source = deployment.status
    if not can_transition(source, target):
        raise InvalidStateError(
            f"invalid transition {source.value} -> {target.value} for deployment {deployment.id}",
            state=source.value,
        )
    deployment.status = target
    CANARY_TRANSITIONS.labels(source=source.value, target=target.value).inc()
    if message is not None:
        deployment.status_message = message
    logger.info(f"Deployment {deployment.id}: {source.value} -> {target.value}")
    return deployment


def walk(deployment: CanaryDeployment, path: Iterable[S], message: str = None) -> CanaryDeployment:
    """Apply consecutive transitions, e.g. promoting then promoted."""
    for target in path:
        transition(deployment, target, message)
    return deployment
