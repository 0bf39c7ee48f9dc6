"""Exception hierarchy for the rollout controller.

Structural errors (validation, not-found, invalid-state) are raised to the
caller and never retried. ``GatewayUnavailable`` is absorbed by the
controller into an ``unknown`` health verdict. ``RollbackFailure`` and
``TrafficShiftError`` describe failed actions at the execution boundary.
"""
from typing import Optional, Union


class RolloutError(Exception):
    """Base exception for the rollout service."""


class ValidationError(RolloutError):
    """Invalid create/update input. Never mutates state."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field


class NotFoundError(RolloutError):
    """Unknown entity id."""

    def __init__(self, kind: str, entity_id: Union[int, str]) -> None:
        super().__init__(f"{kind} not found: {entity_id}")
        self.kind = kind
        self.entity_id = entity_id


class InvalidStateError(RolloutError):
    """Operation not legal in the current state."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        state: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.state = state

    @classmethod
    def for_transition(cls, operation: str, state: str) -> "InvalidStateError":
        return cls(
            f"cannot {operation} deployment in state {state}",
            operation=operation,
            state=state,
        )


class GatewayUnavailable(RolloutError):
    """Metrics source could not be reached within the configured timeout."""


class TrafficShiftError(RolloutError):
    """The traffic executor failed to apply a canary weight."""

    def __init__(self, message: str, percent: int) -> None:
        super().__init__(message)
        self.percent = percent


class RollbackFailure(RolloutError):
    """A rollback could not be carried out. Recorded and retryable."""

    def __init__(self, rollback_id: int, message: str) -> None:
        super().__init__(f"Rollback {rollback_id} failed: {message}")
        self.rollback_id = rollback_id
