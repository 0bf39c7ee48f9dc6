"""Circuit breakers for the controller's outbound dependencies."""
import pybreaker
from prometheus_client import Gauge
from loguru import logger

CIRCUIT_STATE = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state: 0=closed, 1=open, 2=half_open",
    ["service"],
)

_STATE_VALUES = {
    pybreaker.STATE_CLOSED: 0,
    pybreaker.STATE_OPEN: 1,
    pybreaker.STATE_HALF_OPEN: 2,
}


class BreakerStateListener(pybreaker.CircuitBreakerListener):
    """Logs state changes and mirrors them into the state gauge."""

    def state_change(self, cb, old_state, new_state):
        name = new_state.name
        if name == pybreaker.STATE_OPEN:
            logger.error(f"🔴 Circuit OPEN for {cb.name} after {cb.fail_counter} failures")
        elif name == pybreaker.STATE_HALF_OPEN:
            logger.warning(f"🟡 Circuit HALF-OPEN for {cb.name}")
        else:
            logger.info(f"🟢 Circuit CLOSED for {cb.name}")
        CIRCUIT_STATE.labels(service=cb.name).set(_STATE_VALUES.get(name, 0))


def make_breaker(name: str, fail_max: int = 5, reset_timeout: int = 60) -> pybreaker.CircuitBreaker:
    """Create a circuit breaker wired to the state gauge."""
    CIRCUIT_STATE.labels(service=name).set(0)
    return pybreaker.CircuitBreaker(
        fail_max=fail_max,
        reset_timeout=reset_timeout,
        name=name,
        listeners=[BreakerStateListener()],
    )


# Metrics gateway: open after 5 consecutive failed snapshots, retry after a minute
metrics_breaker = make_breaker("metrics_gateway")

# Advisory endpoint: never needed for a decision, so give up on it sooner
advisor_breaker = make_breaker("advisor", fail_max=3, reset_timeout=120)
