"""Monitoring components for the rollout service."""

from .metrics import (
    PrometheusMiddleware,
    metrics_endpoint,
    CANARY_PERCENT,
    CANARY_TRANSITIONS,
    GATEWAY_FAILURES,
    GATEWAY_LATENCY,
    HEALTH_VERDICTS,
    PROGRESS_OUTCOMES,
    ROLLBACKS,
)

from .tracing import (
    setup_tracing,
    tracer,
    set_span_attributes,
    record_exception,
)

__all__ = [
    # Prometheus
    "PrometheusMiddleware",
    "metrics_endpoint",
    "CANARY_PERCENT",
    "CANARY_TRANSITIONS",
    "GATEWAY_FAILURES",
    "GATEWAY_LATENCY",
    "HEALTH_VERDICTS",
    "PROGRESS_OUTCOMES",
    "ROLLBACKS",
    # Tracing
    "setup_tracing",
    "tracer",
    "set_span_attributes",
    "record_exception",
]
