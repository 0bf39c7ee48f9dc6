import time
from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp
from fastapi import Request, Response

# HTTP metrics
REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status_code"]
)

REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"]
)

# Controller metrics
CANARY_TRANSITIONS = Counter(
    "canary_state_transitions_total",
    "Deployment state transitions",
    ["source", "target"]
)

CANARY_PERCENT = Gauge(
    "canary_traffic_percent",
    "Current share of traffic routed to the canary",
    ["deployment_id", "name"]
)


def export_canary_percent(deployment) -> None:
    """Publish the canary share of an active deployment; finished ones drop their series."""
    labels = (str(deployment.id), deployment.name)
    gauge = CANARY_PERCENT.labels(*labels)
    if deployment.status.is_terminal:
        CANARY_PERCENT.remove(*labels)
    else:
        gauge.set(deployment.current_canary_percent)


HEALTH_VERDICTS = Counter(
    "canary_health_verdicts_total",
    "Health analyzer classifications",
    ["result"]
)

PROGRESS_OUTCOMES = Counter(
    "canary_progress_outcomes_total",
    "Outcomes of progress evaluations",
    ["outcome"]
)

ROLLBACKS = Counter(
    "canary_rollbacks_total",
    "Rollback records by trigger and final status",
    ["trigger", "status"]
)

GATEWAY_FAILURES = Counter(
    "canary_metrics_gateway_failures_total",
    "Metrics snapshots that could not be fetched",
    ["reason"]
)

GATEWAY_LATENCY = Histogram(
    "canary_metrics_gateway_seconds",
    "Time spent fetching a metrics snapshot"
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            process_time = time.time() - start_time

            # Record metrics (skip health checks to reduce noise)
            if "/health" not in request.url.path and "/metrics" not in request.url.path:
                # Route template keeps label cardinality bounded (/deployments/{deployment_id})
                route = request.scope.get("route")
                endpoint = getattr(route, "path", request.url.path)
                REQUEST_COUNT.labels(
                    method=request.method,
                    endpoint=endpoint,
                    status_code=status_code
                ).inc()

                REQUEST_LATENCY.labels(
                    method=request.method,
                    endpoint=endpoint
                ).observe(process_time)

        return response

def metrics_endpoint(request: Request):
    """Endpoint for Prometheus scraping."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
