"""Prometheus metric definitions for the payment session service."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


payment_sessions_initiated_total = Counter(
    "payment_sessions_initiated_total",
    "Sessions created in PENDING_AUTHORIZATION",
    ["service"],
)
payment_session_transitions_total = Counter(
    "payment_session_transitions_total",
    "Session state transitions by target state",
    ["service", "to_state"],
)
payment_flow_failures_total = Counter(
    "payment_flow_failures_total",
    "Failed orchestrator operations by operation and error kind",
    ["service", "operation", "kind"],
)
payment_flow_duration_seconds = Histogram(
    "payment_flow_duration_seconds",
    "Orchestrator operation duration seconds",
    ["service", "operation"],
)
gateway_request_duration_seconds = Histogram(
    "gateway_request_duration_seconds",
    "Open Payments request duration seconds",
    ["service", "operation"],
)
active_sessions = Gauge(
    "active_sessions",
    "Sessions currently held by the session store",
    ["service"],
)
sessions_swept_total = Counter(
    "sessions_swept_total",
    "Sessions removed by the expiry sweeper",
    ["service"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
