"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


process_requests_total = Counter(
    "process_requests_total",
    "Total orchestration requests",
    ["service", "strategy"],
)
routing_decisions_total = Counter(
    "routing_decisions_total",
    "Gateway selections made by the routing engine",
    ["service", "gateway"],
)
routing_failures_total = Counter(
    "routing_failures_total",
    "Routing decisions that produced no gateway",
    ["service", "reason"],
)
health_filter_bypassed_total = Counter(
    "health_filter_bypassed_total",
    "Routing decisions where every candidate was unhealthy",
    ["service"],
)
gateway_call_seconds = Histogram(
    "gateway_call_seconds",
    "Outbound gateway call duration seconds",
    ["service", "gateway", "outcome"],
)
failover_total = Counter("failover_total", "Failovers to a different gateway", ["service"])
transaction_terminal_total = Counter(
    "transaction_terminal_total",
    "Transactions reaching a status via orchestration or webhook",
    ["service", "status", "source"],
)
already_processed_total = Counter(
    "already_processed_total",
    "Duplicate orchestration triggers rejected",
    ["service"],
)
webhooks_received_total = Counter(
    "webhooks_received_total",
    "Gateway webhooks received by outcome",
    ["service", "gateway", "outcome"],
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
event_queue_delay_seconds = Histogram(
    "event_queue_delay_seconds",
    "Event queue delay seconds between occurred_at and consume time",
    ["service", "topic"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)
merchant_notifications_total = Counter(
    "merchant_notifications_total",
    "Merchant notification deliveries by outcome",
    ["service", "outcome"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate inbox events skipped",
    ["service", "topic"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
