"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


orders_created_total = Counter("orders_created_total", "Orders persisted in CREATED", ["service"])
idempotent_replays_total = Counter(
    "idempotent_replays_total",
    "createOrder calls answered with an existing order",
    ["service"],
)
order_create_latency_seconds = Histogram(
    "order_create_latency_seconds", "createOrder latency seconds", ["service"]
)
coupon_validations_total = Counter(
    "coupon_validations_total",
    "Coupon validation calls by outcome",
    ["service", "outcome"],
)
coupon_redemptions_total = Counter(
    "coupon_redemptions_total",
    "Coupon redemption attempts by outcome",
    ["service", "outcome"],
)
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Payment gateway requests by operation and outcome",
    ["service", "operation", "outcome"],
)
gateway_latency_seconds = Histogram(
    "gateway_latency_seconds", "Payment gateway call latency seconds", ["service", "operation"]
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
order_transitions_total = Counter(
    "order_transitions_total",
    "Order status transitions by target state",
    ["service", "to_state", "source"],
)
terminal_writes_rejected_total = Counter(
    "terminal_writes_rejected_total",
    "Attempt batches that conflicted with an already-terminal order",
    ["service"],
)
order_e2e_seconds = Histogram(
    "order_e2e_seconds",
    "Order end-to-end duration seconds from CREATED to terminal",
    ["service", "terminal_state"],
)
reconcile_passes_total = Counter(
    "reconcile_passes_total", "Reconciliation passes executed", ["service"]
)
reconcile_orders_total = Counter(
    "reconcile_orders_total",
    "Orders visited by reconciliation by outcome",
    ["service", "outcome"],
)
orders_needing_attention = Gauge(
    "orders_needing_attention",
    "Orders flagged for operator attention",
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
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate inbox events skipped",
    ["service", "topic"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
