"""
Prometheus metrics: webhook deliveries (API), order transitions, stock decrements, provider failures.
"""
from prometheus_client import Counter, Gauge, generate_latest

# API: webhook deliveries by gateway event name and outcome
webhooks_received_total = Counter(
    "webhooks_received_total",
    "Total payment webhooks received after signature validation",
    ["event", "outcome"],
)
webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Total payment webhooks rejected for a missing or invalid signature",
)

# Lifecycle
order_transitions_total = Counter(
    "order_transitions_total",
    "Total order status transitions applied",
    ["from_status", "to_status"],
)
stock_decrement_failures_total = Counter(
    "stock_decrement_failures_total",
    "Total per-item stock decrements skipped for insufficient stock or missing product",
)
shipment_failures_total = Counter(
    "shipment_failures_total",
    "Total shipment creation attempts that raised or timed out",
)
provider_errors_total = Counter(
    "provider_errors_total",
    "Total failed calls to external providers",
    ["provider", "operation"],
)

# Worker: tracking sync
tracking_polls_total = Counter(
    "tracking_polls_total",
    "Total tracking lookups performed by the worker",
)
orders_awaiting_delivery = Gauge(
    "orders_awaiting_delivery",
    "Number of orders in shipped or in_transit at the last worker sweep",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
