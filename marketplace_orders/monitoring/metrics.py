"""
Prometheus metrics for order placement monitoring.

Tracks:
- Order placements by outcome
- Payment attempts and backoff delays
- Post-payment finalization failures (page-worthy)
- Compensating refunds
- Audit sink failures
- Status transitions
- Outbox queue depth
- Recovery sweep outcomes
"""
from prometheus_client import Counter, Gauge, Histogram

# Placement metrics
order_placements_total = Counter(
    "order_placements_total",
    "Total order placement attempts",
    ["outcome"],  # placed, empty_cart, product_not_found, insufficient_stock, payment_failed, ...
)

order_placement_duration_seconds = Histogram(
    "order_placement_duration_seconds",
    "Order placement duration in seconds",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0),
)

order_total_amount = Histogram(
    "order_total_amount",
    "Order totals in currency units",
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 5000),
)

# Payment metrics
payment_attempts_total = Counter(
    "payment_attempts_total",
    "Total payment gateway attempts",
    ["outcome"],  # succeeded, declined, error, requires_authentication
)

payment_backoff_seconds = Histogram(
    "payment_backoff_seconds",
    "Delay inserted between payment attempts",
    buckets=(1, 2, 4, 8, 16, 32, 64),
)

order_finalization_failures_total = Counter(
    "order_finalization_failures_total",
    "Payments captured whose order could not be finalized",
)

compensating_refunds_total = Counter(
    "compensating_refunds_total",
    "Refunds issued because stock vanished after capture",
    ["status"],  # issued, failed
)

# Audit metrics
audit_failures_total = Counter(
    "audit_failures_total",
    "Audit records that could not be written",
)

# Status metrics
order_status_transitions_total = Counter(
    "order_status_transitions_total",
    "Order status transitions",
    ["from_status", "to_status"],
)

# Outbox metrics
outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of unpublished events in outbox",
)

outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox events published",
    ["event_type"],
)

# Recovery metrics
recovery_actions_total = Counter(
    "recovery_actions_total",
    "Orders resolved by the recovery sweep",
    ["action"],  # finalized, refunded, payment_failed, abandoned, skipped
)

# Lock metrics
placement_lock_acquisitions_total = Counter(
    "placement_lock_acquisitions_total",
    "Per-customer placement lock acquisitions",
    ["status"],  # acquired, timeout
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_placement(outcome: str, duration_seconds: float | None = None) -> None:
        """Record an order placement outcome."""
        order_placements_total.labels(outcome=outcome).inc()
        if duration_seconds is not None:
            order_placement_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_order_total(amount: float) -> None:
        order_total_amount.observe(amount)

    @staticmethod
    def record_payment_attempt(outcome: str) -> None:
        """Record a single gateway attempt."""
        payment_attempts_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_backoff(delay_seconds: float) -> None:
        payment_backoff_seconds.observe(delay_seconds)

    @staticmethod
    def record_finalization_failure() -> None:
        """Record a captured payment with no durable order."""
        order_finalization_failures_total.inc()

    @staticmethod
    def record_compensating_refund(status: str) -> None:
        compensating_refunds_total.labels(status=status).inc()

    @staticmethod
    def record_audit_failure() -> None:
        audit_failures_total.inc()

    @staticmethod
    def record_status_transition(from_status: str, to_status: str) -> None:
        order_status_transitions_total.labels(
            from_status=from_status, to_status=to_status
        ).inc()

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str) -> None:
        outbox_events_published_total.labels(event_type=event_type).inc()

    @staticmethod
    def record_recovery_action(action: str) -> None:
        recovery_actions_total.labels(action=action).inc()

    @staticmethod
    def record_placement_lock(status: str) -> None:
        placement_lock_acquisitions_total.labels(status=status).inc()


# Export singleton instance
metrics = MetricsCollector()
