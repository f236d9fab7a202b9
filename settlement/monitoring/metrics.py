"""
Prometheus metrics for settlement monitoring.

Tracks:
- Orders created and payment transitions
- Payout transfers by outcome
- Release sweeps
- Webhook events
- Stripe API errors and circuit breaker state
- Payout reconciliation
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Order metrics
orders_created_total = Counter(
    "settlement_orders_created_total",
    "Total number of orders created",
    ["currency"],
)

order_amount_cents = Histogram(
    "settlement_order_amount_cents",
    "Order totals in cents",
    buckets=(50, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

payment_transitions_total = Counter(
    "settlement_payment_transitions_total",
    "Payment state transitions applied to orders",
    ["transition"],  # confirmed, failed, duplicate, ignored
)

# Payout metrics
payout_transfers_total = Counter(
    "settlement_payout_transfers_total",
    "Payout transfer attempts by outcome",
    ["outcome"],  # completed, failed, timeout, blocked
)

payout_transfer_amount_cents = Histogram(
    "settlement_payout_transfer_amount_cents",
    "Completed payout transfer amounts in cents",
    buckets=(50, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000),
)

# Release metrics
orders_released_total = Counter(
    "settlement_orders_released_total",
    "Total orders whose held funds were released",
    ["trigger"],  # admin, scheduler
)

release_sweep_duration_seconds = Histogram(
    "settlement_release_sweep_duration_seconds",
    "Release sweep duration in seconds",
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0),
)

release_sweep_last_run_timestamp = Gauge(
    "settlement_release_sweep_last_run_timestamp",
    "Timestamp of last release sweep",
)

# Stripe API metrics
stripe_api_errors_total = Counter(
    "settlement_stripe_api_errors_total",
    "Total Stripe API errors",
    ["operation", "error_type"],  # transient, permanent, rate_limit
)

stripe_circuit_breaker_state = Gauge(
    "settlement_stripe_circuit_breaker_state",
    "Stripe circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_events_processed_total = Counter(
    "settlement_webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # success, failed, duplicate, ignored
)

webhook_processing_duration_seconds = Histogram(
    "settlement_webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Reconciliation metrics
reconciliation_payouts_resolved_total = Counter(
    "settlement_reconciliation_payouts_resolved_total",
    "Stuck payouts resolved by reconciliation",
    ["resolution"],  # completed, failed
)

reconciliation_last_run_timestamp = Gauge(
    "settlement_reconciliation_last_run_timestamp",
    "Timestamp of last payout reconciliation run",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order_created(currency: str, total_cents: int) -> None:
        """Record a created order."""
        orders_created_total.labels(currency=currency).inc()
        order_amount_cents.observe(total_cents)

    @staticmethod
    def record_payment_transition(transition: str) -> None:
        """Record a payment state transition."""
        payment_transitions_total.labels(transition=transition).inc()

    @staticmethod
    def record_payout_transfer(outcome: str, amount_cents: int = 0) -> None:
        """Record the outcome of a payout transfer."""
        payout_transfers_total.labels(outcome=outcome).inc()
        if outcome == "completed":
            payout_transfer_amount_cents.observe(amount_cents)

    @staticmethod
    def record_order_released(trigger: str) -> None:
        """Record an order release."""
        orders_released_total.labels(trigger=trigger).inc()

    @staticmethod
    def record_release_sweep(duration_seconds: float) -> None:
        """Record a release sweep run."""
        release_sweep_duration_seconds.observe(duration_seconds)
        release_sweep_last_run_timestamp.set(time.time())

    @staticmethod
    def record_stripe_error(operation: str, error_type: str) -> None:
        """Record Stripe API error."""
        stripe_api_errors_total.labels(operation=operation, error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        stripe_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_reconciliation(completed: int, failed: int) -> None:
        """Record a payout reconciliation run."""
        reconciliation_payouts_resolved_total.labels(resolution="completed").inc(completed)
        reconciliation_payouts_resolved_total.labels(resolution="failed").inc(failed)
        reconciliation_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
