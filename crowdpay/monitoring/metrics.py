"""
Prometheus metrics for contribution payment monitoring.

Tracks:
- Payments initiated by provider and result
- Provider API calls, errors and latency
- Circuit breaker state per provider
- Callbacks received by provider and result
- Contributions credited
- Reconciliation sweep results and duration
- Notification emit failures and outbox depth
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Payment metrics
payments_initiated_total = Counter(
    "crowdpay_payments_initiated_total",
    "Total number of payment initiations",
    ["provider", "result"],  # accepted, rejected, unreachable
)

contributions_credited_total = Counter(
    "crowdpay_contributions_credited_total",
    "Total contributions credited to projects",
    ["provider"],
)

transactions_resolved_total = Counter(
    "crowdpay_transactions_resolved_total",
    "Total transactions moved to a terminal status",
    ["provider", "status"],
)

# Provider API metrics
provider_api_requests_total = Counter(
    "crowdpay_provider_api_requests_total",
    "Total provider API requests",
    ["provider", "operation", "outcome"],  # outcome: success, rejected, unreachable
)

provider_api_duration_seconds = Histogram(
    "crowdpay_provider_api_duration_seconds",
    "Provider API call duration in seconds",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)

provider_circuit_breaker_state = Gauge(
    "crowdpay_provider_circuit_breaker_state",
    "Provider circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["provider"],
)

# Callback metrics
callbacks_received_total = Counter(
    "crowdpay_callbacks_received_total",
    "Total provider callbacks received",
    ["provider", "result"],  # applied, duplicate, pending, invalid, not_found
)

callback_processing_duration_seconds = Histogram(
    "crowdpay_callback_processing_duration_seconds",
    "Callback processing duration in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Reconciliation metrics
reconciliation_results_total = Counter(
    "crowdpay_reconciliation_results_total",
    "Per-transaction results of reconciliation sweeps",
    ["result"],  # completed, failed, remained_pending, errors
)

reconciliation_duration_seconds = Histogram(
    "crowdpay_reconciliation_duration_seconds",
    "Reconciliation sweep duration in seconds",
    buckets=(1, 5, 10, 30, 60, 120, 300, 600),
)

reconciliation_last_run_timestamp = Gauge(
    "crowdpay_reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation sweep",
)

# Notification metrics
notification_emit_failures_total = Counter(
    "crowdpay_notification_emit_failures_total",
    "Notifications that could not be emitted",
    ["notification_type"],
)

outbox_queue_depth = Gauge(
    "crowdpay_outbox_queue_depth",
    "Number of unpublished events in outbox",
)

outbox_events_published_total = Counter(
    "crowdpay_outbox_events_published_total",
    "Total outbox events published",
    ["event_type"],
)

outbox_processing_duration_seconds = Histogram(
    "crowdpay_outbox_processing_duration_seconds",
    "Outbox batch processing duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_payment_initiated(provider: str, result: str) -> None:
        """Record a payment initiation attempt."""
        payments_initiated_total.labels(provider=provider, result=result).inc()

    @staticmethod
    def record_transaction_resolved(provider: str, status: str) -> None:
        """Record a terminal transition."""
        transactions_resolved_total.labels(provider=provider, status=status).inc()

    @staticmethod
    def record_contribution_credited(provider: str) -> None:
        """Record a credited contribution."""
        contributions_credited_total.labels(provider=provider).inc()

    @staticmethod
    def record_provider_api_call(
        provider: str, operation: str, outcome: str, duration_seconds: float
    ) -> None:
        """Record a provider API call."""
        provider_api_requests_total.labels(
            provider=provider, operation=operation, outcome=outcome
        ).inc()
        provider_api_duration_seconds.labels(provider=provider, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def set_circuit_breaker_state(provider: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        provider_circuit_breaker_state.labels(provider=provider).set(state_map.get(state, 0))

    @staticmethod
    def record_callback(provider: str, result: str, duration_seconds: float) -> None:
        """Record callback processing."""
        callbacks_received_total.labels(provider=provider, result=result).inc()
        callback_processing_duration_seconds.labels(provider=provider).observe(duration_seconds)

    @staticmethod
    def record_reconciliation(results: dict, duration_seconds: float) -> None:
        """Record the counters of a finished sweep."""
        for result in ("completed", "failed", "remained_pending", "errors"):
            if results.get(result):
                reconciliation_results_total.labels(result=result).inc(results[result])
        reconciliation_duration_seconds.observe(duration_seconds)
        reconciliation_last_run_timestamp.set(time.time())

    @staticmethod
    def record_notification_failure(notification_type: str) -> None:
        """Record a notification that could not be emitted."""
        notification_emit_failures_total.labels(notification_type=notification_type).inc()

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str, duration_seconds: float) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()
        outbox_processing_duration_seconds.observe(duration_seconds)


# Export singleton instance
metrics = MetricsCollector()
