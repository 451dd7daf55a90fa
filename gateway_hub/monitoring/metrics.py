"""
Prometheus metrics for gateway monitoring.

Tracks:
- Transaction operations by provider and outcome
- Provider API calls, errors and latency
- Circuit breaker state per provider
- Webhook outcomes and processing time
- Retry sweeps and failed-event replays
- Tokenization operations
- Per-transaction lock acquisitions
"""
from prometheus_client import Counter, Gauge, Histogram

# Transaction metrics
transaction_operations_total = Counter(
    "transaction_operations_total",
    "Total ledger operations",
    ["operation", "provider", "status"],
)

transaction_operation_duration_seconds = Histogram(
    "transaction_operation_duration_seconds",
    "Ledger operation duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

transaction_status_transitions_total = Counter(
    "transaction_status_transitions_total",
    "Total transaction status transitions",
    ["from_status", "to_status"],
)

# Provider API metrics
provider_api_requests_total = Counter(
    "provider_api_requests_total",
    "Total provider API requests",
    ["provider", "operation", "status"],  # status: success, error
)

provider_api_errors_total = Counter(
    "provider_api_errors_total",
    "Total provider API errors",
    ["provider", "error_type"],  # transient, permanent, timeout, circuit_open
)

provider_api_duration_seconds = Histogram(
    "provider_api_duration_seconds",
    "Provider API call duration in seconds",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Circuit breaker metrics
provider_circuit_breaker_state = Gauge(
    "provider_circuit_breaker_state",
    "Provider circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["provider"],
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook deliveries received",
    ["provider"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events by outcome",
    ["provider", "event_type", "outcome"],
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Retry metrics
retry_sweep_transactions_total = Counter(
    "retry_sweep_transactions_total",
    "Transactions re-driven by the retry scheduler",
    ["outcome"],  # succeeded, failed
)

failed_event_replays_total = Counter(
    "failed_event_replays_total",
    "Failed webhook events replayed",
    ["outcome"],
)

retry_sweep_duration_seconds = Histogram(
    "retry_sweep_duration_seconds",
    "Retry sweep duration in seconds",
    ["duty"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Tokenization metrics
tokenization_operations_total = Counter(
    "tokenization_operations_total",
    "Total tokenization operations",
    ["operation", "status"],
)

# Lock metrics
transaction_lock_acquisitions_total = Counter(
    "transaction_lock_acquisitions_total",
    "Total per-transaction lock acquisitions",
    ["status"],  # acquired, timeout
)


class MetricsCollector:
    """
    Centralized metrics collection.

    Provides helper methods for recording metrics consistently.
    """

    @staticmethod
    def record_transaction_operation(
        operation: str, provider: str, status: str, duration: float | None = None
    ) -> None:
        """
        Record a ledger operation.

        Args:
            operation: Operation name (create, confirm, refund, ...)
            provider: Provider name
            status: Resulting transaction status or "error"
            duration: Optional duration in seconds
        """
        transaction_operations_total.labels(
            operation=operation, provider=provider, status=status
        ).inc()
        if duration is not None:
            transaction_operation_duration_seconds.labels(operation=operation).observe(duration)

    @staticmethod
    def record_status_transition(from_status: str, to_status: str) -> None:
        """Record a status transition."""
        transaction_status_transitions_total.labels(
            from_status=from_status, to_status=to_status
        ).inc()

    @staticmethod
    def record_provider_call(
        provider: str, operation: str, success: bool, duration: float
    ) -> None:
        """
        Record a provider API call.

        Args:
            provider: Provider name
            operation: Adapter operation
            success: Whether the call succeeded
            duration: Call duration in seconds
        """
        provider_api_requests_total.labels(
            provider=provider,
            operation=operation,
            status="success" if success else "error",
        ).inc()
        provider_api_duration_seconds.labels(provider=provider, operation=operation).observe(
            duration
        )

    @staticmethod
    def record_provider_error(provider: str, error_type: str) -> None:
        """Record a classified provider error."""
        provider_api_errors_total.labels(provider=provider, error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(provider: str, state: str) -> None:
        """
        Set circuit breaker state.

        Args:
            provider: Provider name
            state: Circuit breaker state (closed, open, half_open)
        """
        state_values = {"closed": 0, "open": 1, "half_open": 2}
        provider_circuit_breaker_state.labels(provider=provider).set(state_values.get(state, 0))

    @staticmethod
    def record_webhook_received(provider: str) -> None:
        """Record a webhook delivery."""
        webhook_events_received_total.labels(provider=provider).inc()

    @staticmethod
    def record_webhook_outcome(
        provider: str, event_type: str, outcome: str, duration: float | None = None
    ) -> None:
        """
        Record a webhook processing outcome.

        Args:
            provider: Provider name
            event_type: Normalized event type
            outcome: processed, duplicate, in_progress, failed, ...
            duration: Optional duration in seconds
        """
        webhook_events_processed_total.labels(
            provider=provider, event_type=event_type, outcome=outcome
        ).inc()
        if duration is not None:
            webhook_processing_duration_seconds.labels(provider=provider).observe(duration)

    @staticmethod
    def record_retry_attempt(outcome: str) -> None:
        """Record a transaction re-driven by the scheduler."""
        retry_sweep_transactions_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_failed_event_replay(outcome: str) -> None:
        """Record a failed-event replay."""
        failed_event_replays_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_sweep_duration(duty: str, duration: float) -> None:
        """Record how long a scheduler duty took."""
        retry_sweep_duration_seconds.labels(duty=duty).observe(duration)

    @staticmethod
    def record_tokenization(operation: str, status: str) -> None:
        """Record a tokenization operation."""
        tokenization_operations_total.labels(operation=operation, status=status).inc()

    @staticmethod
    def record_lock_acquisition(status: str) -> None:
        """Record a per-transaction lock acquisition attempt."""
        transaction_lock_acquisitions_total.labels(status=status).inc()


# Global metrics collector instance
metrics = MetricsCollector()
