"""
Circuit breaker shared by provider adapters.

Prevents cascading failures by temporarily stopping requests to a provider
after repeated failures.
"""
import time
from typing import Optional

import structlog

from gateway_hub.core.errors import PaymentProcessingError
from gateway_hub.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class CircuitBreaker:
    """
    Circuit breaker for provider API calls.

    States move closed -> open after ``failure_threshold`` consecutive
    failures, open -> half_open after ``timeout`` seconds, and
    half_open -> closed after ``success_threshold`` successes.
    """

    def __init__(
        self,
        provider: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            provider: Provider the breaker protects
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.provider = provider
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def before_call(self) -> None:
        """
        Check whether a call may proceed.

        Raises:
            PaymentProcessingError: If the circuit is open (transient)
        """
        if self.state != "open":
            return

        if self.last_failure_time and time.time() - self.last_failure_time > self.timeout:
            self._set_state("half_open")
            self.success_count = 0
            logger.info("circuit_breaker_half_open", provider=self.provider)
            return

        metrics.record_provider_error(self.provider, "circuit_open")
        raise PaymentProcessingError(
            f"Circuit breaker is open for provider '{self.provider}'",
            provider=self.provider,
            error_code="circuit_open",
            transient=True,
        )

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed", provider=self.provider)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                provider=self.provider,
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(self.provider, state)
