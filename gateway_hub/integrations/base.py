"""
Provider adapter abstraction.

Every external payment provider is wrapped by a ``ProviderAdapter`` that
speaks the gateway's own vocabulary: normalized transaction statuses,
``Decimal`` amounts in major units and ``PaymentProcessingError`` for every
failure. Provider calls go through ``_execute`` which adds a circuit
breaker, inline retries for transient errors and a bounded timeout.
"""
import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple, Type, TypeVar

import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from gateway_hub.config import Settings
from gateway_hub.core.errors import PaymentProcessingError
from gateway_hub.core.states import TransactionStatus
from gateway_hub.integrations.resilience import CircuitBreaker
from gateway_hub.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")

ZERO_DECIMAL_CURRENCIES = frozenset(
    {
        "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
        "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
    }
)


class Provider(str, Enum):
    """Supported providers."""

    STRIPE = "stripe"  # card processor
    PAYPAL = "paypal"  # wallet processor


class WebhookEventType(str, Enum):
    """Provider notifications normalized to the events the gateway acts on."""

    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    UNKNOWN = "unknown"


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a major-unit amount to the provider's integer minor units."""
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: int, currency: str) -> Decimal:
    """Convert provider minor units back to a major-unit amount."""
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(value)
    return (Decimal(value) / 100).quantize(Decimal("0.01"))


@dataclass
class PaymentRequest:
    """Everything an adapter needs to start a payment."""

    transaction_id: str
    amount: Decimal
    currency: str
    payment_method: Dict[str, Any]
    description: Optional[str] = None
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def idempotency_key(self) -> str:
        return f"create:{self.transaction_id}"


@dataclass
class InitiationResult:
    provider_transaction_id: str
    status: TransactionStatus
    native_status: str
    client_secret: Optional[str] = None
    approval_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def requires_action(self) -> bool:
        return self.status == TransactionStatus.PROCESSING


@dataclass
class CaptureResult:
    status: TransactionStatus
    native_status: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundResult:
    refund_id: str
    status: TransactionStatus
    native_status: str
    amount: Decimal
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentDetails:
    status: TransactionStatus
    native_status: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookEvent:
    """
    A verified provider notification.

    ``provider_transaction_id`` identifies the transaction on the provider
    side; ``transaction_reference`` is the gateway's own id when the
    provider echoes it back instead.
    """

    event_id: str
    event_type: WebhookEventType
    native_event_type: str
    provider_transaction_id: Optional[str] = None
    transaction_reference: Optional[str] = None
    amount: Optional[Decimal] = None
    reason: Optional[str] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe representation, used to persist failed events."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "native_event_type": self.native_event_type,
            "provider_transaction_id": self.provider_transaction_id,
            "transaction_reference": self.transaction_reference,
            "amount": str(self.amount) if self.amount is not None else None,
            "reason": self.reason,
            "error_message": self.error_message,
            "error_code": self.error_code,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WebhookEvent":
        """Rebuild an event persisted with ``to_dict``."""
        amount = data.get("amount")
        return cls(
            event_id=data["event_id"],
            event_type=WebhookEventType(data["event_type"]),
            native_event_type=data["native_event_type"],
            provider_transaction_id=data.get("provider_transaction_id"),
            transaction_reference=data.get("transaction_reference"),
            amount=Decimal(amount) if amount is not None else None,
            reason=data.get("reason"),
            error_message=data.get("error_message"),
            error_code=data.get("error_code"),
            payload=dict(data.get("payload") or {}),
        )


class ProviderAdapter(ABC):
    """
    Base class for provider adapters.

    Subclasses implement the provider calls and list the provider SDK
    exceptions in ``native_errors``; those are converted to
    ``PaymentProcessingError`` by ``_classify_error``.
    """

    provider: Provider
    native_errors: Tuple[Type[BaseException], ...] = ()

    def __init__(self, settings: Settings):
        """
        Initialize adapter resilience settings.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.timeout = settings.provider_timeout_seconds
        self.max_attempts = max(1, settings.provider_max_attempts)
        self.circuit_breaker = CircuitBreaker(
            provider=self.provider.value,
            failure_threshold=settings.circuit_breaker_failure_threshold,
            timeout=settings.circuit_breaker_reset_seconds,
        )

    @property
    def name(self) -> str:
        return self.provider.value

    @abstractmethod
    async def initiate_payment(self, request: PaymentRequest) -> InitiationResult:
        """Start a payment with the provider."""

    @abstractmethod
    async def capture(self, provider_transaction_id: str) -> CaptureResult:
        """Confirm or capture a previously initiated payment."""

    @abstractmethod
    async def refund(
        self, provider_transaction_id: str, amount: Decimal, currency: str
    ) -> RefundResult:
        """Refund part or all of a captured payment."""

    @abstractmethod
    async def get_details(self, provider_transaction_id: str) -> PaymentDetails:
        """Fetch the provider's current view of a payment."""

    @abstractmethod
    def map_status(self, native_status: Optional[str]) -> TransactionStatus:
        """Map a provider status to the gateway vocabulary."""

    @abstractmethod
    async def verify_and_parse_webhook(
        self, headers: Mapping[str, str], raw_body: bytes
    ) -> WebhookEvent:
        """
        Verify a webhook delivery and normalize it.

        Raises:
            SignatureError: If the delivery cannot be authenticated
        """

    @abstractmethod
    def _classify_error(self, error: BaseException) -> PaymentProcessingError:
        """Convert a provider SDK error into a ``PaymentProcessingError``."""

    async def close(self) -> None:
        """Release provider resources."""

    async def _execute(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """
        Run a provider call with retries, circuit breaker and timeout.

        Transient failures are retried with exponential backoff up to
        ``provider_max_attempts``; permanent failures are raised at once.

        Args:
            operation: Operation name for logs and metrics
            call: Zero-argument coroutine factory performing the call

        Returns:
            The call result

        Raises:
            PaymentProcessingError: When the call ultimately fails
        """
        retrying = AsyncRetrying(
            retry=retry_if_exception(
                lambda e: isinstance(e, PaymentProcessingError) and e.transient
            ),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.provider_retry_wait_min,
                min=self.settings.provider_retry_wait_min,
                max=self.settings.provider_retry_wait_max,
            ),
            reraise=True,
        )
        return await retrying(self._call_once, operation, call)

    async def _call_once(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        self.circuit_breaker.before_call()
        start_time = time.perf_counter()

        try:
            result = await asyncio.wait_for(call(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            self._record_failure(operation, start_time, "timeout", transient=True)
            raise PaymentProcessingError(
                f"{self.name} {operation} timed out after {self.timeout}s",
                provider=self.name,
                error_code="timeout",
                transient=True,
                original_error=e,
            ) from e
        except PaymentProcessingError as e:
            self._record_failure(
                operation, start_time, "transient" if e.transient else "permanent", e.transient
            )
            raise
        except self.native_errors as e:
            error = self._classify_error(e)
            self._record_failure(
                operation, start_time, "transient" if error.transient else "permanent", error.transient
            )
            logger.error(
                "provider_api_error",
                provider=self.name,
                operation=operation,
                error_code=error.error_code,
                transient=error.transient,
                error_message=str(e),
            )
            raise error from e

        self.circuit_breaker.on_success()
        metrics.record_provider_call(
            self.name, operation, success=True, duration=time.perf_counter() - start_time
        )
        return result

    def _record_failure(
        self, operation: str, start_time: float, error_type: str, transient: bool
    ) -> None:
        # Declines and invalid requests say nothing about provider health
        if transient:
            self.circuit_breaker.on_failure()
        metrics.record_provider_call(
            self.name, operation, success=False, duration=time.perf_counter() - start_time
        )
        metrics.record_provider_error(self.name, error_type)
