"""
Stripe adapter (card processor).

Implements:
- PaymentIntent creation with idempotency keys
- Confirmation/capture depending on the intent's state
- Partial and full refunds
- Webhook signature verification and event normalization
- Error classification into transient and permanent failures

The Stripe SDK is synchronous; calls run in a worker thread.
"""
import asyncio
import json
import uuid
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import stripe
import structlog

from gateway_hub.config import Settings
from gateway_hub.core.errors import PaymentProcessingError, SignatureError
from gateway_hub.core.states import TransactionStatus
from gateway_hub.integrations.base import (
    CaptureResult,
    InitiationResult,
    PaymentDetails,
    PaymentRequest,
    Provider,
    ProviderAdapter,
    RefundResult,
    WebhookEvent,
    WebhookEventType,
    from_minor_units,
    to_minor_units,
)

logger = structlog.get_logger(__name__)

STATUS_MAP: Dict[str, TransactionStatus] = {
    "requires_payment_method": TransactionStatus.INITIATED,
    "requires_confirmation": TransactionStatus.INITIATED,
    "requires_action": TransactionStatus.PROCESSING,
    "processing": TransactionStatus.PROCESSING,
    "requires_capture": TransactionStatus.PROCESSING,
    "succeeded": TransactionStatus.COMPLETED,
    "canceled": TransactionStatus.CANCELED,
}

REFUND_STATUS_MAP: Dict[str, TransactionStatus] = {
    "succeeded": TransactionStatus.COMPLETED,
    "pending": TransactionStatus.PROCESSING,
    "requires_action": TransactionStatus.PROCESSING,
    "failed": TransactionStatus.FAILED,
    "canceled": TransactionStatus.FAILED,
}

EVENT_TYPE_MAP: Dict[str, WebhookEventType] = {
    "payment_intent.succeeded": WebhookEventType.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": WebhookEventType.PAYMENT_FAILED,
    "charge.refunded": WebhookEventType.REFUNDED,
    "charge.dispute.created": WebhookEventType.DISPUTED,
}


class StripeAdapter(ProviderAdapter):
    """Stripe PaymentIntents behind the provider adapter interface."""

    provider = Provider.STRIPE
    native_errors = (stripe.StripeError,)

    def __init__(self, settings: Settings):
        """Initialize Stripe client."""
        super().__init__(settings)
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.webhook_secret = settings.stripe_webhook_secret

        logger.info(
            "stripe_adapter_initialized",
            api_version=settings.stripe_api_version,
            test_mode=settings.is_test_mode,
        )

    def map_status(self, native_status: Optional[str]) -> TransactionStatus:
        return STATUS_MAP.get(native_status or "", TransactionStatus.FAILED)

    def _classify_error(self, error: BaseException) -> PaymentProcessingError:
        """
        Classify Stripe error for retry logic.

        Rate limits, connection problems and Stripe-side API errors are
        transient. Card, request, authentication and permission errors are
        permanent. Anything else is treated as transient.
        """
        if isinstance(error, stripe.RateLimitError):
            transient, default_code = True, "rate_limit"
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            transient, default_code = True, "api_unavailable"
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
                stripe.IdempotencyError,
            ),
        ):
            transient, default_code = False, "request_rejected"
        else:
            transient, default_code = True, "unknown"

        return PaymentProcessingError(
            str(getattr(error, "user_message", None) or error),
            provider=self.name,
            error_code=getattr(error, "code", None) or default_code,
            transient=transient,
            original_error=error if isinstance(error, Exception) else None,
        )

    async def initiate_payment(self, request: PaymentRequest) -> InitiationResult:
        """
        Create a PaymentIntent.

        The vault payload either names an existing Stripe payment method
        (``provider_payment_method``) or carries raw card fields, which are
        sent as ``payment_method_data``. With a payment method present the
        intent is confirmed immediately.
        """
        params: Dict[str, Any] = {
            "amount": to_minor_units(request.amount, request.currency),
            "currency": request.currency.lower(),
            "payment_method_types": ["card"],
            "metadata": self._intent_metadata(request),
            "idempotency_key": request.idempotency_key,
        }
        if request.description:
            params["description"] = request.description
        if request.customer_email:
            params["receipt_email"] = request.customer_email

        method = request.payment_method
        if method.get("provider_payment_method"):
            params["payment_method"] = method["provider_payment_method"]
            params["confirm"] = True
        elif method.get("card_number"):
            params["payment_method_data"] = {
                "type": "card",
                "card": {
                    "number": method["card_number"],
                    "exp_month": int(method["expiry_month"]),
                    "exp_year": int(method["expiry_year"]),
                    "cvc": method.get("cvv"),
                },
            }
            params["confirm"] = True

        logger.info(
            "creating_payment_intent",
            transaction_id=request.transaction_id,
            amount=str(request.amount),
            currency=request.currency,
            confirm=params.get("confirm", False),
        )

        intent = await self._execute(
            "initiate_payment",
            lambda: asyncio.to_thread(stripe.PaymentIntent.create, **params),
        )

        logger.info(
            "payment_intent_created",
            transaction_id=request.transaction_id,
            payment_intent_id=intent.id,
            status=intent.status,
        )
        return InitiationResult(
            provider_transaction_id=intent.id,
            status=self.map_status(intent.status),
            native_status=intent.status,
            client_secret=getattr(intent, "client_secret", None),
            raw={"id": intent.id, "status": intent.status},
        )

    async def capture(self, provider_transaction_id: str) -> CaptureResult:
        """
        Drive a PaymentIntent forward.

        Intents waiting for confirmation are confirmed, authorized intents
        are captured, and anything else is reported as-is.
        """

        async def _capture() -> Any:
            intent = await asyncio.to_thread(stripe.PaymentIntent.retrieve, provider_transaction_id)
            if intent.status == "requires_confirmation":
                return await asyncio.to_thread(
                    stripe.PaymentIntent.confirm,
                    provider_transaction_id,
                    idempotency_key=f"confirm:{provider_transaction_id}",
                )
            if intent.status == "requires_capture":
                return await asyncio.to_thread(
                    stripe.PaymentIntent.capture,
                    provider_transaction_id,
                    idempotency_key=f"capture:{provider_transaction_id}",
                )
            return intent

        intent = await self._execute("capture", _capture)

        logger.info(
            "payment_intent_captured",
            payment_intent_id=provider_transaction_id,
            status=intent.status,
        )
        return CaptureResult(
            status=self.map_status(intent.status),
            native_status=intent.status,
            raw={"id": intent.id, "status": intent.status},
        )

    async def refund(
        self, provider_transaction_id: str, amount: Decimal, currency: str
    ) -> RefundResult:
        """Create a refund against a PaymentIntent."""
        idempotency_key = f"refund:{provider_transaction_id}:{uuid.uuid4()}"
        params = {
            "payment_intent": provider_transaction_id,
            "amount": to_minor_units(amount, currency),
            "idempotency_key": idempotency_key,
        }

        logger.info(
            "creating_refund",
            payment_intent_id=provider_transaction_id,
            amount=str(amount),
        )

        refund = await self._execute(
            "refund", lambda: asyncio.to_thread(stripe.Refund.create, **params)
        )

        status = REFUND_STATUS_MAP.get(refund.status, TransactionStatus.FAILED)
        logger.info("refund_created", refund_id=refund.id, status=refund.status)
        return RefundResult(
            refund_id=refund.id,
            status=status,
            native_status=refund.status,
            amount=from_minor_units(refund.amount, currency),
            raw={"id": refund.id, "status": refund.status},
        )

    async def get_details(self, provider_transaction_id: str) -> PaymentDetails:
        """Retrieve a PaymentIntent."""
        intent = await self._execute(
            "get_details",
            lambda: asyncio.to_thread(stripe.PaymentIntent.retrieve, provider_transaction_id),
        )
        currency = (intent.currency or "").upper()
        return PaymentDetails(
            status=self.map_status(intent.status),
            native_status=intent.status,
            amount=from_minor_units(intent.amount, currency) if intent.amount is not None else None,
            currency=currency or None,
            raw={"id": intent.id, "status": intent.status},
        )

    async def verify_and_parse_webhook(
        self, headers: Mapping[str, str], raw_body: bytes
    ) -> WebhookEvent:
        """
        Verify the ``Stripe-Signature`` header and normalize the event.

        Raises:
            SignatureError: If the signature is missing or invalid
        """
        signature = {key.lower(): value for key, value in headers.items()}.get("stripe-signature")
        if not signature:
            raise SignatureError("Missing Stripe-Signature header", details={"provider": self.name})

        try:
            stripe.Webhook.construct_event(raw_body, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise SignatureError(
                "Invalid Stripe webhook signature", details={"provider": self.name}
            ) from e
        except ValueError as e:
            raise SignatureError("Invalid Stripe webhook payload", details={"provider": self.name}) from e

        payload = json.loads(raw_body)
        return self._normalize_event(payload)

    def _normalize_event(self, payload: Dict[str, Any]) -> WebhookEvent:
        native_type = payload.get("type", "")
        event_type = EVENT_TYPE_MAP.get(native_type, WebhookEventType.UNKNOWN)
        obj: Dict[str, Any] = (payload.get("data") or {}).get("object") or {}
        currency = (obj.get("currency") or "").upper()

        event = WebhookEvent(
            event_id=payload["id"],
            event_type=event_type,
            native_event_type=native_type,
            transaction_reference=(obj.get("metadata") or {}).get("transaction_id"),
            payload=payload,
        )

        if event_type in (WebhookEventType.PAYMENT_SUCCEEDED, WebhookEventType.PAYMENT_FAILED):
            event.provider_transaction_id = obj.get("id")
            if event_type == WebhookEventType.PAYMENT_FAILED:
                last_error = obj.get("last_payment_error") or {}
                event.error_message = last_error.get("message") or "Payment failed"
                event.error_code = last_error.get("decline_code") or last_error.get("code")
        elif event_type == WebhookEventType.REFUNDED:
            event.provider_transaction_id = obj.get("payment_intent")
            if obj.get("amount_refunded") is not None:
                event.amount = from_minor_units(obj["amount_refunded"], currency)
        elif event_type == WebhookEventType.DISPUTED:
            event.provider_transaction_id = obj.get("payment_intent")
            event.reason = obj.get("reason")
            if obj.get("amount") is not None:
                event.amount = from_minor_units(obj["amount"], currency)

        return event

    @staticmethod
    def _intent_metadata(request: PaymentRequest) -> Dict[str, str]:
        metadata = {"transaction_id": request.transaction_id}
        if request.customer_id:
            metadata["customer_id"] = request.customer_id
        for key, value in request.metadata.items():
            if isinstance(value, (str, int, float, bool)):
                metadata[str(key)] = str(value)
        return metadata
