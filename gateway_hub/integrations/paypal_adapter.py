"""
PayPal adapter (wallet processor).

Talks to the PayPal REST API (Orders v2, Payments v2 and the webhook
verification endpoint) over ``httpx``. An OAuth2 client-credentials token
is cached until shortly before it expires.
"""
import asyncio
import json
import time
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

import httpx
import structlog

from gateway_hub.config import Settings
from gateway_hub.core.errors import PaymentProcessingError, SignatureError
from gateway_hub.core.states import TransactionStatus
from gateway_hub.integrations.base import (
    ZERO_DECIMAL_CURRENCIES,
    CaptureResult,
    InitiationResult,
    PaymentDetails,
    PaymentRequest,
    Provider,
    ProviderAdapter,
    RefundResult,
    WebhookEvent,
    WebhookEventType,
)

logger = structlog.get_logger(__name__)

SANDBOX_URL = "https://api-m.sandbox.paypal.com"
LIVE_URL = "https://api-m.paypal.com"

STATUS_MAP: Dict[str, TransactionStatus] = {
    "CREATED": TransactionStatus.INITIATED,
    "SAVED": TransactionStatus.INITIATED,
    "APPROVED": TransactionStatus.PROCESSING,
    "PAYER_ACTION_REQUIRED": TransactionStatus.PROCESSING,
    "VOIDED": TransactionStatus.CANCELED,
    "COMPLETED": TransactionStatus.COMPLETED,
}

CAPTURE_STATUS_MAP: Dict[str, TransactionStatus] = {
    "COMPLETED": TransactionStatus.COMPLETED,
    "PENDING": TransactionStatus.PROCESSING,
    "DECLINED": TransactionStatus.FAILED,
    "FAILED": TransactionStatus.FAILED,
}

REFUND_STATUS_MAP: Dict[str, TransactionStatus] = {
    "COMPLETED": TransactionStatus.COMPLETED,
    "PENDING": TransactionStatus.PROCESSING,
    "CANCELLED": TransactionStatus.FAILED,
    "FAILED": TransactionStatus.FAILED,
}

EVENT_TYPE_MAP: Dict[str, WebhookEventType] = {
    "PAYMENT.CAPTURE.COMPLETED": WebhookEventType.PAYMENT_SUCCEEDED,
    "PAYMENT.CAPTURE.DENIED": WebhookEventType.PAYMENT_FAILED,
    "PAYMENT.CAPTURE.REFUNDED": WebhookEventType.REFUNDED,
}

TRANSMISSION_HEADERS = (
    "paypal-auth-algo",
    "paypal-cert-url",
    "paypal-transmission-id",
    "paypal-transmission-sig",
    "paypal-transmission-time",
)


def format_amount(amount: Decimal, currency: str) -> str:
    """Render an amount the way PayPal expects it for ``currency``."""
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return str(amount.quantize(Decimal("1")))
    return str(amount.quantize(Decimal("0.01")))


class PayPalAdapter(ProviderAdapter):
    """PayPal Orders v2 behind the provider adapter interface."""

    provider = Provider.PAYPAL
    native_errors = (httpx.HTTPError,)

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        """
        Initialize PayPal client.

        Args:
            settings: Application settings
            client: Optional preconfigured HTTP client (must carry the base URL)
        """
        super().__init__(settings)
        self.base_url = LIVE_URL if settings.paypal_environment == "live" else SANDBOX_URL
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url, timeout=settings.provider_timeout_seconds
        )
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

        logger.info(
            "paypal_adapter_initialized",
            environment=settings.paypal_environment,
            configured=settings.paypal_configured,
        )

    async def close(self) -> None:
        await self._client.aclose()

    def map_status(self, native_status: Optional[str]) -> TransactionStatus:
        return STATUS_MAP.get(native_status or "", TransactionStatus.FAILED)

    def _classify_error(self, error: BaseException) -> PaymentProcessingError:
        """
        Classify an HTTP failure.

        Transport errors, 429 and 5xx are transient; a 401 drops the cached
        token and is retried once a fresh token is fetched. Other 4xx
        responses are permanent.
        """
        if isinstance(error, httpx.HTTPStatusError):
            status_code = error.response.status_code
            error_code, message = self._error_from_response(error.response)
            if status_code == 401:
                self._access_token = None
            transient = status_code in (401, 429) or status_code >= 500
            return PaymentProcessingError(
                message or f"PayPal request failed with HTTP {status_code}",
                provider=self.name,
                error_code=error_code or f"http_{status_code}",
                transient=transient,
                original_error=error,
            )
        return PaymentProcessingError(
            f"PayPal request failed: {error}",
            provider=self.name,
            error_code="connection_error",
            transient=True,
            original_error=error if isinstance(error, Exception) else None,
        )

    @staticmethod
    def _error_from_response(response: httpx.Response) -> tuple[Optional[str], Optional[str]]:
        try:
            body = response.json()
        except ValueError:
            return None, None
        details: List[Dict[str, Any]] = body.get("details") or []
        issue = details[0].get("issue") if details else None
        return issue or body.get("name") or body.get("error"), body.get("message") or body.get(
            "error_description"
        )

    async def _get_access_token(self) -> str:
        if not self.settings.paypal_configured:
            raise PaymentProcessingError(
                "PayPal credentials are not configured",
                provider=self.name,
                error_code="not_configured",
            )

        async with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expires_at:
                return self._access_token

            response = await self._client.post(
                "/v1/oauth2/token",
                auth=(self.settings.paypal_client_id, self.settings.paypal_client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
            )
            response.raise_for_status()
            body = response.json()
            self._access_token = body["access_token"]
            # refresh a minute early
            self._token_expires_at = time.monotonic() + max(0, int(body.get("expires_in", 0)) - 60)
            logger.info("paypal_access_token_refreshed")
            return self._access_token

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        token = await self._get_access_token()
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        if request_id:
            headers["PayPal-Request-Id"] = request_id

        response = await self._client.request(method, path, json=json_body, headers=headers)
        response.raise_for_status()
        if not response.content:
            return {}
        return response.json()

    async def initiate_payment(self, request: PaymentRequest) -> InitiationResult:
        """Create a PayPal order the payer approves on PayPal."""
        experience_context: Dict[str, Any] = {
            "brand_name": self.settings.paypal_brand_name,
            "user_action": "PAY_NOW",
            "shipping_preference": "NO_SHIPPING",
            "return_url": request.return_url,
            "cancel_url": request.cancel_url,
        }
        paypal_source: Dict[str, Any] = {"experience_context": experience_context}
        email = request.payment_method.get("paypal_email") or request.customer_email
        if email:
            paypal_source["email_address"] = email

        purchase_unit: Dict[str, Any] = {
            "reference_id": request.transaction_id,
            "custom_id": request.transaction_id,
            "amount": {
                "currency_code": request.currency.upper(),
                "value": format_amount(request.amount, request.currency),
            },
        }
        if request.description:
            purchase_unit["description"] = request.description[:127]

        body = {
            "intent": "CAPTURE",
            "purchase_units": [purchase_unit],
            "payment_source": {"paypal": paypal_source},
        }

        logger.info(
            "creating_paypal_order",
            transaction_id=request.transaction_id,
            amount=str(request.amount),
            currency=request.currency,
        )

        order = await self._execute(
            "initiate_payment",
            lambda: self._request(
                "POST", "/v2/checkout/orders", body, request_id=request.idempotency_key
            ),
        )

        approval_url = next(
            (
                link["href"]
                for link in order.get("links", [])
                if link.get("rel") in ("payer-action", "approve")
            ),
            None,
        )
        logger.info(
            "paypal_order_created",
            transaction_id=request.transaction_id,
            order_id=order["id"],
            status=order.get("status"),
        )
        return InitiationResult(
            provider_transaction_id=order["id"],
            status=self.map_status(order.get("status")),
            native_status=order.get("status", ""),
            approval_url=approval_url,
            raw={"id": order["id"], "status": order.get("status")},
        )

    async def capture(self, provider_transaction_id: str) -> CaptureResult:
        """
        Capture an approved order.

        Orders not yet approved by the payer are reported with their
        current status instead of being captured.
        """

        async def _capture() -> Dict[str, Any]:
            order = await self._request("GET", f"/v2/checkout/orders/{provider_transaction_id}")
            if order.get("status") != "APPROVED":
                return order
            return await self._request(
                "POST",
                f"/v2/checkout/orders/{provider_transaction_id}/capture",
                {},
                request_id=f"capture:{provider_transaction_id}",
            )

        order = await self._execute("capture", _capture)

        capture = self._first_capture(order)
        if capture and capture.get("status") in CAPTURE_STATUS_MAP:
            status = CAPTURE_STATUS_MAP[capture["status"]]
        else:
            status = self.map_status(order.get("status"))

        logger.info(
            "paypal_order_captured",
            order_id=provider_transaction_id,
            order_status=order.get("status"),
            capture_id=capture.get("id") if capture else None,
        )
        return CaptureResult(
            status=status,
            native_status=order.get("status", ""),
            raw={
                "id": order.get("id", provider_transaction_id),
                "status": order.get("status"),
                "capture_id": capture.get("id") if capture else None,
            },
        )

    async def refund(
        self, provider_transaction_id: str, amount: Decimal, currency: str
    ) -> RefundResult:
        """Refund the order's capture."""
        request_id = f"refund:{provider_transaction_id}:{uuid.uuid4()}"

        async def _refund() -> Dict[str, Any]:
            order = await self._request("GET", f"/v2/checkout/orders/{provider_transaction_id}")
            capture = self._first_capture(order)
            if not capture:
                raise PaymentProcessingError(
                    f"PayPal order {provider_transaction_id} has no capture to refund",
                    provider=self.name,
                    error_code="capture_not_found",
                )
            body: Dict[str, Any] = {
                "amount": {
                    "currency_code": currency.upper(),
                    "value": format_amount(amount, currency),
                }
            }
            custom_id = (order.get("purchase_units") or [{}])[0].get("custom_id")
            if custom_id:
                body["custom_id"] = custom_id
            return await self._request(
                "POST", f"/v2/payments/captures/{capture['id']}/refund", body, request_id=request_id
            )

        logger.info("creating_paypal_refund", order_id=provider_transaction_id, amount=str(amount))
        refund = await self._execute("refund", _refund)

        refund_amount = (refund.get("amount") or {}).get("value")
        logger.info("paypal_refund_created", refund_id=refund.get("id"), status=refund.get("status"))
        return RefundResult(
            refund_id=refund["id"],
            status=REFUND_STATUS_MAP.get(refund.get("status", ""), TransactionStatus.FAILED),
            native_status=refund.get("status", ""),
            amount=Decimal(refund_amount) if refund_amount else amount,
            raw={"id": refund["id"], "status": refund.get("status")},
        )

    async def get_details(self, provider_transaction_id: str) -> PaymentDetails:
        """Fetch an order."""
        order = await self._execute(
            "get_details",
            lambda: self._request("GET", f"/v2/checkout/orders/{provider_transaction_id}"),
        )
        amount_info = ((order.get("purchase_units") or [{}])[0]).get("amount") or {}
        return PaymentDetails(
            status=self.map_status(order.get("status")),
            native_status=order.get("status", ""),
            amount=Decimal(amount_info["value"]) if amount_info.get("value") else None,
            currency=amount_info.get("currency_code"),
            raw={"id": order.get("id"), "status": order.get("status")},
        )

    async def verify_and_parse_webhook(
        self, headers: Mapping[str, str], raw_body: bytes
    ) -> WebhookEvent:
        """
        Verify a delivery with PayPal's verification endpoint and normalize it.

        Raises:
            SignatureError: If headers are missing, the body is not JSON or
                PayPal does not confirm the signature
            PaymentProcessingError: If PayPal cannot be reached to verify
        """
        lowered = {key.lower(): value for key, value in headers.items()}
        missing = [name for name in TRANSMISSION_HEADERS if not lowered.get(name)]
        if missing:
            raise SignatureError(
                "Missing PayPal transmission headers",
                details={"provider": self.name, "missing": missing},
            )
        if not self.settings.paypal_webhook_id:
            raise SignatureError(
                "PayPal webhook id is not configured", details={"provider": self.name}
            )

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise SignatureError("Invalid PayPal webhook payload", details={"provider": self.name}) from e

        verification_body = {
            "auth_algo": lowered["paypal-auth-algo"],
            "cert_url": lowered["paypal-cert-url"],
            "transmission_id": lowered["paypal-transmission-id"],
            "transmission_sig": lowered["paypal-transmission-sig"],
            "transmission_time": lowered["paypal-transmission-time"],
            "webhook_id": self.settings.paypal_webhook_id,
            "webhook_event": payload,
        }
        result = await self._execute(
            "verify_webhook",
            lambda: self._request(
                "POST", "/v1/notifications/verify-webhook-signature", verification_body
            ),
        )
        if result.get("verification_status") != "SUCCESS":
            raise SignatureError(
                "Invalid PayPal webhook signature",
                details={"provider": self.name, "event_id": payload.get("id")},
            )

        return self._normalize_event(payload)

    def _normalize_event(self, payload: Dict[str, Any]) -> WebhookEvent:
        native_type = payload.get("event_type", "")
        event_type = EVENT_TYPE_MAP.get(native_type, WebhookEventType.UNKNOWN)
        resource: Dict[str, Any] = payload.get("resource") or {}
        related_ids = (resource.get("supplementary_data") or {}).get("related_ids") or {}

        event = WebhookEvent(
            event_id=payload["id"],
            event_type=event_type,
            native_event_type=native_type,
            provider_transaction_id=related_ids.get("order_id"),
            transaction_reference=resource.get("custom_id"),
            payload=payload,
        )

        if event_type == WebhookEventType.PAYMENT_FAILED:
            reason = (resource.get("status_details") or {}).get("reason")
            event.error_message = reason or "Payment capture denied"
            event.error_code = reason
        elif event_type == WebhookEventType.REFUNDED:
            breakdown = resource.get("seller_payable_breakdown") or {}
            total = (breakdown.get("total_refunded_amount") or {}).get("value")
            single = (resource.get("amount") or {}).get("value")
            if total or single:
                event.amount = Decimal(total or single)

        return event

    @staticmethod
    def _first_capture(order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for unit in order.get("purchase_units") or []:
            captures = (unit.get("payments") or {}).get("captures") or []
            if captures:
                return captures[0]
        return None
