"""
Tests for the PayPal adapter against a mocked REST API.
"""
import json
from decimal import Decimal
from typing import Any, Callable, Dict, List, Tuple, Union

import httpx
import pytest
import pytest_asyncio

from gateway_hub.config import Settings
from gateway_hub.core.errors import PaymentProcessingError, SignatureError
from gateway_hub.core.states import TransactionStatus
from gateway_hub.integrations.base import PaymentRequest, WebhookEventType
from gateway_hub.integrations.paypal_adapter import SANDBOX_URL, PayPalAdapter, format_amount

from conftest import make_settings

Handler = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]

TRANSMISSION_HEADERS = {
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
    "PAYPAL-CERT-URL": "https://api-m.sandbox.paypal.com/v1/notifications/certs/CERT-1",
    "PAYPAL-TRANSMISSION-ID": "69cd13f0-d67a-11e5-baa3-778b53f4ae55",
    "PAYPAL-TRANSMISSION-SIG": "lmI95Jx3Y9nhR5SJWlHVIWpg4AgFk7n9bCHSRxbrd8A9zrhdu2rMyFrmz+Zjh3s3boXB07VXCXUZy/UFzUlnGJn0wDugt7FlSvdKeIJenLRemUxYCPVoEZzg9VFNqOa48gMkvF+XTpxBeUx/kWy6B5cp7GkT2+pOowfRK7OaynuxUoKW3JcMWw272VKjLTtTAShncla7tGF+55rxyt2KNZIIqxNMJ48RDZheGU5w1npu9dZHnPgTXB9iomeVRoD8O/jhRpnKsGrDschyNdkeh81BJJMH4Ctc6lnCCquoP/GzCzz33MMsNdid7vL/NIWaCsekQpW26FpWPi/tfj8nLA==",
    "PAYPAL-TRANSMISSION-TIME": "2026-10-17T10:00:00Z",
}


class MockPayPal:
    """Routes keyed by (method, path); records every request."""

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], List[Handler]] = {}
        self.requests: List[httpx.Request] = []
        self.on(
            "POST",
            "/v1/oauth2/token",
            httpx.Response(200, json={"access_token": "A21AAF-token", "expires_in": 32400}),
        )

    def on(self, method: str, path: str, *responses: Handler) -> None:
        """Queue responses; the last one repeats."""
        self.routes[(method, path)] = list(responses)

    def requests_to(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND", "message": "Not found"})
        handler = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(handler):
            return handler(request)
        # fresh copy per request; the client binds a response to its request
        return httpx.Response(handler.status_code, headers=handler.headers, content=handler.content)


def order(order_id: str = "5O190127TN364715T", status: str = "PAYER_ACTION_REQUIRED", **extra: Any) -> Dict[str, Any]:
    body = {
        "id": order_id,
        "status": status,
        "links": [
            {"href": f"{SANDBOX_URL}/v2/checkout/orders/{order_id}", "rel": "self"},
            {"href": f"https://www.sandbox.paypal.com/checkoutnow?token={order_id}", "rel": "payer-action"},
        ],
    }
    body.update(extra)
    return body


def captured_order(order_id: str = "5O190127TN364715T", capture_status: str = "COMPLETED") -> Dict[str, Any]:
    return order(
        order_id,
        status="COMPLETED",
        purchase_units=[
            {
                "custom_id": "tx-1",
                "amount": {"currency_code": "USD", "value": "99.99"},
                "payments": {"captures": [{"id": "3C679366HH908993F", "status": capture_status}]},
            }
        ],
    )


@pytest.fixture
def paypal_api() -> MockPayPal:
    return MockPayPal()


@pytest_asyncio.fixture
async def adapter(test_settings: Settings, paypal_api: MockPayPal):
    client = httpx.AsyncClient(base_url=SANDBOX_URL, transport=httpx.MockTransport(paypal_api))
    adapter = PayPalAdapter(test_settings, client=client)
    yield adapter
    await adapter.close()


@pytest.fixture
def payment_request() -> PaymentRequest:
    return PaymentRequest(
        transaction_id="3f6c1a9e-0d1b-4c59-9c43-7d2b1c1e8a10",
        amount=Decimal("99.99"),
        currency="USD",
        payment_method={"type": "paypal", "paypal_email": "buyer@example.com"},
        description="Order 123",
        return_url="https://shop.example.com/return",
        cancel_url="https://shop.example.com/cancel",
    )


class TestFormatting:
    """Test suite for amount formatting and status mapping."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "amount,currency,expected",
        [
            (Decimal("10"), "USD", "10.00"),
            (Decimal("99.99"), "EUR", "99.99"),
            (Decimal("500"), "JPY", "500"),
        ],
    )
    def test_format_amount(self, amount: Decimal, currency: str, expected: str) -> None:
        assert format_amount(amount, currency) == expected

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "native,expected",
        [
            ("CREATED", TransactionStatus.INITIATED),
            ("APPROVED", TransactionStatus.PROCESSING),
            ("PAYER_ACTION_REQUIRED", TransactionStatus.PROCESSING),
            ("COMPLETED", TransactionStatus.COMPLETED),
            ("VOIDED", TransactionStatus.CANCELED),
            ("UNHEARD_OF", TransactionStatus.FAILED),
        ],
    )
    def test_map_status(self, adapter: PayPalAdapter, native: str, expected: TransactionStatus) -> None:
        assert adapter.map_status(native) == expected


class TestOrders:
    """Test suite for order creation, capture and refunds."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_order(
        self, adapter: PayPalAdapter, paypal_api: MockPayPal, payment_request: PaymentRequest
    ) -> None:
        paypal_api.on("POST", "/v2/checkout/orders", httpx.Response(201, json=order()))

        result = await adapter.initiate_payment(payment_request)

        assert result.provider_transaction_id == "5O190127TN364715T"
        assert result.status == TransactionStatus.PROCESSING
        assert result.approval_url.startswith("https://www.sandbox.paypal.com/checkoutnow")

        (sent,) = paypal_api.requests_to("POST", "/v2/checkout/orders")
        assert sent.headers["Authorization"] == "Bearer A21AAF-token"
        assert sent.headers["PayPal-Request-Id"] == f"create:{payment_request.transaction_id}"
        body = json.loads(sent.content)
        assert body["intent"] == "CAPTURE"
        unit = body["purchase_units"][0]
        assert unit["custom_id"] == payment_request.transaction_id
        assert unit["amount"] == {"currency_code": "USD", "value": "99.99"}
        paypal_source = body["payment_source"]["paypal"]
        assert paypal_source["email_address"] == "buyer@example.com"
        assert paypal_source["experience_context"]["return_url"] == "https://shop.example.com/return"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_token_is_cached(
        self, adapter: PayPalAdapter, paypal_api: MockPayPal, payment_request: PaymentRequest
    ) -> None:
        paypal_api.on("POST", "/v2/checkout/orders", httpx.Response(201, json=order()))

        await adapter.initiate_payment(payment_request)
        await adapter.initiate_payment(payment_request)

        token_requests = paypal_api.requests_to("POST", "/v1/oauth2/token")
        assert len(token_requests) == 1
        assert token_requests[0].headers["Authorization"].startswith("Basic ")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_capture_approved_order(self, adapter: PayPalAdapter, paypal_api: MockPayPal) -> None:
        order_id = "5O190127TN364715T"
        paypal_api.on("GET", f"/v2/checkout/orders/{order_id}", httpx.Response(200, json=order(status="APPROVED")))
        paypal_api.on("POST", f"/v2/checkout/orders/{order_id}/capture", httpx.Response(201, json=captured_order()))

        result = await adapter.capture(order_id)

        assert result.status == TransactionStatus.COMPLETED
        assert result.raw["capture_id"] == "3C679366HH908993F"
        (sent,) = paypal_api.requests_to("POST", f"/v2/checkout/orders/{order_id}/capture")
        assert sent.headers["PayPal-Request-Id"] == f"capture:{order_id}"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_capture_pending(self, adapter: PayPalAdapter, paypal_api: MockPayPal) -> None:
        order_id = "5O190127TN364715T"
        paypal_api.on("GET", f"/v2/checkout/orders/{order_id}", httpx.Response(200, json=order(status="APPROVED")))
        paypal_api.on(
            "POST",
            f"/v2/checkout/orders/{order_id}/capture",
            httpx.Response(201, json=captured_order(capture_status="PENDING")),
        )

        result = await adapter.capture(order_id)

        assert result.status == TransactionStatus.PROCESSING

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unapproved_order_is_not_captured(
        self, adapter: PayPalAdapter, paypal_api: MockPayPal
    ) -> None:
        order_id = "5O190127TN364715T"
        paypal_api.on("GET", f"/v2/checkout/orders/{order_id}", httpx.Response(200, json=order()))

        result = await adapter.capture(order_id)

        assert result.status == TransactionStatus.PROCESSING
        assert paypal_api.requests_to("POST", f"/v2/checkout/orders/{order_id}/capture") == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_capture(self, adapter: PayPalAdapter, paypal_api: MockPayPal) -> None:
        order_id = "5O190127TN364715T"
        paypal_api.on("GET", f"/v2/checkout/orders/{order_id}", httpx.Response(200, json=captured_order()))
        paypal_api.on(
            "POST",
            "/v2/payments/captures/3C679366HH908993F/refund",
            httpx.Response(
                201,
                json={"id": "1JU08902781691411", "status": "COMPLETED", "amount": {"value": "25.00", "currency_code": "USD"}},
            ),
        )

        result = await adapter.refund(order_id, Decimal("25"), "USD")

        assert result.refund_id == "1JU08902781691411"
        assert result.amount == Decimal("25.00")
        assert result.status == TransactionStatus.COMPLETED
        (sent,) = paypal_api.requests_to("POST", "/v2/payments/captures/3C679366HH908993F/refund")
        body = json.loads(sent.content)
        assert body["amount"] == {"currency_code": "USD", "value": "25.00"}
        assert body["custom_id"] == "tx-1"
        assert sent.headers["PayPal-Request-Id"].startswith(f"refund:{order_id}:")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_without_capture(self, adapter: PayPalAdapter, paypal_api: MockPayPal) -> None:
        order_id = "5O190127TN364715T"
        paypal_api.on("GET", f"/v2/checkout/orders/{order_id}", httpx.Response(200, json=order()))

        with pytest.raises(PaymentProcessingError) as exc_info:
            await adapter.refund(order_id, Decimal("10.00"), "USD")

        assert exc_info.value.error_code == "capture_not_found"
        assert exc_info.value.transient is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_details(self, adapter: PayPalAdapter, paypal_api: MockPayPal) -> None:
        order_id = "5O190127TN364715T"
        paypal_api.on("GET", f"/v2/checkout/orders/{order_id}", httpx.Response(200, json=captured_order()))

        details = await adapter.get_details(order_id)

        assert details.status == TransactionStatus.COMPLETED
        assert details.amount == Decimal("99.99")
        assert details.currency == "USD"


class TestErrors:
    """Test suite for HTTP error classification."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_server_error_is_transient(
        self, adapter: PayPalAdapter, paypal_api: MockPayPal, payment_request: PaymentRequest
    ) -> None:
        paypal_api.on(
            "POST",
            "/v2/checkout/orders",
            httpx.Response(503, json={"name": "SERVICE_UNAVAILABLE", "message": "Try again later"}),
        )

        with pytest.raises(PaymentProcessingError) as exc_info:
            await adapter.initiate_payment(payment_request)

        assert exc_info.value.transient is True
        assert exc_info.value.error_code == "SERVICE_UNAVAILABLE"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unprocessable_is_permanent(
        self, adapter: PayPalAdapter, paypal_api: MockPayPal, payment_request: PaymentRequest
    ) -> None:
        paypal_api.on(
            "POST",
            "/v2/checkout/orders",
            httpx.Response(
                422,
                json={
                    "name": "UNPROCESSABLE_ENTITY",
                    "message": "The requested action could not be performed.",
                    "details": [{"issue": "PAYER_ACCOUNT_RESTRICTED"}],
                },
            ),
        )

        with pytest.raises(PaymentProcessingError) as exc_info:
            await adapter.initiate_payment(payment_request)

        assert exc_info.value.transient is False
        assert exc_info.value.error_code == "PAYER_ACCOUNT_RESTRICTED"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_connection_error_is_transient(
        self, adapter: PayPalAdapter, paypal_api: MockPayPal, payment_request: PaymentRequest
    ) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        paypal_api.on("POST", "/v2/checkout/orders", refuse)

        with pytest.raises(PaymentProcessingError) as exc_info:
            await adapter.initiate_payment(payment_request)

        assert exc_info.value.transient is True
        assert exc_info.value.error_code == "connection_error"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unauthorized_drops_cached_token(
        self, adapter: PayPalAdapter, paypal_api: MockPayPal, payment_request: PaymentRequest
    ) -> None:
        paypal_api.on(
            "POST",
            "/v2/checkout/orders",
            httpx.Response(401, json={"error": "invalid_token", "error_description": "Token expired"}),
            httpx.Response(201, json=order()),
        )

        with pytest.raises(PaymentProcessingError) as exc_info:
            await adapter.initiate_payment(payment_request)
        assert exc_info.value.transient is True

        await adapter.initiate_payment(payment_request)
        assert len(paypal_api.requests_to("POST", "/v1/oauth2/token")) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_credentials(self, payment_request: PaymentRequest, paypal_api: MockPayPal) -> None:
        settings = make_settings(paypal_client_id="", paypal_client_secret="")
        client = httpx.AsyncClient(base_url=SANDBOX_URL, transport=httpx.MockTransport(paypal_api))
        adapter = PayPalAdapter(settings, client=client)

        with pytest.raises(PaymentProcessingError) as exc_info:
            await adapter.initiate_payment(payment_request)

        assert exc_info.value.error_code == "not_configured"
        assert paypal_api.requests == []
        await adapter.close()


class TestWebhooks:
    """Test suite for webhook verification and normalization."""

    @staticmethod
    def capture_event(event_type: str = "PAYMENT.CAPTURE.COMPLETED", **resource: Any) -> bytes:
        payload = {
            "id": "WH-58D329510W468432D-8HN650336L201105X",
            "event_type": event_type,
            "resource": {
                "id": "3C679366HH908993F",
                "custom_id": "tx-1",
                "supplementary_data": {"related_ids": {"order_id": "5O190127TN364715T"}},
                **resource,
            },
        }
        return json.dumps(payload).encode("utf-8")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_verified_capture_completed(self, adapter: PayPalAdapter, paypal_api: MockPayPal) -> None:
        paypal_api.on(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            httpx.Response(200, json={"verification_status": "SUCCESS"}),
        )

        event = await adapter.verify_and_parse_webhook(TRANSMISSION_HEADERS, self.capture_event())

        assert event.event_type == WebhookEventType.PAYMENT_SUCCEEDED
        assert event.event_id == "WH-58D329510W468432D-8HN650336L201105X"
        assert event.provider_transaction_id == "5O190127TN364715T"
        assert event.transaction_reference == "tx-1"

        (sent,) = paypal_api.requests_to("POST", "/v1/notifications/verify-webhook-signature")
        body = json.loads(sent.content)
        assert body["webhook_id"] == "WH-TEST-1"
        assert body["transmission_id"] == TRANSMISSION_HEADERS["PAYPAL-TRANSMISSION-ID"]
        assert body["webhook_event"]["event_type"] == "PAYMENT.CAPTURE.COMPLETED"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_verification(self, adapter: PayPalAdapter, paypal_api: MockPayPal) -> None:
        paypal_api.on(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            httpx.Response(200, json={"verification_status": "FAILURE"}),
        )

        with pytest.raises(SignatureError):
            await adapter.verify_and_parse_webhook(TRANSMISSION_HEADERS, self.capture_event())

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_headers(self, adapter: PayPalAdapter, paypal_api: MockPayPal) -> None:
        headers = dict(TRANSMISSION_HEADERS)
        del headers["PAYPAL-TRANSMISSION-SIG"]

        with pytest.raises(SignatureError) as exc_info:
            await adapter.verify_and_parse_webhook(headers, self.capture_event())

        assert exc_info.value.details["missing"] == ["paypal-transmission-sig"]
        assert paypal_api.requests == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_verification_endpoint_down(self, adapter: PayPalAdapter, paypal_api: MockPayPal) -> None:
        paypal_api.on("POST", "/v1/notifications/verify-webhook-signature", httpx.Response(500))

        with pytest.raises(PaymentProcessingError) as exc_info:
            await adapter.verify_and_parse_webhook(TRANSMISSION_HEADERS, self.capture_event())

        assert exc_info.value.transient is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_capture_denied(self, adapter: PayPalAdapter, paypal_api: MockPayPal) -> None:
        paypal_api.on(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            httpx.Response(200, json={"verification_status": "SUCCESS"}),
        )
        body = self.capture_event("PAYMENT.CAPTURE.DENIED", status_details={"reason": "RISK_DECLINE"})

        event = await adapter.verify_and_parse_webhook(TRANSMISSION_HEADERS, body)

        assert event.event_type == WebhookEventType.PAYMENT_FAILED
        assert event.error_code == "RISK_DECLINE"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_total(self, adapter: PayPalAdapter, paypal_api: MockPayPal) -> None:
        paypal_api.on(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            httpx.Response(200, json={"verification_status": "SUCCESS"}),
        )
        body = self.capture_event(
            "PAYMENT.CAPTURE.REFUNDED",
            amount={"value": "10.00", "currency_code": "USD"},
            seller_payable_breakdown={"total_refunded_amount": {"value": "35.00", "currency_code": "USD"}},
        )

        event = await adapter.verify_and_parse_webhook(TRANSMISSION_HEADERS, body)

        assert event.event_type == WebhookEventType.REFUNDED
        assert event.amount == Decimal("35.00")
