"""
API tests over the ASGI app with fake providers.
"""
from typing import Any, AsyncGenerator, Dict
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError

from gateway_hub.api.main import create_app
from gateway_hub.container import build_services
from gateway_hub.core.errors import PaymentProcessingError
from gateway_hub.integrations.base import WebhookEventType

from conftest import make_settings
from fakes import FakeProviderAdapter, fake_delivery

API_KEY = "pk_live_merchant"
ADMIN_KEY = "ak_live_operator"


async def create_payment(client: AsyncClient, token: str, **overrides: Any) -> Dict[str, Any]:
    body = {
        "amount": "99.99",
        "currency": "usd",
        "provider": "stripe",
        "paymentMethod": token,
        "customerId": "cust_123",
        "metadata": {"order_id": "order_123"},
    }
    body.update(overrides)
    response = await client.post("/payments", json=body)
    assert response.status_code == 201, response.text
    return response.json()


@pytest_asyncio.fixture
async def secured_client(
    redis_client, session_factory, registry
) -> AsyncGenerator[AsyncClient, Any]:
    """Client for an app that requires API keys."""
    services = build_services(
        make_settings(api_keys=API_KEY, admin_api_keys=ADMIN_KEY),
        redis_client=redis_client,
        session_factory=session_factory,
        registry=registry,
    )
    app = create_app(services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


class TestTokenEndpoints:
    """Test suite for /payments/tokens."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_tokenize_card(self, client: AsyncClient) -> None:
        response = await client.post(
            "/payments/tokens",
            json={
                "type": "card",
                "cardNumber": "4242 4242 4242 4242",
                "expiryMonth": 12,
                "expiryYear": 2030,
                "cvv": "123",
                "cardholderName": "John Doe",
                "cardType": "visa",
            },
        )

        assert response.status_code == 201
        data = response.json()
        assert data["tokenId"]
        assert data["maskedData"]["card_number"] == "**** **** **** 4242"
        assert "4242424242424242" not in response.text
        assert "123" not in str(data["maskedData"].values())

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_card_requires_expiry(self, client: AsyncClient) -> None:
        response = await client.post(
            "/payments/tokens", json={"type": "card", "cardNumber": "4242424242424242"}
        )

        assert response.status_code == 422

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_paypal_requires_email(self, client: AsyncClient) -> None:
        response = await client.post("/payments/tokens", json={"type": "paypal"})

        assert response.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_delete_token(self, client: AsyncClient, card_token: str) -> None:
        response = await client.delete(f"/payments/tokens/{card_token}")
        assert response.status_code == 204

        # deleting again is not an error
        response = await client.delete(f"/payments/tokens/{card_token}")
        assert response.status_code == 204


class TestPaymentEndpoints:
    """Test suite for payment creation, lookup, confirmation and refunds."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_payment(self, client: AsyncClient, card_token: str) -> None:
        data = await create_payment(client, card_token)

        assert data["status"] == "processing"
        assert data["transactionId"]
        assert data["providerTransactionId"].startswith("fake_")
        assert data["clientSecret"].endswith("_secret")
        assert data["requiresAction"] is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"amount": "0"},
            {"amount": "-5.00"},
            {"amount": "1.005"},
            {"currency": "US"},
            {"paymentMethod": ""},
        ],
    )
    async def test_create_payment_validation(
        self, client: AsyncClient, card_token: str, overrides: Dict[str, Any]
    ) -> None:
        body = {"amount": "10.00", "currency": "USD", "provider": "stripe", "paymentMethod": card_token}
        body.update(overrides)

        response = await client.post("/payments", json=body)

        assert response.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_token(self, client: AsyncClient) -> None:
        response = await client.post(
            "/payments",
            json={"amount": "10.00", "currency": "USD", "provider": "stripe", "paymentMethod": "tok_missing"},
        )

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_declined_payment(
        self, client: AsyncClient, card_token: str, stripe_fake: FakeProviderAdapter
    ) -> None:
        stripe_fake.initiate_errors.append(
            PaymentProcessingError("Your card was declined", provider="stripe", error_code="card_declined")
        )

        response = await client.post(
            "/payments",
            json={"amount": "10.00", "currency": "USD", "provider": "stripe", "paymentMethod": card_token},
        )

        assert response.status_code == 502
        body = response.json()
        assert body["code"] == "PAYMENT_PROCESSING_ERROR"
        assert body["details"]["provider_error_code"] == "card_declined"
        assert body["details"]["transaction_id"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_get_payment(self, client: AsyncClient, card_token: str) -> None:
        created = await create_payment(client, card_token)

        response = await client.get(f"/payments/{created['transactionId']}")

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == created["transactionId"]
        assert data["amount"] == "99.99"
        assert data["currency"] == "USD"
        assert data["refundedAmount"] == "0.00"
        assert data["customerId"] == "cust_123"
        assert data["metadata"]["client"] == {"order_id": "order_123"}
        assert data["metadata"]["status_history"][0]["to"] == "initiated"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_missing_payment(self, client: AsyncClient) -> None:
        response = await client.get("/payments/00000000-0000-0000-0000-000000000000")

        assert response.status_code == 404
        body = response.json()
        assert body["error"] is True
        assert body["code"] == "NOT_FOUND"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_malformed_id_is_not_found(self, client: AsyncClient) -> None:
        response = await client.get("/payments/not-a-uuid")

        assert response.status_code == 404

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_get_by_provider_id(self, client: AsyncClient, card_token: str) -> None:
        created = await create_payment(client, card_token)

        response = await client.get(
            f"/payments/provider/{created['providerTransactionId']}", params={"provider": "stripe"}
        )

        assert response.status_code == 200
        assert response.json()["id"] == created["transactionId"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_list_payments(self, client: AsyncClient, card_token: str) -> None:
        for _ in range(3):
            await create_payment(client, card_token)
        await create_payment(client, card_token, customerId="cust_other")

        response = await client.get("/payments", params={"customerId": "cust_123", "limit": 2})

        assert response.status_code == 200
        data = response.json()
        assert len(data["transactions"]) == 2
        assert data["pagination"] == {"total": 3, "page": 1, "limit": 2, "pages": 2}

        response = await client.get("/payments", params={"status": "completed"})
        assert response.json()["pagination"]["total"] == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_limit_bounds(self, client: AsyncClient) -> None:
        response = await client.get("/payments", params={"limit": 101})

        assert response.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_confirm_and_refund(self, client: AsyncClient, card_token: str) -> None:
        created = await create_payment(client, card_token)
        transaction_id = created["transactionId"]

        response = await client.post(f"/payments/{transaction_id}/confirm")
        assert response.status_code == 200
        assert response.json()["status"] == "completed"

        response = await client.post(
            f"/payments/{transaction_id}/refund", json={"amount": "30.00", "reason": "requested_by_customer"}
        )
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "partially_refunded"
        assert data["amount"] == "30.00"
        assert data["refundedAmount"] == "30.00"
        assert data["refundId"].startswith("re_")

        response = await client.post(f"/payments/{transaction_id}/refund", json={})
        assert response.json()["status"] == "refunded"
        assert response.json()["refundedAmount"] == "99.99"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_over_refund(self, client: AsyncClient, card_token: str) -> None:
        created = await create_payment(client, card_token)
        await client.post(f"/payments/{created['transactionId']}/confirm")

        response = await client.post(f"/payments/{created['transactionId']}/refund", json={"amount": "150.00"})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_before_completion_conflicts(self, client: AsyncClient, card_token: str) -> None:
        created = await create_payment(client, card_token)

        response = await client.post(f"/payments/{created['transactionId']}/refund", json={"amount": "10.00"})

        assert response.status_code == 409
        body = response.json()
        assert body["code"] == "INVALID_STATE_TRANSITION"
        assert body["details"]["current_status"] == "processing"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_status_update(self, client: AsyncClient, card_token: str) -> None:
        created = await create_payment(client, card_token)

        response = await client.post(
            f"/payments/{created['transactionId']}/status",
            json={"status": "canceled", "metadata": {"canceled_by": "support"}},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "canceled"
        assert data["metadata"]["canceled_by"] == "support"

        response = await client.post(f"/payments/{created['transactionId']}/status", json={"status": "completed"})
        assert response.status_code == 409

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_dispute(self, client: AsyncClient, card_token: str) -> None:
        created = await create_payment(client, card_token)
        await client.post(f"/payments/{created['transactionId']}/confirm")

        response = await client.post(
            f"/payments/{created['transactionId']}/dispute",
            json={"disputeReason": "fraudulent", "disputeAmount": "99.99"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "disputed"
        assert data["metadata"]["dispute"]["reason"] == "fraudulent"


class TestAuthentication:
    """Test suite for API keys."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_key(self, secured_client: AsyncClient) -> None:
        response = await secured_client.get("/payments")

        assert response.status_code == 401
        assert response.json()["code"] == "AUTHENTICATION_ERROR"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_key(self, secured_client: AsyncClient) -> None:
        response = await secured_client.get("/payments", headers={"X-API-Key": "wrong"})

        assert response.status_code == 401

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_valid_key(self, secured_client: AsyncClient) -> None:
        response = await secured_client.get("/payments", headers={"X-API-Key": API_KEY})

        assert response.status_code == 200

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_admin_key_accepted_on_payment_routes(self, secured_client: AsyncClient) -> None:
        response = await secured_client.get("/payments", headers={"X-API-Key": ADMIN_KEY})

        assert response.status_code == 200

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_admin_routes_need_admin_key(self, secured_client: AsyncClient) -> None:
        response = await secured_client.post("/admin/retry-sweep", headers={"X-API-Key": API_KEY})
        assert response.status_code == 403
        assert response.json()["code"] == "AUTHORIZATION_ERROR"

        response = await secured_client.post("/admin/retry-sweep", headers={"X-API-Key": ADMIN_KEY})
        assert response.status_code == 200

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status_update_needs_admin_key(self, secured_client: AsyncClient) -> None:
        response = await secured_client.post(
            "/payments/00000000-0000-0000-0000-000000000000/status",
            json={"status": "canceled"},
            headers={"X-API-Key": API_KEY},
        )

        assert response.status_code == 403

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_webhooks_and_health_are_open(self, secured_client: AsyncClient) -> None:
        headers, body = fake_delivery("evt_open", WebhookEventType.UNKNOWN)

        assert (await secured_client.post("/webhooks/stripe", content=body, headers=headers)).status_code == 200
        assert (await secured_client.get("/health/live")).status_code == 200


class TestWebhookEndpoints:
    """Test suite for /webhooks."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stripe_webhook_completes_payment(self, client: AsyncClient, card_token: str) -> None:
        created = await create_payment(client, card_token)
        headers, body = fake_delivery(
            "evt_api_1", WebhookEventType.PAYMENT_SUCCEEDED, created["providerTransactionId"]
        )

        response = await client.post("/webhooks/stripe", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"received": True, "status": "processed", "eventId": "evt_api_1"}
        payment = (await client.get(f"/payments/{created['transactionId']}")).json()
        assert payment["status"] == "completed"

        response = await client.post("/webhooks/stripe", content=body, headers=headers)
        assert response.json()["status"] == "duplicate"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bad_signature_acknowledged(self, client: AsyncClient, card_token: str) -> None:
        created = await create_payment(client, card_token)
        headers, body = fake_delivery(
            "evt_bad",
            WebhookEventType.PAYMENT_SUCCEEDED,
            created["providerTransactionId"],
            signature="forged",
        )

        response = await client.post("/webhooks/stripe", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["received"] is False
        assert response.json()["status"] == "invalid_signature"
        payment = (await client.get(f"/payments/{created['transactionId']}")).json()
        assert payment["status"] == "processing"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_verification_unavailable(
        self, client: AsyncClient, paypal_fake: FakeProviderAdapter
    ) -> None:
        paypal_fake.verify_and_parse_webhook = AsyncMock(
            side_effect=PaymentProcessingError("PayPal unreachable", provider="paypal", transient=True)
        )
        headers, body = fake_delivery("WH-1", WebhookEventType.PAYMENT_SUCCEEDED, "ORDER-1")

        response = await client.post("/webhooks/paypal", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "verification_unavailable"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_store_outage_acknowledged(
        self, client: AsyncClient, redis_client, mocker
    ) -> None:
        mocker.patch.object(
            redis_client, "exists", new=AsyncMock(side_effect=RedisConnectionError("redis down"))
        )
        headers, body = fake_delivery("evt_outage", WebhookEventType.PAYMENT_SUCCEEDED, "fake_any")

        response = await client.post("/webhooks/stripe", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"received": True, "status": "error", "eventId": "evt_outage"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unmatched_event_acknowledged(self, client: AsyncClient) -> None:
        headers, body = fake_delivery("evt_orphan", WebhookEventType.PAYMENT_SUCCEEDED, "fake_missing")

        response = await client.post("/webhooks/stripe", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "failed"


class TestAdminEndpoints:
    """Test suite for /admin."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reconcile(
        self, client: AsyncClient, card_token: str, stripe_fake: FakeProviderAdapter
    ) -> None:
        created = await create_payment(client, card_token)
        stripe_fake.details_status = "succeeded"

        response = await client.post(f"/admin/transactions/{created['transactionId']}/reconcile")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["metadata"]["last_reconciliation"]["provider_status"] == "succeeded"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_retry_sweep(self, client: AsyncClient) -> None:
        response = await client.post("/admin/retry-sweep")

        assert response.status_code == 200
        data = response.json()
        assert data["transactions"] == {"attempted": 0, "succeeded": 0, "failed": 0}
        assert data["failedEvents"] == {"attempted": 0, "succeeded": 0, "failed": 0}


class TestMonitoringEndpoints:
    """Test suite for health and metrics."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "healthy"
        assert data["checks"]["redis"]["status"] == "healthy"
        assert data["checks"]["providers"]["registered"] == ["stripe", "paypal"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_liveness(self, client: AsyncClient) -> None:
        response = await client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_readiness_fails_without_redis(self, client: AsyncClient, redis_client) -> None:
        redis_client.ping = AsyncMock(side_effect=ConnectionError("redis down"))

        response = await client.get("/health/ready")

        assert response.status_code == 503

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_metrics(self, client: AsyncClient) -> None:
        await client.get("/health/live")

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]
        assert "transaction_operations_total" in response.text

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client: AsyncClient) -> None:
        response = await client.get("/health/live", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_root(self, client: AsyncClient) -> None:
        response = await client.get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "operational"
