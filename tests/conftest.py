"""
Pytest configuration and fixtures.
"""
import os
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict

os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_fake_key_for_testing")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_fake_secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("APP_ENV", "test")

import fakeredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from gateway_hub.api.main import create_app
from gateway_hub.config import Settings
from gateway_hub.container import GatewayServices, build_services
from gateway_hub.core.ledger import NewTransaction, TransactionLedger
from gateway_hub.core.retry import RetryScheduler
from gateway_hub.core.tokenization import TokenizationService
from gateway_hub.core.webhooks import WebhookEventProcessor
from gateway_hub.database.connection import create_session_factory
from gateway_hub.database.models import Base
from gateway_hub.integrations.base import Provider
from gateway_hub.integrations.registry import ProviderRegistry

from fakes import FakeProviderAdapter

TEST_TOKENIZATION_KEY = "a1" * 32

CARD_PAYLOAD: Dict[str, Any] = {
    "type": "card",
    "card_number": "4242424242424242",
    "expiry_month": 12,
    "expiry_year": 2030,
    "cvv": "123",
    "cardholder_name": "John Doe",
    "card_type": "visa",
}


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without I/O beyond fakes")
    config.addinivalue_line("markers", "integration: tests spanning several components")
    config.addinivalue_line("markers", "race: concurrency tests")


def make_settings(**overrides: Any) -> Settings:
    """Test settings; keyword arguments override the defaults."""
    values: Dict[str, Any] = {
        "stripe_secret_key": "sk_test_fake_key_for_testing",
        "stripe_webhook_secret": "whsec_test_fake_secret",
        "database_url": "sqlite+aiosqlite:///:memory:",
        "redis_url": "redis://localhost:6379/15",
        "app_name": "payment-gateway-hub-test",
        "app_env": "test",
        "log_level": "DEBUG",
        "paypal_client_id": "paypal-client",
        "paypal_client_secret": "paypal-secret",
        "paypal_webhook_id": "WH-TEST-1",
        "tokenization_key": TEST_TOKENIZATION_KEY,
        "provider_max_attempts": 1,
        "provider_retry_wait_min": 0,
        "provider_retry_wait_max": 0,
        "provider_timeout_seconds": 2,
        "redis_lock_blocking_timeout": 10,
        "retry_initial_delay_seconds": 1,
        "retry_max_delay_seconds": 30,
        "retry_max_attempts": 3,
        "retry_scheduler_enabled": False,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return make_settings()


@pytest_asyncio.fixture
async def redis_client() -> AsyncGenerator[fakeredis.FakeAsyncRedis, Any]:
    """In-memory Redis with Lua support for redis-py locks."""
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def session_factory(tmp_path: Any) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Session factory over a fresh SQLite file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'gateway.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield create_session_factory(engine)

    await engine.dispose()


@pytest.fixture
def stripe_fake(test_settings: Settings) -> FakeProviderAdapter:
    return FakeProviderAdapter(test_settings, Provider.STRIPE)


@pytest.fixture
def paypal_fake(test_settings: Settings) -> FakeProviderAdapter:
    return FakeProviderAdapter(test_settings, Provider.PAYPAL)


@pytest.fixture
def registry(stripe_fake: FakeProviderAdapter, paypal_fake: FakeProviderAdapter) -> ProviderRegistry:
    return ProviderRegistry([stripe_fake, paypal_fake])


@pytest.fixture
def services(
    test_settings: Settings,
    redis_client: fakeredis.FakeAsyncRedis,
    session_factory: async_sessionmaker[AsyncSession],
    registry: ProviderRegistry,
) -> GatewayServices:
    """Fully wired services over fakes."""
    return build_services(
        test_settings,
        redis_client=redis_client,
        session_factory=session_factory,
        registry=registry,
    )


@pytest.fixture
def tokenization(services: GatewayServices) -> TokenizationService:
    return services.tokenization


@pytest.fixture
def ledger(services: GatewayServices) -> TransactionLedger:
    return services.ledger


@pytest.fixture
def processor(services: GatewayServices) -> WebhookEventProcessor:
    return services.webhook_processor


@pytest.fixture
def scheduler(services: GatewayServices) -> RetryScheduler:
    return services.retry_scheduler


@pytest_asyncio.fixture
async def card_token(tokenization: TokenizationService) -> str:
    """Token for a test card."""
    result = await tokenization.tokenize(CARD_PAYLOAD)
    return result["token_id"]


@pytest.fixture
def new_transaction(card_token: str) -> NewTransaction:
    """Creation input for 99.99 USD through the card provider."""
    return NewTransaction(
        amount=Decimal("99.99"),
        currency="USD",
        provider="stripe",
        payment_method=card_token,
        customer_id="cust_123",
        metadata={"order_id": "order_123"},
    )


@pytest_asyncio.fixture
async def client(services: GatewayServices) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
