"""
Composition root.

Builds every long-lived component once per process and wires them
together. The API lifespan and the retry worker both start from here.
"""
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gateway_hub.config import Settings, get_settings
from gateway_hub.core.ledger import TransactionLedger
from gateway_hub.core.retry import BackoffPolicy, RetryScheduler
from gateway_hub.core.tokenization import TokenizationService, TokenKeyring
from gateway_hub.core.webhooks import WebhookEventProcessor
from gateway_hub.database.connection import close_db, get_session_factory
from gateway_hub.database.redis import close_redis, get_redis
from gateway_hub.integrations.paypal_adapter import PayPalAdapter
from gateway_hub.integrations.registry import ProviderRegistry
from gateway_hub.integrations.stripe_adapter import StripeAdapter
from gateway_hub.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@dataclass
class GatewayServices:
    """All wired components of one process."""

    settings: Settings
    redis: aioredis.Redis
    session_factory: async_sessionmaker[AsyncSession]
    registry: ProviderRegistry
    tokenization: TokenizationService
    ledger: TransactionLedger
    webhook_processor: WebhookEventProcessor
    retry_scheduler: RetryScheduler
    health: HealthCheck
    owns_connections: bool = True

    async def close(self) -> None:
        """Stop the scheduler and release provider, Redis and database resources."""
        await self.retry_scheduler.stop()
        await self.registry.close()
        if self.owns_connections:
            await close_redis()
            await close_db()
        logger.info("gateway_services_closed")


def build_registry(settings: Settings) -> ProviderRegistry:
    """Registry with the card (Stripe) and wallet (PayPal) adapters."""
    registry = ProviderRegistry([StripeAdapter(settings), PayPalAdapter(settings)])
    if not settings.paypal_configured:
        logger.warning("paypal_not_configured", message="PayPal calls will fail until credentials are set")
    return registry


def build_services(
    settings: Optional[Settings] = None,
    redis_client: Optional[aioredis.Redis] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    registry: Optional[ProviderRegistry] = None,
) -> GatewayServices:
    """
    Build the component graph.

    Args:
        settings: Application settings (defaults to ``get_settings()``)
        redis_client: Redis client (defaults to the shared client)
        session_factory: Database session factory (defaults to the shared one)
        registry: Provider adapters (defaults to Stripe and PayPal)

    Returns:
        GatewayServices: Wired components
    """
    settings = settings or get_settings()
    owns_connections = redis_client is None and session_factory is None
    redis_client = redis_client or get_redis()
    session_factory = session_factory or get_session_factory()
    registry = registry or build_registry(settings)

    tokenization = TokenizationService(
        redis_client,
        TokenKeyring.from_settings(settings),
        ttl_seconds=settings.token_ttl_seconds,
    )
    ledger = TransactionLedger(
        session_factory,
        redis_client,
        registry,
        tokenization,
        settings,
        backoff=BackoffPolicy.from_settings(settings),
    )
    webhook_processor = WebhookEventProcessor(ledger, registry, redis_client, settings)
    retry_scheduler = RetryScheduler.from_settings(ledger, webhook_processor, settings)
    health = HealthCheck(session_factory, redis_client, registry, settings)

    logger.info(
        "gateway_services_built",
        providers=[provider.value for provider in registry.providers()],
        app_env=settings.app_env,
    )
    return GatewayServices(
        settings=settings,
        redis=redis_client,
        session_factory=session_factory,
        registry=registry,
        tokenization=tokenization,
        ledger=ledger,
        webhook_processor=webhook_processor,
        retry_scheduler=retry_scheduler,
        health=health,
        owns_connections=owns_connections,
    )
