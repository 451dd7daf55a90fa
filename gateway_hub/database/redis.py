"""Redis client management."""
import redis.asyncio as aioredis
import structlog

from gateway_hub.config import get_settings

logger = structlog.get_logger(__name__)

_redis: aioredis.Redis | None = None


def get_redis() -> aioredis.Redis:
    """
    Get or create the shared Redis client.

    Returns:
        aioredis.Redis: Client with string responses
    """
    global _redis
    if _redis is None:
        settings = get_settings()
        _redis = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        logger.info("redis_client_created")
    return _redis


async def close_redis() -> None:
    """Close the shared Redis client."""
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None
