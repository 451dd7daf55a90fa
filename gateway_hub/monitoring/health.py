"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Redis connectivity
- Which payment providers are configured
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gateway_hub.config import Settings

if TYPE_CHECKING:
    from gateway_hub.integrations.registry import ProviderRegistry

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Redis connectivity check
    - Provider configuration report
    - Overall system health status
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis_client: aioredis.Redis,
        registry: ProviderRegistry,
        settings: Settings,
    ) -> None:
        """Initialize health check service."""
        self.session_factory = session_factory
        self.redis = redis_client
        self.registry = registry
        self.settings = settings

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}") from e

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Returns:
            Dict[str, Any]: Redis health status

        Raises:
            HealthCheckError: If Redis check fails
        """
        try:
            await self.redis.ping()
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}") from e

        return {
            "status": "healthy",
            "service": "redis",
            "message": "Redis connection successful",
        }

    def check_providers(self) -> Dict[str, Any]:
        """Report registered providers and whether their credentials are present."""
        registered = [provider.value for provider in self.registry.providers()]
        return {
            "status": "healthy" if registered else "unhealthy",
            "service": "providers",
            "registered": registered,
            "stripe_test_mode": self.settings.is_test_mode,
            "paypal_configured": self.settings.paypal_configured,
            "paypal_environment": self.settings.paypal_environment,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks: Dict[str, Any] = {}
        all_healthy = True

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {"status": "unhealthy", "service": "database", "error": str(e)}
            all_healthy = False

        try:
            checks["redis"] = await self.check_redis()
        except HealthCheckError as e:
            checks["redis"] = {"status": "unhealthy", "service": "redis", "error": str(e)}
            all_healthy = False

        checks["providers"] = self.check_providers()
        if checks["providers"]["status"] != "healthy":
            all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: all dependencies must be available."""
        return await self.check_all()
