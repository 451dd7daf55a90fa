"""Lookup of provider adapters by provider name."""
from typing import Dict, Iterable, List, Union

import structlog

from gateway_hub.core.errors import ValidationError
from gateway_hub.integrations.base import Provider, ProviderAdapter

logger = structlog.get_logger(__name__)


class ProviderRegistry:
    """Holds one adapter per provider."""

    def __init__(self, adapters: Iterable[ProviderAdapter] = ()):
        self._adapters: Dict[Provider, ProviderAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: ProviderAdapter) -> None:
        """Register ``adapter`` for its provider, replacing any previous one."""
        self._adapters[adapter.provider] = adapter
        logger.info("provider_adapter_registered", provider=adapter.provider.value)

    def get(self, provider: Union[Provider, str]) -> ProviderAdapter:
        """
        Get the adapter for ``provider``.

        Raises:
            ValidationError: If the provider is unknown or not registered
        """
        try:
            key = Provider(provider)
        except ValueError:
            raise ValidationError(
                f"Unsupported payment provider: {provider}",
                details={"provider": str(provider)},
            )
        adapter = self._adapters.get(key)
        if adapter is None:
            raise ValidationError(
                f"Unsupported payment provider: {key.value}",
                details={"provider": key.value},
            )
        return adapter

    def providers(self) -> List[Provider]:
        return list(self._adapters)

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()
