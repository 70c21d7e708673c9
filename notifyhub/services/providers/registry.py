"""Channel -> adapter lookup shared by the dispatcher and the inbound processor."""

import asyncio

from notifyhub.common.errors import ConfigurationError
from notifyhub.services.providers.base import ProviderAdapter
from notifyhub.services.providers.email import build_email_adapter
from notifyhub.services.providers.sms import build_sms_adapter
from notifyhub.services.providers.whatsapp import build_whatsapp_adapter


class ProviderRegistry:
    def __init__(self, adapters: dict[str, ProviderAdapter]) -> None:
        self.adapters = adapters

    def get(self, channel: str) -> ProviderAdapter:
        adapter = self.adapters.get(channel)
        if adapter is None:
            raise ConfigurationError(f"no provider adapter for channel={channel}")
        return adapter

    def channels(self) -> list[str]:
        return sorted(self.adapters)

    async def health(self) -> dict[str, bool]:
        """Run every adapter health check concurrently."""

        channels = self.channels()
        results = await asyncio.gather(*(self.adapters[channel].health_check() for channel in channels))
        return dict(zip(channels, results))

    async def close(self) -> None:
        for adapter in self.adapters.values():
            await adapter.close()


def build_registry() -> ProviderRegistry:
    """Build one adapter per channel from process settings."""

    return ProviderRegistry(
        {
            "whatsapp": build_whatsapp_adapter(),
            "sms": build_sms_adapter(),
            "email": build_email_adapter(),
        }
    )
