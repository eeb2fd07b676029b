"""
Voice provider registry.

Providers are registered at startup for every backend whose API key is
configured. Exactly one of them is active, chosen by ``Settings.voice_provider``.
"""

from __future__ import annotations

import time
from typing import Callable

import httpx

from voicedemo.config import Settings
from voicedemo.shared.exceptions import ConfigurationError
from voicedemo.shared.logging import get_logger
from voicedemo.voice.adapters.awaz import AwazProvider
from voicedemo.voice.adapters.retell import RetellProvider
from voicedemo.voice.adapters.vapi import VapiProvider
from voicedemo.voice.interface import VoiceProvider

logger = get_logger(__name__)

PROVIDER_CLASSES: dict[str, type[VoiceProvider]] = {
    "retell": RetellProvider,
    "vapi": VapiProvider,
    "awaz": AwazProvider,
}


def _mask(s: str, keep: int = 4) -> str:
    if not s:
        return ""
    if len(s) <= keep:
        return "*" * len(s)
    return f"{s[:keep]}***"


class VoiceProviderRegistry:
    """Name -> provider lookup with a configured active provider."""

    def __init__(self, active: str) -> None:
        self._providers: dict[str, VoiceProvider] = {}
        self._active = active

    @property
    def active_name(self) -> str:
        return self._active

    def register(self, provider: VoiceProvider) -> None:
        self._providers[provider.name] = provider

    def names(self) -> list[str]:
        return sorted(self._providers)

    def get(self, name: str) -> VoiceProvider:
        provider = self._providers.get(name)
        if provider is None:
            available = ", ".join(self.names()) or "none"
            raise ConfigurationError(
                message=(
                    f"Voice provider '{name}' not configured. "
                    f"Available providers: {available}"
                ),
                details={"provider": name, "available": self.names()},
            )
        return provider

    def get_active_provider(self) -> VoiceProvider:
        return self.get(self._active)

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()


def build_voice_registry(
    settings: Settings,
    *,
    http_client: httpx.AsyncClient | None = None,
    clock: Callable[[], float] = time.time,
) -> VoiceProviderRegistry:
    """Register a provider for every backend that has an API key."""
    registry = VoiceProviderRegistry(active=settings.voice_provider)

    for name, provider_cls in PROVIDER_CLASSES.items():
        api_key = settings.api_key_for(name)
        if not api_key:
            continue

        kwargs = {
            "production": settings.is_production,
            "http_client": http_client,
            "clock": clock,
        }
        if name == "awaz":
            provider = AwazProvider(
                api_key,
                default_agent_id=settings.awaz_agent_id,
                base_url=settings.awaz_api_base_url,
                **kwargs,
            )
        else:
            provider = provider_cls(api_key, **kwargs)
        registry.register(provider)

    logger.info(
        "Voice providers registered",
        extra={
            "active": settings.voice_provider,
            "registered": registry.names(),
            "retell_api_key": _mask(settings.retell_api_key),
            "vapi_api_key": _mask(settings.vapi_api_key),
            "awaz_api_key": _mask(settings.awaz_api_key),
        },
    )
    if settings.voice_provider not in registry.names():
        logger.warning(
            "Active voice provider has no credentials; lookups will fail",
            extra={"active": settings.voice_provider},
        )
    return registry
