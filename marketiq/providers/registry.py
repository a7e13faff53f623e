"""Name -> provider lookup used to turn configured orders into chains."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List

import httpx

from ..config import Settings, get_settings
from ..services.fallbacks import Provider
from .llm import GeminiProvider, OpenAIChatProvider, build_compat_provider
from .market_data import AlphaVantageProvider, BinanceProvider, FinnhubProvider, TwelveDataProvider, YahooProvider
from .polygon import PolygonProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    def __init__(self, providers: Iterable[Provider] = ()) -> None:
        self._providers: Dict[str, Provider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: Provider) -> None:
        self._providers[provider.name.lower()] = provider

    def get(self, name: str) -> Provider | None:
        return self._providers.get((name or "").strip().lower())

    def names(self) -> List[str]:
        return list(self._providers)

    def resolve(self, order: Iterable[str]) -> List[Provider]:
        """Providers for ``order``; unknown and repeated names are skipped."""

        chain: List[Provider] = []
        seen: set[str] = set()
        for name in order:
            token = (name or "").strip().lower()
            if not token or token in seen:
                continue
            provider = self._providers.get(token)
            if provider is None:
                logger.warning("provider_unknown name=%s known=%s", token, ",".join(self._providers))
                continue
            seen.add(token)
            chain.append(provider)
        return chain


def build_market_registry(settings: Settings | None = None, *, client: httpx.AsyncClient | None = None) -> ProviderRegistry:
    settings = settings or get_settings()
    return ProviderRegistry(
        [
            BinanceProvider(settings, client=client),
            TwelveDataProvider(settings, client=client),
            PolygonProvider(settings, client=client),
            AlphaVantageProvider(settings, client=client),
            FinnhubProvider(settings, client=client),
            YahooProvider(settings, client=client),
        ]
    )


def build_generation_registry(settings: Settings | None = None, *, client: httpx.AsyncClient | None = None) -> ProviderRegistry:
    settings = settings or get_settings()
    return ProviderRegistry(
        [
            OpenAIChatProvider(settings, client=client),
            GeminiProvider(settings, client=client),
            build_compat_provider(settings, client=client),
        ]
    )


__all__ = ["ProviderRegistry", "build_generation_registry", "build_market_registry"]
