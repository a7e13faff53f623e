"""Candle series lookup: cache first, then the market-data provider chain."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Sequence

from ..config import Settings, get_settings
from ..errors import AllProvidersFailed, MarketDataUnavailable
from ..lib.fingerprint import market_fingerprint
from ..lib.symbols import asset_kind, normalize_symbol
from ..logging_setup import format_log_context
from ..providers.base import Candle, MarketDataRequest
from ..providers.registry import ProviderRegistry
from .cache import ResponseCache
from .fallbacks import FallbackExecutor, Provider

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CandleSeries:
    symbol: str
    timeframe: str
    market: str
    candles: List[Candle]
    provider: str
    cached: bool = False
    attempts: list[Any] = field(default_factory=list)


class MarketDataFetcher:
    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        cache: ResponseCache,
        settings: Settings | None = None,
        order: Sequence[str] | None = None,
        clock: Callable[[], float] | None = None,
        detach_cache_writes: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        self.registry = registry
        self.cache = cache
        self.order = list(order or self.settings.market_data_provider_order)
        self.min_candles = self.settings.market_data_min_candles
        self.limit = self.settings.market_data_candle_limit
        self.detach_cache_writes = detach_cache_writes
        self._executor = FallbackExecutor(
            "market_data",
            attempt_timeout=self.settings.market_data_timeout_s,
            clock=clock,
        )

    def _accept(self, candles: Any) -> bool:
        return isinstance(candles, list) and len(candles) >= self.min_candles

    def providers(self) -> List[Provider]:
        return self.registry.resolve(self.order)

    async def fetch(self, market: str | None, symbol: str, timeframe: str) -> List[Candle]:
        series = await self.fetch_series(market, symbol, timeframe)
        return series.candles

    async def fetch_series(self, market: str | None, symbol: str, timeframe: str) -> CandleSeries:
        """Concurrent identical lookups share one cache read and one provider chain run."""

        sym = normalize_symbol(symbol)
        market_name = (market or asset_kind(sym)).lower()
        fingerprint = market_fingerprint(market_name, sym, timeframe, self.limit)
        request = MarketDataRequest(symbol=sym, timeframe=timeframe, market=market_name, limit=self.limit)
        attempts: list[Any] = []

        async def load() -> Dict[str, Any]:
            try:
                result = await self._executor.run(self.providers(), request, accept=self._accept)
            except AllProvidersFailed as exc:
                context = {"symbol": sym, "timeframe": timeframe, "market": market_name, "error": str(exc)}
                logger.warning("market_data_unavailable %s", format_log_context(context), extra=context)
                raise MarketDataUnavailable(str(exc)) from exc
            attempts.extend(result.attempts)
            context = {"symbol": sym, "timeframe": timeframe, "provider": result.provider, "candles": len(result.value)}
            logger.info("market_data_fetched %s", format_log_context(context), extra=context)
            return {"provider": result.provider, "candles": [candle.to_dict() for candle in result.value]}

        payload, hit = await self.cache.get_or_fill(
            fingerprint,
            load,
            usable=_usable_payload,
            detach_write=self.detach_cache_writes,
        )
        candles = [Candle.from_dict(item) for item in payload["candles"]]
        provider = str(payload.get("provider") or "cache")
        return CandleSeries(sym, timeframe, market_name, candles, provider, cached=hit, attempts=attempts)


def _usable_payload(payload: Any) -> bool:
    if not isinstance(payload, dict) or not isinstance(payload.get("candles"), list) or not payload["candles"]:
        return False
    try:
        for item in payload["candles"]:
            Candle.from_dict(item)
    except (KeyError, TypeError, ValueError):
        logger.warning("market_cache_entry_invalid")
        return False
    return True


__all__ = ["CandleSeries", "MarketDataFetcher"]
