"""Polygon aggregates provider.

Polygon serves every asset class through one aggregates endpoint, so this
provider owns the ticker prefixes (``X:`` crypto, ``C:`` forex/metals, ``I:``
indices) and maps our timeframes to multiplier/timespan pairs.  Requests share a
semaphore and retry transient upstream failures once before giving up the
attempt.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Tuple

import httpx
import pandas as pd

from ..config import Settings, get_settings
from ..errors import ProviderAttemptFailed
from ..lib.symbols import asset_kind, normalize_symbol
from .base import Candle, MarketDataRequest, make_candle, normalize_candles, request_json

logger = logging.getLogger(__name__)

_BASE_URL = "https://api.polygon.io"
_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def parse_polygon_timeframe(timeframe: str) -> Tuple[int, str, int]:
    """Return ``(multiplier, timespan, days_back)`` for a canonical timeframe."""
    token = (timeframe or "H4").strip().upper()
    if token == "D1":
        return 1, "day", 250
    if token == "M15":
        return 15, "minute", 5
    if token == "H1":
        return 1, "hour", 14
    return 4, "hour", 40


def polygon_ticker(symbol: str) -> str:
    sym = normalize_symbol(symbol)
    kind = asset_kind(sym)
    if kind == "crypto":
        return f"X:{sym[:-4]}USD"
    if kind in {"forex", "metal"}:
        return f"C:{sym}"
    if kind == "index":
        return f"I:{sym}"
    return sym


class PolygonProvider:
    name = "polygon"

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        max_concurrency: int = 4,
        max_retries: int = 2,
        retry_delay: float = 0.25,
    ) -> None:
        self.settings = settings or get_settings()
        self.client = client
        self._sem = asyncio.Semaphore(max(1, max_concurrency))
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay

    async def attempt(self, request: MarketDataRequest) -> List[Candle]:
        api_key = (self.settings.polygon_api_key or "").strip()
        if not api_key:
            raise ProviderAttemptFailed(self.name, "missing_credentials")
        if asset_kind(request.symbol) == "unknown":
            raise ProviderAttemptFailed(self.name, "unsupported_symbol")

        multiplier, timespan, days_back = parse_polygon_timeframe(request.timeframe)
        now = pd.Timestamp.now(tz="UTC")
        frm = (now - pd.Timedelta(days=days_back)).date().isoformat()
        to = (now + pd.Timedelta(days=1)).date().isoformat()
        ticker = polygon_ticker(request.symbol)
        url = f"{_BASE_URL}/v2/aggs/ticker/{ticker}/range/{multiplier}/{timespan}/{frm}/{to}"
        params: Dict[str, Any] = {"adjusted": "true", "sort": "asc", "limit": 5000, "apiKey": api_key}

        payload: Any = None
        attempt = 0
        while attempt < self._max_retries:
            attempt += 1
            try:
                async with self._sem:
                    payload = await request_json(
                        self.name,
                        "GET",
                        url,
                        client=self.client,
                        params=params,
                        timeout=self.settings.market_data_timeout_s,
                        context={"symbol": ticker, "timeframe": request.timeframe, "attempt": attempt},
                    )
                break
            except ProviderAttemptFailed as exc:
                if exc.status_code not in _RETRYABLE_STATUS or attempt >= self._max_retries:
                    raise
                logger.info("polygon_retry symbol=%s attempt=%d reason=%s", ticker, attempt, exc.reason)
                await asyncio.sleep(self._retry_delay * attempt)

        results = payload.get("results") if isinstance(payload, dict) else None
        if not results:
            raise ProviderAttemptFailed(self.name, "no_rows")
        rows = [make_candle(item.get("t"), item.get("o"), item.get("h"), item.get("l"), item.get("c"), item.get("v")) for item in results]
        candles = normalize_candles(rows, limit=request.limit)
        if not candles:
            raise ProviderAttemptFailed(self.name, "no_rows")
        return candles


__all__ = ["PolygonProvider", "parse_polygon_timeframe", "polygon_ticker"]
