"""Candle providers for the market-data chain.

Every provider maps the canonical symbol/timeframe to its own vocabulary and
raises :class:`ProviderAttemptFailed` when it cannot serve the request, so the
executor can move on to the next vendor.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List

import httpx
import pandas as pd

from ..config import Settings, get_settings
from ..errors import ProviderAttemptFailed
from ..lib.symbols import asset_kind, is_fx_like, normalize_symbol, split_pair
from .base import Candle, MarketDataRequest, make_candle, normalize_candles, request_json

logger = logging.getLogger(__name__)


def _ts_ms(values: Any) -> List[int]:
    """Parse vendor datetime strings (UTC) into epoch milliseconds."""
    stamps = pd.to_datetime(pd.Series(list(values), dtype="object"), utc=True, errors="coerce", format="mixed")
    return [-1 if pd.isna(ts) else int(ts.timestamp() * 1000) for ts in stamps]


def _at(values: List[Any] | None, idx: int) -> Any:
    if not values or idx >= len(values):
        return None
    return values[idx]


class _CandleProvider:
    name = "base"
    intervals: Dict[str, str] = {}

    def __init__(self, settings: Settings | None = None, *, client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings or get_settings()
        self.client = client

    def interval(self, timeframe: str) -> str:
        try:
            return self.intervals[timeframe]
        except KeyError:
            raise ProviderAttemptFailed(self.name, f"unsupported_timeframe {timeframe}") from None

    def _finish(self, rows: List[Candle | None], request: MarketDataRequest) -> List[Candle]:
        candles = normalize_candles(rows, limit=request.limit)
        if not candles:
            raise ProviderAttemptFailed(self.name, "no_rows")
        return candles

    async def _get(self, url: str, params: Dict[str, Any], request: MarketDataRequest, headers: Dict[str, str] | None = None) -> Any:
        return await request_json(
            self.name,
            "GET",
            url,
            client=self.client,
            params=params,
            headers=headers,
            timeout=self.settings.market_data_timeout_s,
            context={"symbol": request.symbol, "timeframe": request.timeframe},
        )


class BinanceProvider(_CandleProvider):
    """Spot klines; serves USDT-quoted crypto pairs only."""

    name = "binance"
    intervals = {"M15": "15m", "H1": "1h", "H4": "4h", "D1": "1d"}

    async def attempt(self, request: MarketDataRequest) -> List[Candle]:
        symbol = normalize_symbol(request.symbol)
        if not symbol.endswith("USDT"):
            raise ProviderAttemptFailed(self.name, "unsupported_symbol (USDT pairs only)")
        payload = await self._get(
            f"{self.settings.binance_base_url.rstrip('/')}/api/v3/klines",
            {"symbol": symbol, "interval": self.interval(request.timeframe), "limit": request.limit},
            request,
        )
        if not isinstance(payload, list):
            raise ProviderAttemptFailed(self.name, "malformed_payload")
        rows = [
            make_candle(k[0], k[1], k[2], k[3], k[4], k[5])
            for k in payload
            if isinstance(k, list) and len(k) >= 6
        ]
        return self._finish(rows, request)


class TwelveDataProvider(_CandleProvider):
    name = "twelvedata"
    intervals = {"M15": "15min", "H1": "1h", "H4": "4h", "D1": "1day"}
    base_url = "https://api.twelvedata.com"

    @staticmethod
    def vendor_symbol(symbol: str) -> str:
        sym = normalize_symbol(symbol)
        kind = asset_kind(sym)
        if kind in {"forex", "metal"}:
            base, quote = split_pair(sym)
            return f"{base}/{quote}"
        if kind == "crypto":
            return f"{sym[:-4]}/USD"
        return sym

    async def attempt(self, request: MarketDataRequest) -> List[Candle]:
        api_key = (self.settings.twelvedata_api_key or "").strip()
        if not api_key:
            raise ProviderAttemptFailed(self.name, "missing_credentials")
        if asset_kind(request.symbol) == "unknown":
            raise ProviderAttemptFailed(self.name, "unsupported_symbol")
        payload = await self._get(
            f"{self.base_url}/time_series",
            {
                "symbol": self.vendor_symbol(request.symbol),
                "interval": self.interval(request.timeframe),
                "outputsize": request.limit,
                "timezone": "UTC",
                "apikey": api_key,
            },
            request,
        )
        if not isinstance(payload, dict) or payload.get("status") == "error":
            code = payload.get("code") if isinstance(payload, dict) else None
            raise ProviderAttemptFailed(self.name, f"vendor_error {code or ''}".strip())
        values = payload.get("values") or []
        stamps = _ts_ms(item.get("datetime") for item in values)
        rows = [
            make_candle(ts, item.get("open"), item.get("high"), item.get("low"), item.get("close"), item.get("volume"))
            for ts, item in zip(stamps, values)
            if ts > 0
        ]
        return self._finish(rows, request)


class AlphaVantageProvider(_CandleProvider):
    """FX intraday series; forex and metal pairs at M15/H1 only."""

    name = "alphavantage"
    intervals = {"M15": "15min", "H1": "60min"}
    base_url = "https://www.alphavantage.co/query"

    async def attempt(self, request: MarketDataRequest) -> List[Candle]:
        api_key = (self.settings.alphavantage_api_key or "").strip()
        if not api_key:
            raise ProviderAttemptFailed(self.name, "missing_credentials")
        if not is_fx_like(request.symbol):
            raise ProviderAttemptFailed(self.name, "unsupported_symbol (fx only)")
        base, quote = split_pair(request.symbol)
        payload = await self._get(
            self.base_url,
            {
                "function": "FX_INTRADAY",
                "from_symbol": base,
                "to_symbol": quote,
                "interval": self.interval(request.timeframe),
                "outputsize": "full" if request.limit > 100 else "compact",
                "apikey": api_key,
            },
            request,
        )
        series_key = next((key for key in payload if str(key).startswith("Time Series FX")), None) if isinstance(payload, dict) else None
        if series_key is None:
            raise ProviderAttemptFailed(self.name, "no_timeseries")
        series: Dict[str, Dict[str, Any]] = payload[series_key]
        stamps = _ts_ms(series.keys())
        rows = [
            make_candle(ts, bar.get("1. open"), bar.get("2. high"), bar.get("3. low"), bar.get("4. close"))
            for ts, bar in zip(stamps, series.values())
            if ts > 0
        ]
        return self._finish(rows, request)


class FinnhubProvider(_CandleProvider):
    name = "finnhub"
    intervals = {"M15": "15", "H1": "60", "H4": "240", "D1": "D"}
    base_url = "https://finnhub.io/api/v1"
    _lookback_days = {"M15": 10, "H1": 20, "H4": 60, "D1": 240}

    async def attempt(self, request: MarketDataRequest) -> List[Candle]:
        api_key = (self.settings.finnhub_api_key or "").strip()
        if not api_key:
            raise ProviderAttemptFailed(self.name, "missing_credentials")
        sym = normalize_symbol(request.symbol)
        kind = asset_kind(sym)
        if kind in {"forex", "metal"}:
            base, quote = split_pair(sym)
            endpoint, vendor_symbol = "forex/candle", f"OANDA:{base}_{quote}"
        elif kind == "crypto":
            endpoint, vendor_symbol = "crypto/candle", f"BINANCE:{sym}"
        elif kind == "stock":
            endpoint, vendor_symbol = "stock/candle", sym
        else:
            raise ProviderAttemptFailed(self.name, "unsupported_symbol")
        now = int(time.time())
        start = now - self._lookback_days.get(request.timeframe, 30) * 86400
        payload = await self._get(
            f"{self.base_url}/{endpoint}",
            {
                "symbol": vendor_symbol,
                "resolution": self.interval(request.timeframe),
                "from": start,
                "to": now,
                "token": api_key,
            },
            request,
        )
        if not isinstance(payload, dict) or payload.get("s") != "ok":
            status = payload.get("s") if isinstance(payload, dict) else "malformed"
            raise ProviderAttemptFailed(self.name, f"vendor_status {status}")
        rows = [
            make_candle(
                int(ts) * 1000,
                _at(payload.get("o"), idx),
                _at(payload.get("h"), idx),
                _at(payload.get("l"), idx),
                _at(payload.get("c"), idx),
                _at(payload.get("v"), idx),
            )
            for idx, ts in enumerate(payload.get("t") or [])
        ]
        return self._finish(rows, request)


class YahooProvider(_CandleProvider):
    """Public chart endpoint; no credentials, used as the last resort."""

    name = "yahoo"
    intervals = {"M15": "15m", "H1": "60m", "H4": "60m", "D1": "1d"}
    _ranges = {"M15": "10d", "H1": "1mo", "H4": "3mo", "D1": "1y"}

    @staticmethod
    def vendor_symbol(symbol: str) -> str:
        sym = normalize_symbol(symbol)
        kind = asset_kind(sym)
        if kind in {"forex", "metal"}:
            return f"{sym}=X"
        if kind == "crypto":
            return f"{sym[:-4]}-USD"
        if kind == "index":
            return {"SPX": "^GSPC", "NDX": "^NDX", "DJI": "^DJI"}[sym]
        return sym

    async def attempt(self, request: MarketDataRequest) -> List[Candle]:
        interval = self.interval(request.timeframe)
        payload = await self._get(
            f"{self.settings.yahoo_base_url.rstrip('/')}/v8/finance/chart/{self.vendor_symbol(request.symbol)}",
            {"interval": interval, "range": self._ranges.get(request.timeframe, "1mo")},
            request,
        )
        try:
            result = payload["chart"]["result"][0]
            stamps = result.get("timestamp") or []
            quote = result["indicators"]["quote"][0]
        except (KeyError, IndexError, TypeError):
            raise ProviderAttemptFailed(self.name, "no_data") from None
        rows = [
            make_candle(
                int(ts) * 1000,
                _at(quote.get("open"), idx),
                _at(quote.get("high"), idx),
                _at(quote.get("low"), idx),
                _at(quote.get("close"), idx),
                _at(quote.get("volume"), idx),
            )
            for idx, ts in enumerate(stamps)
        ]
        if request.timeframe == "H4":
            rows = resample_candles([row for row in rows if row is not None], "4h")
        return self._finish(rows, request)


def resample_candles(candles: List[Candle], rule: str) -> List[Candle | None]:
    """Aggregate ascending candles into coarser buckets (e.g. 1h -> 4h) with pandas."""

    if not candles:
        return []
    frame = pd.DataFrame([candle.to_dict() for candle in candles])
    frame.index = pd.to_datetime(frame["timestamp"], unit="ms", utc=True)
    agg = frame.resample(rule, label="left", closed="left").agg(
        {"open": "first", "high": "max", "low": "min", "close": "last", "volume": "sum"}
    )
    agg = agg.dropna(subset=["open", "high", "low", "close"])
    return [
        make_candle(int(ts.timestamp() * 1000), row["open"], row["high"], row["low"], row["close"], row["volume"])
        for ts, row in agg.iterrows()
    ]


__all__ = [
    "AlphaVantageProvider",
    "BinanceProvider",
    "FinnhubProvider",
    "TwelveDataProvider",
    "YahooProvider",
    "resample_candles",
]
