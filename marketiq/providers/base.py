"""Shared plumbing for vendor integrations: HTTP client, request types and candles."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, Mapping

import httpx

from ..errors import ProviderAttemptFailed
from ..logging_setup import format_log_context

logger = logging.getLogger(__name__)

_HTTP_CLIENT: httpx.AsyncClient | None = None
_CLIENT_LOCK = asyncio.Lock()
_DEFAULT_TIMEOUT = httpx.Timeout(10.0, connect=4.0)
_USER_AGENT = "marketiq/0.1 (+https://github.com/marketiq)"


async def get_http_client() -> httpx.AsyncClient:
    global _HTTP_CLIENT
    if _HTTP_CLIENT is None or _HTTP_CLIENT.is_closed:
        async with _CLIENT_LOCK:
            if _HTTP_CLIENT is None or _HTTP_CLIENT.is_closed:
                _HTTP_CLIENT = httpx.AsyncClient(timeout=_DEFAULT_TIMEOUT, headers={"User-Agent": _USER_AGENT})
    return _HTTP_CLIENT


async def close_http_client() -> None:
    global _HTTP_CLIENT
    if _HTTP_CLIENT is not None and not _HTTP_CLIENT.is_closed:
        await _HTTP_CLIENT.aclose()
    _HTTP_CLIENT = None


@dataclass(slots=True, frozen=True)
class Candle:
    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float | None = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Candle":
        return cls(
            timestamp=int(payload["timestamp"]),
            open=float(payload["open"]),
            high=float(payload["high"]),
            low=float(payload["low"]),
            close=float(payload["close"]),
            volume=None if payload.get("volume") is None else float(payload["volume"]),
        )


@dataclass(slots=True, frozen=True)
class MarketDataRequest:
    symbol: str
    timeframe: str
    market: str
    limit: int = 120


@dataclass(slots=True, frozen=True)
class GenerationRequest:
    user_prompt: str
    system_prompt: str | None = None
    image_url: str | None = None
    temperature: float = 0.25
    max_tokens: int = 1400


def _finite(value: Any) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def make_candle(timestamp: Any, open_: Any, high: Any, low: Any, close: Any, volume: Any = None) -> Candle | None:
    """Build a candle from raw vendor fields; ``None`` when any price is missing or non-finite."""

    prices = [_finite(value) for value in (open_, high, low, close)]
    if any(price is None or price <= 0 for price in prices):
        return None
    ts = _finite(timestamp)
    if ts is None:
        return None
    o, h, l, c = prices
    return Candle(
        timestamp=int(ts),
        open=o,
        high=max(h, o, c),
        low=min(l, o, c),
        close=c,
        volume=_finite(volume),
    )


def normalize_candles(rows: Iterable[Candle | None], *, limit: int | None = None) -> list[Candle]:
    """Sort ascending by timestamp, keep the last row per timestamp, then keep the newest ``limit``."""

    by_ts: Dict[int, Candle] = {}
    for row in rows:
        if row is None:
            continue
        by_ts[row.timestamp] = row
    ordered = [by_ts[ts] for ts in sorted(by_ts)]
    if limit is not None and limit > 0:
        ordered = ordered[-limit:]
    return ordered


async def request_json(
    provider: str,
    method: str,
    url: str,
    *,
    client: httpx.AsyncClient | None = None,
    params: Mapping[str, Any] | None = None,
    json_body: Any = None,
    headers: Mapping[str, str] | None = None,
    timeout: float | None = None,
    context: Dict[str, Any] | None = None,
) -> Any:
    """Issue one request and decode JSON, mapping every failure to :class:`ProviderAttemptFailed`."""

    http = client or await get_http_client()
    base_context = {"provider": provider, **(context or {})}
    try:
        resp = await http.request(
            method,
            url,
            params=params,
            json=json_body,
            headers=headers,
            timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
        )
        resp.raise_for_status()
    except httpx.HTTPStatusError as exc:
        status = exc.response.status_code
        log_context = dict(base_context)
        log_context.update(
            {
                "status_code": status,
                "body": (exc.response.text or "")[:300],
                "upstream_request_id": exc.response.headers.get("x-request-id"),
            }
        )
        logger.warning("provider_http_error %s", format_log_context(log_context), extra=log_context)
        raise ProviderAttemptFailed(provider, f"http_{status}", status_code=status) from exc
    except httpx.RequestError as exc:
        log_context = dict(base_context)
        log_context["error"] = str(exc) or type(exc).__name__
        logger.warning("provider_request_error %s", format_log_context(log_context), extra=log_context)
        raise ProviderAttemptFailed(provider, f"request_error: {type(exc).__name__}") from exc
    try:
        return resp.json()
    except ValueError as exc:
        raise ProviderAttemptFailed(provider, "malformed_json") from exc


__all__ = [
    "Candle",
    "GenerationRequest",
    "MarketDataRequest",
    "close_http_client",
    "get_http_client",
    "make_candle",
    "normalize_candles",
    "request_json",
]
