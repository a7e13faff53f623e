"""Deterministic cache keys for market data and generated analyses."""

from __future__ import annotations

import hashlib
import json
from typing import Any, Mapping


def _digest(parts: Mapping[str, Any]) -> str:
    blob = json.dumps(parts, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


def content_hash(text: str) -> str:
    return hashlib.sha256((text or "").encode("utf-8")).hexdigest()[:16]


def market_fingerprint(market: str, symbol: str, timeframe: str, limit: int) -> str:
    """Key for a candle series; deliberately independent of which provider served it."""

    return _digest(
        {
            "market": (market or "").lower(),
            "symbol": (symbol or "").upper(),
            "timeframe": (timeframe or "").upper(),
            "limit": int(limit),
        }
    )


def generation_fingerprint(
    *,
    market: str,
    symbol: str,
    timeframe: str,
    style: str,
    risk: str,
    news: bool,
    summary: str,
    language: str = "en",
    extra: str | None = None,
) -> str:
    """Key for a generated analysis: request parameters plus a hash of the candle summary."""

    return _digest(
        {
            "market": (market or "").lower(),
            "symbol": (symbol or "").upper(),
            "timeframe": (timeframe or "").upper(),
            "style": (style or "").lower(),
            "risk": (risk or "").lower(),
            "news": bool(news),
            "summary": content_hash(summary),
            "language": language,
            "extra": content_hash(extra) if extra else None,
        }
    )


__all__ = ["content_hash", "generation_fingerprint", "market_fingerprint"]
