"""Symbol normalization and asset-class detection."""

from __future__ import annotations

import re
from typing import Literal

AssetKind = Literal["crypto", "forex", "metal", "index", "stock", "unknown"]

METALS = frozenset({"XAUUSD", "XAGUSD"})
INDICES = frozenset({"DJI", "NDX", "SPX"})
KNOWN_STOCKS = frozenset({"AAPL", "TSLA", "MSFT", "NVDA", "AMZN", "META", "GOOGL"})

_FX_PAIR = re.compile(r"^[A-Z]{6}$")
_STOCK_TICKER = re.compile(r"^[A-Z]{1,5}$")
_STRIP = re.compile(r"[\s/_\-:]+")


def normalize_symbol(symbol: str | None) -> str:
    """Upper-case and drop separators: ``btc/usdt`` -> ``BTCUSDT``, ``eur-usd`` -> ``EURUSD``."""
    token = _STRIP.sub("", (symbol or "").strip().upper())
    if token.endswith("=X"):
        token = token[:-2]
    return token


def asset_kind(symbol: str) -> AssetKind:
    sym = normalize_symbol(symbol)
    if sym.endswith("USDT"):
        return "crypto"
    if sym in METALS:
        return "metal"
    if sym in INDICES:
        return "index"
    if _FX_PAIR.match(sym):
        return "forex"
    if sym in KNOWN_STOCKS or _STOCK_TICKER.match(sym):
        return "stock"
    return "unknown"


def is_fx_like(symbol: str) -> bool:
    return asset_kind(symbol) in {"forex", "metal"}


def split_pair(symbol: str) -> tuple[str, str]:
    sym = normalize_symbol(symbol)
    return sym[:3], sym[3:6]


__all__ = ["AssetKind", "INDICES", "METALS", "asset_kind", "is_fx_like", "normalize_symbol", "split_pair"]
