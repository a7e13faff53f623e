"""Best-effort news headlines (newsdata.io) for the analysis prompt."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List

import httpx

from ..config import Settings, get_settings
from ..errors import ProviderAttemptFailed
from ..lib.fingerprint import content_hash
from ..lib.symbols import asset_kind, normalize_symbol
from ..providers.base import request_json
from .cache import ResponseCache

logger = logging.getLogger(__name__)

NEWSDATA_URL = "https://newsdata.io/api/1/latest"

_CRYPTO_NAMES = {
    "BTC": "Bitcoin",
    "ETH": "Ethereum",
    "BNB": "Binance Coin",
    "SOL": "Solana",
    "XRP": "Ripple",
    "ADA": "Cardano",
    "DOGE": "Dogecoin",
    "TRX": "Tron",
    "TON": "Toncoin",
    "AVAX": "Avalanche",
    "LINK": "Chainlink",
    "DOT": "Polkadot",
    "MATIC": "Polygon",
    "LTC": "Litecoin",
    "BCH": "Bitcoin Cash",
}

_FX_NAMES = {
    "EURUSD": "Euro Dollar",
    "GBPUSD": "British Pound Dollar",
    "USDJPY": "USD JPY Yen",
    "USDCHF": "USD CHF Swiss Franc",
    "AUDUSD": "Australian Dollar",
    "USDCAD": "Canadian Dollar",
    "NZDUSD": "New Zealand Dollar",
}

_SPECIAL = {
    "XAUUSD": "Gold price",
    "XAGUSD": "Silver price",
    "SPX": "S&P 500",
    "NDX": "Nasdaq 100",
    "DJI": "Dow Jones",
}

# newsdata.io accepts 1-48 hours, or minutes with an "m" suffix.
_TIMEFRAME_WINDOW = {"M15": "240m", "H1": "12", "H4": "24", "D1": "48"}


@dataclass(slots=True)
class Headline:
    title: str
    source: str = ""
    published: str = ""
    link: str = ""

    def prompt_line(self) -> str:
        prefix = f"[{self.source}] " if self.source else ""
        suffix = f" ({self.published})" if self.published else ""
        return f"{prefix}{self.title}{suffix}"


def news_query(symbol: str) -> str:
    sym = normalize_symbol(symbol)
    if not sym:
        return ""
    if sym in _SPECIAL:
        return _SPECIAL[sym]
    kind = asset_kind(sym)
    if kind == "crypto":
        base = sym[:-4]
        return f"{_CRYPTO_NAMES.get(base, base)} crypto"
    if kind == "forex":
        return f"{_FX_NAMES.get(sym, sym)} forex"
    return sym


class NewsService:
    def __init__(
        self,
        cache: ResponseCache,
        settings: Settings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        language: str = "en",
        category: str = "business",
    ) -> None:
        self.settings = settings or get_settings()
        self.cache = cache
        self.client = client
        self.language = language
        self.category = category

    async def headlines(self, symbol: str, timeframe: str) -> List[Headline]:
        """Up to ``news_max_headlines`` items; any failure yields an empty list."""

        api_key = (self.settings.newsdata_api_key or "").strip()
        query = news_query(symbol)
        if not api_key or not query:
            return []
        params: Dict[str, Any] = {
            "apikey": api_key,
            "q": query,
            "language": self.language,
            "category": self.category,
            "timeframe": _TIMEFRAME_WINDOW.get(timeframe, "24"),
        }
        fingerprint = content_hash(f"{query}|{params['timeframe']}|{self.language}|{self.category}")
        cached = await self.cache.get(fingerprint)
        if isinstance(cached, list):
            return [Headline(**item) for item in cached][: self.settings.news_max_headlines]

        try:
            payload = await request_json(
                "newsdata",
                "GET",
                NEWSDATA_URL,
                client=self.client,
                params=params,
                timeout=self.settings.news_timeout_s,
                context={"query": query},
            )
        except ProviderAttemptFailed as exc:
            logger.info("news_unavailable query=%s reason=%s", query, exc.reason)
            return []

        results = payload.get("results") if isinstance(payload, dict) else None
        items: List[Headline] = []
        for item in (results or [])[:10]:
            if not isinstance(item, dict):
                continue
            title = str(item.get("title") or "").strip()
            if not title:
                continue
            items.append(
                Headline(
                    title=title,
                    source=str(item.get("source_id") or item.get("source") or "").strip(),
                    published=str(item.get("pubDate") or "").strip(),
                    link=str(item.get("link") or "").strip(),
                )
            )
        await self.cache.put(fingerprint, [asdict(item) for item in items])
        return items[: self.settings.news_max_headlines]


__all__ = ["Headline", "NewsService", "news_query"]
