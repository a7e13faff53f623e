from __future__ import annotations

import asyncio

import httpx
import pytest

from _helpers import FakeProvider, make_candles, make_settings
from marketiq.errors import MarketDataUnavailable, ProviderAttemptFailed
from marketiq.lib.detached import drain
from marketiq.lib.kv_store import InMemoryKeyValueStore
from marketiq.providers.base import MarketDataRequest, make_candle, normalize_candles
from marketiq.providers.market_data import BinanceProvider, TwelveDataProvider, YahooProvider, resample_candles
from marketiq.providers.polygon import PolygonProvider, parse_polygon_timeframe, polygon_ticker
from marketiq.providers.registry import ProviderRegistry
from marketiq.services.cache import ResponseCache
from marketiq.services.market_data import MarketDataFetcher


def _fetcher(providers, *, settings=None, store=None, detach=True):
    settings = settings or make_settings()
    cache = ResponseCache(store or InMemoryKeyValueStore(), namespace="market", ttl=20)
    return MarketDataFetcher(
        registry=ProviderRegistry(providers),
        cache=cache,
        settings=settings,
        order=[p.name for p in providers],
        detach_cache_writes=detach,
    )


@pytest.mark.asyncio
async def test_second_fetch_is_served_from_cache_without_provider_calls():
    candles = make_candles(120)
    provider = FakeProvider("binance", result=candles)
    fetcher = _fetcher([provider])

    first = await fetcher.fetch_series("crypto", "btc/usdt", "H4")
    await drain()
    second = await fetcher.fetch_series("crypto", "BTCUSDT", "H4")

    assert len(provider.calls) == 1
    assert first.cached is False and second.cached is True
    assert second.candles == first.candles
    assert second.provider == "binance"


@pytest.mark.asyncio
async def test_short_series_is_rejected_and_next_provider_used():
    short = FakeProvider("binance", result=make_candles(30))
    full = FakeProvider("yahoo", result=make_candles(120))
    fetcher = _fetcher([short, full], detach=False)

    series = await fetcher.fetch_series(None, "BTCUSDT", "H4")

    assert series.provider == "yahoo"
    assert [a.outcome for a in series.attempts] == ["rejected", "ok"]


@pytest.mark.asyncio
async def test_all_providers_failing_raises_market_data_unavailable():
    fetcher = _fetcher([FakeProvider("binance", error="http_451"), FakeProvider("yahoo", error="no_data")])

    with pytest.raises(MarketDataUnavailable) as info:
        await fetcher.fetch(None, "BTCUSDT", "H4")
    assert "binance=http_451" in info.value.detail


@pytest.mark.asyncio
async def test_cache_is_keyed_by_request_not_provider():
    first = FakeProvider("binance", result=make_candles(120))
    fetcher = _fetcher([first], detach=False)
    await fetcher.fetch(None, "BTCUSDT", "H4")

    other = FakeProvider("yahoo", result=make_candles(120, start=50))
    fetcher.registry.register(other)
    fetcher.order = ["yahoo"]
    series = await fetcher.fetch_series(None, "BTCUSDT", "H4")

    assert other.calls == []
    assert series.provider == "binance"


@pytest.mark.asyncio
async def test_concurrent_identical_fetches_share_one_chain_run():
    provider = FakeProvider("binance", result=make_candles(120), delay_s=0.05)
    fetcher = _fetcher([provider], detach=False)

    results = await asyncio.gather(*(fetcher.fetch_series("crypto", "BTCUSDT", "H4") for _ in range(3)))

    assert len(provider.calls) == 1
    assert all(series.candles == results[0].candles for series in results)
    assert all(series.provider == "binance" for series in results)


@pytest.mark.asyncio
async def test_concurrent_failures_reach_every_caller():
    provider = FakeProvider("binance", error="http_503", delay_s=0.02)
    fetcher = _fetcher([provider], detach=False)

    outcomes = await asyncio.gather(
        fetcher.fetch(None, "BTCUSDT", "H4"), fetcher.fetch(None, "BTCUSDT", "H4"), return_exceptions=True
    )

    assert [type(item) for item in outcomes] == [MarketDataUnavailable, MarketDataUnavailable]
    assert len(provider.calls) == 1


def test_make_candle_drops_bad_rows_and_fixes_wicks():
    assert make_candle(1, "nan", 2, 1, 1.5) is None
    assert make_candle(1, 0, 2, 1, 1.5) is None
    candle = make_candle(1000, 10, 10.5, 9.8, 11)
    assert candle.high == 11
    assert candle.low == 9.8


def test_normalize_candles_sorts_dedupes_and_limits():
    rows = [make_candle(3, 1, 1, 1, 1), make_candle(1, 1, 1, 1, 1), make_candle(3, 2, 2, 2, 2), None, make_candle(2, 1, 1, 1, 1)]
    candles = normalize_candles(rows, limit=2)
    assert [c.timestamp for c in candles] == [2, 3]
    assert candles[-1].close == 2


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_binance_parses_klines():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(dict(request.url.params))
        rows = [[1_700_000_000_000 + i * 14_400_000, "100", "101", "99", "100.5", "12.5", 0] for i in range(3)]
        return httpx.Response(200, json=rows)

    async with _client(handler) as client:
        provider = BinanceProvider(make_settings(), client=client)
        candles = await provider.attempt(MarketDataRequest("BTCUSDT", "H4", "crypto", limit=120))

    assert seen["interval"] == "4h"
    assert seen["symbol"] == "BTCUSDT"
    assert len(candles) == 3
    assert candles[0].close == 100.5


@pytest.mark.asyncio
async def test_binance_refuses_non_usdt_symbols():
    provider = BinanceProvider(make_settings())
    with pytest.raises(ProviderAttemptFailed):
        await provider.attempt(MarketDataRequest("EURUSD", "H1", "forex"))


@pytest.mark.asyncio
async def test_binance_http_error_becomes_attempt_failure():
    async with _client(lambda request: httpx.Response(451, text="restricted")) as client:
        provider = BinanceProvider(make_settings(), client=client)
        with pytest.raises(ProviderAttemptFailed) as info:
            await provider.attempt(MarketDataRequest("BTCUSDT", "H4", "crypto"))
    assert info.value.reason == "http_451"
    assert info.value.status_code == 451


@pytest.mark.asyncio
async def test_twelvedata_maps_symbol_and_parses_values():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(dict(request.url.params))
        return httpx.Response(
            200,
            json={
                "status": "ok",
                "values": [
                    {"datetime": "2025-01-01 04:00:00", "open": "1.03", "high": "1.04", "low": "1.02", "close": "1.035"},
                    {"datetime": "2025-01-01 00:00:00", "open": "1.02", "high": "1.031", "low": "1.01", "close": "1.03"},
                ],
            },
        )

    async with _client(handler) as client:
        provider = TwelveDataProvider(make_settings(twelvedata_api_key="k"), client=client)
        candles = await provider.attempt(MarketDataRequest("EURUSD", "H4", "forex"))

    assert seen["symbol"] == "EUR/USD"
    assert [c.timestamp for c in candles] == [1_735_689_600_000, 1_735_704_000_000]


@pytest.mark.asyncio
async def test_twelvedata_error_payload_fails_attempt():
    async with _client(lambda request: httpx.Response(200, json={"status": "error", "code": 429})) as client:
        provider = TwelveDataProvider(make_settings(twelvedata_api_key="k"), client=client)
        with pytest.raises(ProviderAttemptFailed):
            await provider.attempt(MarketDataRequest("EURUSD", "H4", "forex"))


@pytest.mark.asyncio
async def test_yahoo_resamples_hourly_bars_for_h4():
    base = 1_735_689_600  # 2025-01-01T00:00:00Z

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/BTC-USD")
        stamps = [base + i * 3600 for i in range(8)]
        quote = {
            "open": [100 + i for i in range(8)],
            "high": [101 + i for i in range(8)],
            "low": [99 + i for i in range(8)],
            "close": [100.5 + i for i in range(8)],
            "volume": [10] * 8,
        }
        return httpx.Response(200, json={"chart": {"result": [{"timestamp": stamps, "indicators": {"quote": [quote]}}]}})

    async with _client(handler) as client:
        provider = YahooProvider(make_settings(), client=client)
        candles = await provider.attempt(MarketDataRequest("BTCUSDT", "H4", "crypto"))

    assert len(candles) == 2
    assert candles[0].open == 100
    assert candles[0].high == 104
    assert candles[0].close == 103.5
    assert candles[1].timestamp == (base + 4 * 3600) * 1000


def test_resample_empty():
    assert resample_candles([], "4h") == []


def test_polygon_timeframes_and_tickers():
    assert parse_polygon_timeframe("D1") == (1, "day", 250)
    assert parse_polygon_timeframe("M15")[:2] == (15, "minute")
    assert parse_polygon_timeframe("H4")[:2] == (4, "hour")
    assert polygon_ticker("BTCUSDT") == "X:BTCUSD"
    assert polygon_ticker("eur/usd") == "C:EURUSD"
    assert polygon_ticker("SPX") == "I:SPX"
    assert polygon_ticker("AAPL") == "AAPL"


@pytest.mark.asyncio
async def test_polygon_retries_transient_status_once():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if len(calls) == 1:
            return httpx.Response(503)
        results = [{"t": 1_700_000_000_000 + i * 60_000, "o": 1, "h": 2, "l": 0.5, "c": 1.5, "v": 3} for i in range(5)]
        return httpx.Response(200, json={"results": results})

    async with _client(handler) as client:
        provider = PolygonProvider(make_settings(polygon_api_key="k"), client=client, retry_delay=0)
        candles = await provider.attempt(MarketDataRequest("BTCUSDT", "M15", "crypto"))

    assert len(calls) == 2
    assert "/v2/aggs/ticker/X:BTCUSD/range/15/minute/" in calls[0]
    assert len(candles) == 5
