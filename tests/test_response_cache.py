from __future__ import annotations

import asyncio

import pytest

from _helpers import FakeClock
from marketiq.lib.kv_store import InMemoryKeyValueStore
from marketiq.services.cache import ResponseCache


@pytest.mark.asyncio
async def test_round_trip_within_ttl_and_miss_after():
    clock = FakeClock()
    cache = ResponseCache(InMemoryKeyValueStore(clock=clock), namespace="market", ttl=20)

    assert await cache.put("fp", {"provider": "binance", "candles": [1, 2]}) is True
    assert await cache.get("fp") == {"provider": "binance", "candles": [1, 2]}
    clock.advance(21)
    assert await cache.get("fp") is None


@pytest.mark.asyncio
async def test_empty_values_and_zero_ttl_are_not_stored():
    store = InMemoryKeyValueStore()
    cache = ResponseCache(store, namespace="generation", ttl=600)

    assert await cache.put("a", "") is False
    assert await cache.put("b", []) is False
    assert await cache.put("c", None) is False
    assert await cache.put("d", "text", ttl=0) is False
    assert await store.list_keys("cache:") == []


@pytest.mark.asyncio
async def test_namespaces_do_not_collide():
    store = InMemoryKeyValueStore()
    market = ResponseCache(store, namespace="market", ttl=20)
    news = ResponseCache(store, namespace="news", ttl=600)

    await market.put("same", "m")
    await news.put("same", "n")

    assert await market.get("same") == "m"
    assert await news.get("same") == "n"


@pytest.mark.asyncio
async def test_store_failures_degrade_to_miss():
    class Broken(InMemoryKeyValueStore):
        async def get(self, key):
            raise ConnectionError("down")

        async def put(self, key, value, ttl=None):
            raise ConnectionError("down")

    cache = ResponseCache(Broken(), namespace="market", ttl=20)

    assert await cache.get("fp") is None
    assert await cache.put("fp", "value") is False


@pytest.mark.asyncio
async def test_corrupt_entry_is_a_miss():
    store = InMemoryKeyValueStore()
    await store.put("cache:market:fp", "{not json")
    cache = ResponseCache(store, namespace="market", ttl=20)

    assert await cache.get("fp") is None


@pytest.mark.asyncio
async def test_get_or_fill_coalesces_concurrent_misses():
    cache = ResponseCache(InMemoryKeyValueStore(), namespace="generation", ttl=600)
    calls = 0
    gate = asyncio.Event()

    async def loader():
        nonlocal calls
        calls += 1
        await gate.wait()
        return "analysis"

    first = asyncio.create_task(cache.get_or_fill("fp", loader))
    second = asyncio.create_task(cache.get_or_fill("fp", loader))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    gate.set()

    assert await first == ("analysis", False)
    assert await second == ("analysis", False)
    assert calls == 1
    assert await cache.get_or_fill("fp", loader) == ("analysis", True)
    assert calls == 1


@pytest.mark.asyncio
async def test_get_or_fill_does_not_cache_failures():
    cache = ResponseCache(InMemoryKeyValueStore(), namespace="generation", ttl=600)

    async def failing():
        raise RuntimeError("upstream")

    with pytest.raises(RuntimeError):
        await cache.get_or_fill("fp", failing)
    assert await cache.get("fp") is None


@pytest.mark.asyncio
async def test_get_or_fill_respects_usable_and_store_if():
    cache = ResponseCache(InMemoryKeyValueStore(), namespace="generation", ttl=600)
    await cache.put("fp", {"validated": False})

    async def loader():
        return {"validated": False, "text": "fresh"}

    value, hit = await cache.get_or_fill(
        "fp", loader, usable=lambda v: v.get("validated"), store_if=lambda v: v.get("validated")
    )

    assert hit is False
    assert value["text"] == "fresh"
    assert await cache.get("fp") == {"validated": False}
