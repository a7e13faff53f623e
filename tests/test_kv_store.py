from __future__ import annotations

import pytest

from _helpers import FakeClock
from marketiq.lib.kv_store import InMemoryKeyValueStore, KeyValueStore, RedisKeyValueStore, build_store


@pytest.mark.asyncio
async def test_put_get_and_expiry():
    clock = FakeClock()
    store = InMemoryKeyValueStore(clock=clock)

    await store.put("a", "1", ttl=10)
    await store.put("b", "2")
    clock.advance(9.9)
    assert await store.get("a") == "1"
    clock.advance(0.2)
    assert await store.get("a") is None
    assert await store.get("b") == "2"


@pytest.mark.asyncio
async def test_list_keys_by_prefix_skips_expired():
    clock = FakeClock()
    store = InMemoryKeyValueStore(clock=clock)
    await store.put("job:pending:2", "x", ttl=5)
    await store.put("job:pending:1", "x", ttl=50)
    await store.put("quota:1", "x")

    assert await store.list_keys("job:pending:") == ["job:pending:1", "job:pending:2"]
    clock.advance(6)
    assert await store.list_keys("job:pending:") == ["job:pending:1"]


@pytest.mark.asyncio
async def test_incr_keeps_original_deadline():
    clock = FakeClock()
    store = InMemoryKeyValueStore(clock=clock)

    assert await store.incr("n", ttl=10) == 1
    clock.advance(5)
    assert await store.incr("n", 2, ttl=10) == 3
    clock.advance(5)
    assert await store.get("n") is None


@pytest.mark.asyncio
async def test_delete():
    store = InMemoryKeyValueStore()
    await store.put("k", "v")
    await store.delete("k")
    await store.delete("missing")
    assert await store.get("k") is None


def test_build_store_picks_backend():
    memory = build_store(None)
    assert isinstance(memory, InMemoryKeyValueStore)
    assert isinstance(memory, KeyValueStore)
    assert isinstance(build_store("redis://localhost:6379/0"), RedisKeyValueStore)


class _FakeRedis:
    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value):
        self.data[key] = value

    async def setex(self, key, seconds, value):
        self.data[key] = value
        self.ttls[key] = seconds

    async def delete(self, key):
        self.data.pop(key, None)

    async def scan_iter(self, match, count):
        prefix = match.rstrip("*")
        for key in list(self.data):
            if key.startswith(prefix):
                yield key

    async def incrby(self, key, amount):
        value = int(self.data.get(key, 0)) + amount
        self.data[key] = str(value)
        return value

    async def expire(self, key, seconds):
        self.ttls[key] = seconds

    async def aclose(self):
        return None


@pytest.mark.asyncio
async def test_redis_store_namespaces_keys_and_rounds_ttl():
    fake = _FakeRedis()
    store = RedisKeyValueStore(fake, key_prefix="t:")

    await store.put("cache:market:abc", "{}", ttl=20.2)
    await store.put("quota:7", "{}")
    assert fake.ttls["t:cache:market:abc"] == 21
    assert await store.get("quota:7") == "{}"
    assert await store.list_keys("cache:") == ["cache:market:abc"]
    assert await store.incr("hits", ttl=60) == 1
    assert await store.incr("hits", ttl=60) == 2
    assert fake.ttls["t:hits"] == 60
    await store.close()
