"""Key/value storage behind the response caches, quota counters and job ledger.

Two backends share one small async protocol: an in-process dictionary with TTLs
(default, and what the tests use) and Redis via ``redis.asyncio`` when
``REDIS_URL`` is configured.  Values are plain strings; callers serialize.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Callable, Dict, Protocol, Tuple, runtime_checkable

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


@runtime_checkable
class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def put(self, key: str, value: str, ttl: float | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def list_keys(self, prefix: str) -> list[str]: ...

    async def incr(self, key: str, amount: int = 1, ttl: float | None = None) -> int: ...

    async def close(self) -> None: ...


class InMemoryKeyValueStore:
    """Process-local store with lazy expiry.

    ``clock`` returns seconds and defaults to ``time.monotonic``; tests pass a
    fake clock to step past TTLs without sleeping.
    """

    def __init__(self, *, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.monotonic
        self._data: Dict[str, Tuple[str, float | None]] = {}
        self._lock = asyncio.Lock()

    def _expired(self, expires_at: float | None) -> bool:
        return expires_at is not None and self._clock() >= expires_at

    def _deadline(self, ttl: float | None) -> float | None:
        if ttl is None:
            return None
        return self._clock() + max(0.0, float(ttl))

    async def get(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._expired(expires_at):
            self._data.pop(key, None)
            return None
        return value

    async def put(self, key: str, value: str, ttl: float | None = None) -> None:
        self._data[key] = (value, self._deadline(ttl))

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list_keys(self, prefix: str) -> list[str]:
        keys: list[str] = []
        for key, (_, expires_at) in list(self._data.items()):
            if not key.startswith(prefix):
                continue
            if self._expired(expires_at):
                self._data.pop(key, None)
                continue
            keys.append(key)
        return sorted(keys)

    async def incr(self, key: str, amount: int = 1, ttl: float | None = None) -> int:
        async with self._lock:
            current = await self.get(key)
            value = int(current or 0) + int(amount)
            expires_at = self._data[key][1] if current is not None else self._deadline(ttl)
            self._data[key] = (str(value), expires_at)
            return value

    async def close(self) -> None:
        self._data.clear()


class RedisKeyValueStore:
    """Redis-backed store; keys are namespaced with ``key_prefix``."""

    def __init__(self, client: aioredis.Redis, *, key_prefix: str = "marketiq:") -> None:
        self._redis = client
        self._prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisKeyValueStore":
        return cls(aioredis.from_url(url, decode_responses=True), **kwargs)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> str | None:
        return await self._redis.get(self._key(key))

    async def put(self, key: str, value: str, ttl: float | None = None) -> None:
        if ttl is None:
            await self._redis.set(self._key(key), value)
            return
        await self._redis.setex(self._key(key), max(1, math.ceil(ttl)), value)

    async def delete(self, key: str) -> None:
        await self._redis.delete(self._key(key))

    async def list_keys(self, prefix: str) -> list[str]:
        keys: list[str] = []
        async for raw in self._redis.scan_iter(match=f"{self._key(prefix)}*", count=200):
            keys.append(raw[len(self._prefix):])
        return sorted(keys)

    async def incr(self, key: str, amount: int = 1, ttl: float | None = None) -> int:
        full_key = self._key(key)
        value = int(await self._redis.incrby(full_key, int(amount)))
        if ttl is not None and value == int(amount):
            await self._redis.expire(full_key, max(1, math.ceil(ttl)))
        return value

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except Exception as exc:  # pragma: no cover - shutdown path
            logger.debug("redis_close_failed error=%s", exc)


def build_store(redis_url: str | None) -> KeyValueStore:
    if redis_url:
        logger.info("kv_store_backend backend=redis")
        return RedisKeyValueStore.from_url(redis_url)
    logger.info("kv_store_backend backend=memory")
    return InMemoryKeyValueStore()


__all__ = ["InMemoryKeyValueStore", "KeyValueStore", "RedisKeyValueStore", "build_store"]
