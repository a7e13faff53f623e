"""Best-effort response cache over the key/value store.

Each instance owns a namespace and a TTL.  Store errors never reach callers: a
failed read is a miss and a failed write is dropped.  Empty values are never
stored, so an upstream failure cannot be replayed from cache.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict

from ..lib.detached import spawn_detached
from ..lib.kv_store import KeyValueStore
from ..logging_setup import format_log_context
from ..telemetry import record_cache_lookup

logger = logging.getLogger(__name__)


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, dict, tuple)):
        return len(value) == 0
    return False


class ResponseCache:
    def __init__(self, store: KeyValueStore, *, namespace: str, ttl: float) -> None:
        self.store = store
        self.namespace = namespace
        self.ttl = float(ttl)
        self._inflight: Dict[str, asyncio.Future[Any]] = {}

    def _key(self, fingerprint: str) -> str:
        return f"cache:{self.namespace}:{fingerprint}"

    async def get(self, fingerprint: str) -> Any | None:
        try:
            raw = await self.store.get(self._key(fingerprint))
        except Exception as exc:
            context = {"namespace": self.namespace, "error": str(exc)}
            logger.warning("cache_read_failed %s", format_log_context(context), extra=context)
            record_cache_lookup(self.namespace, False)
            return None
        if raw is None:
            record_cache_lookup(self.namespace, False)
            return None
        try:
            value = json.loads(raw)
        except ValueError:
            logger.warning("cache_entry_corrupt namespace=%s", self.namespace)
            record_cache_lookup(self.namespace, False)
            return None
        record_cache_lookup(self.namespace, True)
        return value

    async def put(self, fingerprint: str, value: Any, ttl: float | None = None) -> bool:
        """Store ``value``; returns ``False`` when skipped (empty, ttl <= 0) or when the store failed."""

        effective_ttl = self.ttl if ttl is None else float(ttl)
        if _is_empty(value) or effective_ttl <= 0:
            return False
        try:
            payload = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
            await self.store.put(self._key(fingerprint), payload, ttl=effective_ttl)
        except Exception as exc:
            context = {"namespace": self.namespace, "error": str(exc)}
            logger.warning("cache_write_failed %s", format_log_context(context), extra=context)
            return False
        return True

    async def get_or_fill(
        self,
        fingerprint: str,
        loader: Callable[[], Awaitable[Any]],
        *,
        usable: Callable[[Any], bool] | None = None,
        store_if: Callable[[Any], bool] | None = None,
        detach_write: bool = False,
    ) -> tuple[Any, bool]:
        """Return ``(value, hit)``; concurrent misses on one fingerprint share one loader call.

        ``usable`` turns a cached value it rejects into a miss.  ``store_if``
        decides whether a freshly loaded value is written back.
        """

        cached = await self.get(fingerprint)
        if cached is not None and (usable is None or usable(cached)):
            return cached, True

        pending = self._inflight.get(fingerprint)
        if pending is not None:
            return await asyncio.shield(pending), False

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._inflight[fingerprint] = future
        try:
            value = await loader()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Mark retrieved so a future nobody awaited does not log a warning.
            future.exception()
            raise
        else:
            future.set_result(value)
            if store_if is None or store_if(value):
                if detach_write:
                    spawn_detached(self.put(fingerprint, value), name=f"cache-{self.namespace}-{fingerprint[:12]}")
                else:
                    await self.put(fingerprint, value)
            return value, False
        finally:
            self._inflight.pop(fingerprint, None)


__all__ = ["ResponseCache"]
