"""Ledger of in-flight analyses, kept in the key/value store with a TTL."""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Callable, List

from ..lib.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

PENDING_PREFIX = "job:pending:"


def new_job_id(prefix: str = "job") -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


@dataclass(slots=True)
class JobRecord:
    job_id: str
    kind: str
    user_id: str
    symbol: str | None
    timeframe: str | None
    started_at: float


class JobLedger:
    def __init__(self, store: KeyValueStore, *, ttl: float = 900.0, clock: Callable[[], float] | None = None) -> None:
        self.store = store
        self.ttl = ttl
        self._clock = clock or time.time

    async def start(self, kind: str, user_id: str, *, symbol: str | None = None, timeframe: str | None = None) -> JobRecord:
        record = JobRecord(new_job_id(kind), kind, user_id, symbol, timeframe, self._clock())
        await self.store.put(f"{PENDING_PREFIX}{record.job_id}", json.dumps(asdict(record)), ttl=self.ttl)
        return record

    async def finish(self, job_id: str) -> None:
        await self.store.delete(f"{PENDING_PREFIX}{job_id}")

    async def pending(self, user_id: str | None = None) -> List[JobRecord]:
        records: List[JobRecord] = []
        for key in await self.store.list_keys(PENDING_PREFIX):
            raw = await self.store.get(key)
            if not raw:
                continue
            try:
                record = JobRecord(**json.loads(raw))
            except (TypeError, ValueError):
                logger.warning("job_record_invalid key=%s", key)
                continue
            if user_id is None or record.user_id == user_id:
                records.append(record)
        return sorted(records, key=lambda item: item.started_at)


__all__ = ["JobLedger", "JobRecord", "PENDING_PREFIX", "new_job_id"]
