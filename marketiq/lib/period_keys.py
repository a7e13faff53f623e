from __future__ import annotations

from datetime import datetime, timezone
from functools import lru_cache

import zoneinfo


@lru_cache(maxsize=16)
def _zone(name: str) -> zoneinfo.ZoneInfo:
    return zoneinfo.ZoneInfo(name)


def _ensure_aware(dt: datetime) -> datetime:
    """Coerce naive datetimes into UTC-aware values."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def local_now(tz_name: str, now: datetime | None = None) -> datetime:
    return _ensure_aware(now or datetime.now(timezone.utc)).astimezone(_zone(tz_name))


def day_key(tz_name: str, now: datetime | None = None) -> str:
    """Calendar day (``YYYY-MM-DD``) in ``tz_name``; quota daily counters reset when it changes."""
    return local_now(tz_name, now).strftime("%Y-%m-%d")


def month_key(tz_name: str, now: datetime | None = None) -> str:
    return local_now(tz_name, now).strftime("%Y-%m")


__all__ = ["day_key", "local_now", "month_key"]
