from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from _helpers import make_settings
from marketiq.errors import QuotaExceeded
from marketiq.lib.kv_store import InMemoryKeyValueStore
from marketiq.lib.period_keys import day_key, month_key
from marketiq.services.quota import QuotaController


class WallClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _controller(clock, *, store=None, **overrides):
    options = {"free_daily_limit": 5, "free_monthly_limit": 100, "sub_daily_limit": 20}
    options.update(overrides)
    settings = make_settings(**options)
    return QuotaController(store or InMemoryKeyValueStore(), settings=settings, now=clock)


def test_period_keys_follow_the_configured_timezone():
    # 21:30 UTC is already the next day in Istanbul (UTC+3)
    moment = datetime(2025, 3, 31, 21, 30, tzinfo=timezone.utc)
    assert day_key("Europe/Istanbul", moment) == "2025-04-01"
    assert month_key("Europe/Istanbul", moment) == "2025-04"
    assert day_key("UTC", moment) == "2025-03-31"


@pytest.mark.asyncio
async def test_free_tier_is_denied_after_five_successes():
    quota = _controller(WallClock(datetime(2025, 5, 10, 9, 0, tzinfo=timezone.utc)))

    for _ in range(5):
        await quota.check("u1")
        await quota.consume("u1")

    with pytest.raises(QuotaExceeded) as info:
        await quota.check("u1")
    assert info.value.period == "daily"
    assert info.value.used == 5
    assert info.value.limit == 5


@pytest.mark.asyncio
async def test_check_without_consume_does_not_move_the_counter():
    quota = _controller(WallClock(datetime(2025, 5, 10, 9, 0, tzinfo=timezone.utc)))

    for _ in range(10):
        await quota.check("u1")

    status = await quota.status("u1")
    assert status.daily_used == 0
    assert status.monthly_used == 0


@pytest.mark.asyncio
async def test_midnight_in_timezone_resets_daily_counter_once():
    clock = WallClock(datetime(2025, 5, 10, 20, 0, tzinfo=timezone.utc))  # 23:00 Istanbul
    store = InMemoryKeyValueStore()
    quota = _controller(clock, store=store)
    for _ in range(5):
        await quota.consume("u1")
    with pytest.raises(QuotaExceeded):
        await quota.check("u1")

    clock.now += timedelta(hours=1, minutes=5)  # 00:05 Istanbul, still 21:05 UTC on the 10th
    await quota.check("u1")
    await quota.consume("u1")
    await quota.consume("u1")

    status = await quota.status("u1")
    assert status.day_key == "2025-05-11"
    assert status.daily_used == 2
    assert status.monthly_used == 7


@pytest.mark.asyncio
async def test_monthly_limit_applies_independently():
    clock = WallClock(datetime(2025, 5, 1, 9, 0, tzinfo=timezone.utc))
    quota = _controller(clock, free_daily_limit=5, free_monthly_limit=6)
    for _ in range(5):
        await quota.consume("u1")
    clock.now += timedelta(days=1)
    await quota.consume("u1")

    with pytest.raises(QuotaExceeded) as info:
        await quota.check("u1")
    assert info.value.period == "monthly"


@pytest.mark.asyncio
async def test_privileged_users_are_unlimited_and_never_persisted():
    store = InMemoryKeyValueStore()
    quota = _controller(WallClock(datetime(2025, 5, 10, tzinfo=timezone.utc)), store=store, owner_ids=["42"], admin_ids=["7"])

    for _ in range(20):
        await quota.check_and_consume("42")
    decision = await quota.consume("7")

    assert decision.unlimited is True
    assert decision.remaining() == {"daily": None, "monthly": None}
    assert await store.list_keys("quota:") == []


@pytest.mark.asyncio
async def test_active_subscription_raises_daily_limit_until_expiry():
    clock = WallClock(datetime(2025, 5, 10, 9, 0, tzinfo=timezone.utc))
    quota = _controller(clock)
    await quota.grant_subscription("u1", clock.now + timedelta(days=30))

    for _ in range(6):
        await quota.consume("u1")
    assert (await quota.status("u1")).subscribed is True
    assert (await quota.remaining("u1"))["daily"] == 14

    clock.now += timedelta(days=31)
    assert (await quota.status("u1")).subscribed is False


@pytest.mark.asyncio
async def test_remaining_counts_down_after_consume():
    quota = _controller(WallClock(datetime(2025, 5, 10, 9, 0, tzinfo=timezone.utc)))
    decision = await quota.consume("u1")
    assert decision.remaining() == {"daily": 4, "monthly": 99}


@pytest.mark.asyncio
async def test_consume_past_the_limit_records_usage_without_raising():
    quota = _controller(WallClock(datetime(2025, 5, 10, 9, 0, tzinfo=timezone.utc)), free_daily_limit=1)
    await quota.check("u1")
    await quota.check("u1")

    first = await quota.consume("u1")
    second = await quota.consume("u1")

    assert first.allowed is True
    assert second.allowed is False
    assert second.state.daily_used == 2
    assert second.remaining()["daily"] == 0
    with pytest.raises(QuotaExceeded) as info:
        await quota.check("u1")
    assert info.value.used == 2


@pytest.mark.asyncio
async def test_counters_live_under_per_period_keys():
    store = InMemoryKeyValueStore()
    quota = _controller(WallClock(datetime(2025, 5, 10, 9, 0, tzinfo=timezone.utc)), store=store)
    await quota.consume("u1")
    await quota.consume("u1")

    assert sorted(await store.list_keys("quota:u1:")) == ["quota:u1:day:2025-05-10", "quota:u1:month:2025-05"]
    assert await store.get("quota:u1:day:2025-05-10") == "2"
