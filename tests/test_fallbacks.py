from __future__ import annotations

import asyncio

import pytest

from _helpers import FakeClock, FakeProvider
from marketiq.errors import AllProvidersFailed
from marketiq.services.fallbacks import FallbackExecutor


@pytest.mark.asyncio
async def test_providers_are_tried_strictly_in_order():
    log: list[str] = []
    a = FakeProvider("a", error="http_500", log=log)
    b = FakeProvider("b", error="timeout", log=log)
    c = FakeProvider("c", result="ok", log=log)
    d = FakeProvider("d", result="never", log=log)

    result = await FallbackExecutor("test", attempt_timeout=1.0).run([a, b, c, d], "req")

    assert result.value == "ok"
    assert result.provider == "c"
    assert log == ["a", "b", "c"]
    assert [len(p.calls) for p in (a, b, c, d)] == [1, 1, 1, 0]
    assert [item.outcome for item in result.attempts] == ["error", "error", "ok"]


@pytest.mark.asyncio
async def test_empty_result_is_rejected_and_chain_continues():
    a = FakeProvider("a", result=[])
    b = FakeProvider("b", result=[1, 2, 3])

    result = await FallbackExecutor("test", attempt_timeout=1.0).run([a, b], "req")

    assert result.provider == "b"
    assert result.attempts[0].outcome == "rejected"


@pytest.mark.asyncio
async def test_custom_acceptance_check():
    a = FakeProvider("a", result=[1])
    b = FakeProvider("b", result=[1, 2, 3])

    result = await FallbackExecutor("test", attempt_timeout=1.0).run([a, b], "req", accept=lambda v: len(v) >= 3)

    assert result.provider == "b"


@pytest.mark.asyncio
async def test_exhausted_chain_lists_every_failure():
    providers = [FakeProvider("a", error="http_429"), FakeProvider("b", error="missing_credentials")]

    with pytest.raises(AllProvidersFailed) as info:
        await FallbackExecutor("market_data", attempt_timeout=1.0).run(providers, "req")

    err = info.value
    assert err.phase == "market_data"
    assert [item.provider for item in err.attempts] == ["a", "b"]
    assert "a=http_429" in str(err)
    assert "b=missing_credentials" in str(err)
    assert err.budget_exhausted is False


@pytest.mark.asyncio
async def test_slow_provider_times_out_and_next_is_used():
    class Slow:
        name = "slow"

        async def attempt(self, request):
            await asyncio.sleep(5)
            return "late"

    fast = FakeProvider("fast", result="ok")

    result = await FallbackExecutor("test", attempt_timeout=0.05).run([Slow(), fast], "req")

    assert result.provider == "fast"
    assert result.attempts[0].outcome == "timeout"


@pytest.mark.asyncio
async def test_budget_cutoff_skips_remaining_providers():
    clock = FakeClock()
    first = FakeProvider("first", error="http_500", cost_s=4.0, clock=clock)
    second = FakeProvider("second", result="ok", clock=clock)
    executor = FallbackExecutor(
        "generation",
        attempt_timeout=3.0,
        total_budget=5.0,
        min_remaining=1.5,
        clock=clock,
    )

    with pytest.raises(AllProvidersFailed) as info:
        await executor.run([first, second], "req")

    assert len(first.calls) == 1
    assert second.calls == []
    assert info.value.budget_exhausted is True


@pytest.mark.asyncio
async def test_budget_allows_next_provider_while_time_remains():
    clock = FakeClock()
    first = FakeProvider("first", error="http_500", cost_s=2.0, clock=clock)
    second = FakeProvider("second", result="ok", clock=clock)
    executor = FallbackExecutor("generation", attempt_timeout=3.0, total_budget=5.0, min_remaining=1.5, clock=clock)

    result = await executor.run([first, second], "req")

    assert result.provider == "second"


@pytest.mark.asyncio
async def test_cancellation_propagates_and_stops_the_chain():
    started = asyncio.Event()

    class Hanging:
        name = "hanging"

        async def attempt(self, request):
            started.set()
            await asyncio.sleep(30)

    after = FakeProvider("after", result="ok")
    executor = FallbackExecutor("test", attempt_timeout=60.0)
    task = asyncio.create_task(executor.run([Hanging(), after], "req"))
    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert after.calls == []
