"""Ordered provider fallback shared by the market-data and generation chains.

A chain walks its providers strictly in order and returns the first acceptable
result.  Each attempt is bounded by ``attempt_timeout``; when a chain also has a
``total_budget`` the remaining time caps every attempt and, once less than
``min_remaining`` is left, no further provider is tried.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Protocol, Sequence, TypeVar, runtime_checkable

from ..errors import AllProvidersFailed, AttemptRecord, ProviderAttemptFailed
from ..logging_setup import format_log_context
from ..telemetry import record_chain_exhausted, record_provider_attempt

logger = logging.getLogger(__name__)

T = TypeVar("T")


@runtime_checkable
class Provider(Protocol):
    name: str

    async def attempt(self, request: Any) -> Any: ...


@dataclass(slots=True)
class ChainResult(Generic[T]):
    value: T
    provider: str
    attempts: list[AttemptRecord] = field(default_factory=list)


def non_empty(value: Any) -> bool:
    """Default acceptance test: ``None``, blank strings and empty containers fail."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    try:
        return len(value) > 0
    except TypeError:
        return True


class FallbackExecutor:
    def __init__(
        self,
        phase: str,
        *,
        attempt_timeout: float,
        total_budget: float | None = None,
        min_remaining: float = 0.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.phase = phase
        self.attempt_timeout = float(attempt_timeout)
        self.total_budget = float(total_budget) if total_budget is not None else None
        self.min_remaining = max(0.0, float(min_remaining))
        self._clock = clock or time.monotonic

    async def run(
        self,
        providers: Sequence[Provider],
        request: Any,
        *,
        accept: Callable[[Any], bool] | None = None,
    ) -> ChainResult[Any]:
        """Try ``providers`` in order; raise :class:`AllProvidersFailed` when none succeeds.

        Cancellation of the calling task propagates immediately and cancels only
        the attempt in flight.
        """

        check = accept or non_empty
        started = self._clock()
        attempts: list[AttemptRecord] = []
        budget_exhausted = False

        for provider in providers:
            timeout = self.attempt_timeout
            if self.total_budget is not None:
                remaining = self.total_budget - (self._clock() - started)
                if remaining <= 0 or remaining < self.min_remaining:
                    budget_exhausted = True
                    context = {
                        "phase": self.phase,
                        "next_provider": provider.name,
                        "remaining_s": round(remaining, 3),
                    }
                    logger.info("provider_chain_budget_exhausted %s", format_log_context(context), extra=context)
                    break
                timeout = min(timeout, remaining)

            began = self._clock()
            error: str | None = None
            try:
                value = await asyncio.wait_for(provider.attempt(request), timeout=timeout)
            except asyncio.TimeoutError:
                outcome, error = "timeout", f"timeout after {timeout:.2f}s"
            except ProviderAttemptFailed as exc:
                outcome, error = "error", exc.reason
            except Exception as exc:
                outcome, error = "error", f"{type(exc).__name__}: {exc}"
            else:
                if check(value):
                    latency_ms = (self._clock() - began) * 1000.0
                    attempts.append(AttemptRecord(provider.name, "ok", None, latency_ms))
                    record_provider_attempt(self.phase, provider.name, "ok", latency_ms)
                    return ChainResult(value=value, provider=provider.name, attempts=attempts)
                outcome, error = "rejected", "empty or unacceptable result"

            latency_ms = (self._clock() - began) * 1000.0
            attempts.append(AttemptRecord(provider.name, outcome, error, latency_ms))
            record_provider_attempt(self.phase, provider.name, outcome, latency_ms)
            context = {
                "phase": self.phase,
                "provider": provider.name,
                "outcome": outcome,
                "error": error,
                "latency_ms": round(latency_ms, 1),
            }
            logger.warning("provider_attempt_failed %s", format_log_context(context), extra=context)

        record_chain_exhausted(self.phase)
        raise AllProvidersFailed(self.phase, attempts, budget_exhausted=budget_exhausted)


__all__ = ["ChainResult", "FallbackExecutor", "Provider", "non_empty"]
