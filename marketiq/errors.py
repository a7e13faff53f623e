"""Error taxonomy shared by providers, the pipeline and the HTTP layer."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

QUOTA_EXCEEDED = "quota_exceeded"
MARKET_DATA_UNAVAILABLE = "market_data_unavailable"
GENERATION_UNAVAILABLE = "generation_unavailable"
INTERNAL = "internal"

PUBLIC_MESSAGES = {
    QUOTA_EXCEEDED: "Your analysis quota is used up for now. It resets at the start of the next period.",
    MARKET_DATA_UNAVAILABLE: "Market data is temporarily unavailable for this symbol. Please retry shortly.",
    GENERATION_UNAVAILABLE: "The analysis service is busy right now. Please retry shortly.",
    INTERNAL: "Something went wrong while preparing the analysis. Please retry shortly.",
}


class ProviderAttemptFailed(RuntimeError):
    """Raised by a provider when its single attempt produced nothing usable."""

    def __init__(self, provider: str, reason: str, *, status_code: int | None = None) -> None:
        super().__init__(f"{provider}: {reason}")
        self.provider = provider
        self.reason = reason
        self.status_code = status_code


@dataclass(slots=True, frozen=True)
class AttemptRecord:
    provider: str
    outcome: str
    error: str | None = None
    latency_ms: float = 0.0


class AllProvidersFailed(RuntimeError):
    """Every provider of a chain failed, timed out, or the budget ran out."""

    def __init__(self, phase: str, attempts: Sequence[AttemptRecord], *, budget_exhausted: bool = False) -> None:
        self.phase = phase
        self.attempts = list(attempts)
        self.budget_exhausted = budget_exhausted
        reasons = "; ".join(f"{item.provider}={item.error or item.outcome}" for item in self.attempts)
        if budget_exhausted:
            reasons = f"{reasons}; budget_exhausted" if reasons else "budget_exhausted"
        super().__init__(f"{phase} chain exhausted: {reasons or 'no providers configured'}")


class AnalysisError(RuntimeError):
    """Base for failures surfaced to callers with a stable code."""

    code = INTERNAL

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.code)
        self.detail = detail

    @property
    def public_message(self) -> str:
        return PUBLIC_MESSAGES.get(self.code, PUBLIC_MESSAGES[INTERNAL])


class MarketDataUnavailable(AnalysisError):
    code = MARKET_DATA_UNAVAILABLE


class GenerationUnavailable(AnalysisError):
    code = GENERATION_UNAVAILABLE


class QuotaExceeded(AnalysisError):
    code = QUOTA_EXCEEDED

    def __init__(self, user_id: str, period: str, used: int, limit: int) -> None:
        super().__init__(f"{period} quota exhausted for {user_id}: {used}/{limit}")
        self.user_id = user_id
        self.period = period
        self.used = used
        self.limit = limit


class SchemaValidationFailed(ValueError):
    """A structured zone block was found but could not be parsed or validated."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ChartServiceUnavailable(RuntimeError):
    """The chart rendering service did not return an image reference."""


__all__ = [
    "GENERATION_UNAVAILABLE",
    "INTERNAL",
    "MARKET_DATA_UNAVAILABLE",
    "PUBLIC_MESSAGES",
    "QUOTA_EXCEEDED",
    "AllProvidersFailed",
    "AnalysisError",
    "AttemptRecord",
    "ChartServiceUnavailable",
    "GenerationUnavailable",
    "MarketDataUnavailable",
    "ProviderAttemptFailed",
    "QuotaExceeded",
    "SchemaValidationFailed",
]
