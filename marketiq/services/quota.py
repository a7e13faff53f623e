"""Per-user daily/monthly analysis quota.

Usage is counted in the key/value store under one counter per period,
``quota:{user_id}:day:{YYYY-MM-DD}`` and ``quota:{user_id}:month:{YYYY-MM}``,
with period keys computed in the configured timezone.  A new day or month key
starts from zero, so there is nothing to reset.  Counters are bumped with the
store's atomic ``incr``.  Owners and admins are unlimited and never consume.
Callers check before work and consume only after a successful analysis;
consuming never denies.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable

from ..config import Settings, get_settings
from ..errors import QuotaExceeded
from ..lib.kv_store import KeyValueStore
from ..lib.period_keys import day_key, month_key
from ..schemas import QuotaStatus
from ..telemetry import record_quota_denial

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class QuotaState:
    daily_used: int = 0
    daily_date: str = ""
    monthly_used: int = 0
    month_key: str = ""


@dataclass(slots=True, frozen=True)
class QuotaLimits:
    daily: int | None
    monthly: int | None


@dataclass(slots=True)
class QuotaDecision:
    user_id: str
    allowed: bool
    unlimited: bool
    subscribed: bool
    state: QuotaState
    limits: QuotaLimits
    denied_period: str | None = None

    def remaining(self) -> Dict[str, int | None]:
        if self.unlimited:
            return {"daily": None, "monthly": None}
        daily = None if self.limits.daily is None else max(0, self.limits.daily - self.state.daily_used)
        monthly = None if self.limits.monthly is None else max(0, self.limits.monthly - self.state.monthly_used)
        return {"daily": daily, "monthly": monthly}


_UNLIMITED = QuotaLimits(daily=None, monthly=None)

# Counters outlive their period so a late read still sees the final value.
DAY_COUNTER_TTL_S = 2 * 86400
MONTH_COUNTER_TTL_S = 33 * 86400


class QuotaController:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        settings: Settings | None = None,
        tz_name: str | None = None,
        owner_ids: Iterable[str] | None = None,
        admin_ids: Iterable[str] | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.tz_name = tz_name or self.settings.timezone
        owners = owner_ids if owner_ids is not None else self.settings.owner_ids
        admins = admin_ids if admin_ids is not None else self.settings.admin_ids
        self.privileged = {str(item).strip() for item in (*owners, *admins) if str(item).strip()}
        self.free_limits = QuotaLimits(self.settings.free_daily_limit, self.settings.free_monthly_limit)
        self.subscriber_limits = QuotaLimits(self.settings.sub_daily_limit, self.settings.sub_monthly_limit)
        self._now = now or (lambda: datetime.now(timezone.utc))

    @staticmethod
    def _counter_key(user_id: str, period: str, key: str) -> str:
        return f"quota:{user_id}:{period}:{key}"

    @staticmethod
    def _subscription_key(user_id: str) -> str:
        return f"subscription:{user_id}"

    def is_privileged(self, user_id: str) -> bool:
        return str(user_id) in self.privileged

    async def is_subscribed(self, user_id: str) -> bool:
        raw = await self.store.get(self._subscription_key(user_id))
        if not raw:
            return False
        try:
            expires_at = datetime.fromisoformat(json.loads(raw)["expires_at"])
        except (ValueError, KeyError, TypeError):
            logger.warning("subscription_record_invalid user_id=%s", user_id)
            return False
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at > self._now()

    async def grant_subscription(self, user_id: str, expires_at: datetime) -> None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        await self.store.put(self._subscription_key(user_id), json.dumps({"expires_at": expires_at.isoformat()}))

    async def _limits(self, user_id: str) -> tuple[QuotaLimits, bool]:
        if await self.is_subscribed(user_id):
            return self.subscriber_limits, True
        return self.free_limits, False

    def _period_keys(self) -> tuple[str, str]:
        now = self._now()
        return day_key(self.tz_name, now), month_key(self.tz_name, now)

    async def _read_counter(self, user_id: str, period: str, key: str) -> int:
        raw = await self.store.get(self._counter_key(user_id, period, key))
        if raw is None:
            return 0
        try:
            return max(0, int(raw))
        except (TypeError, ValueError):
            logger.warning("quota_counter_invalid user_id=%s period=%s", user_id, period)
            return 0

    async def load_state(self, user_id: str) -> QuotaState:
        """Counters for the current day and month keys; a new key starts from zero."""

        today, month = self._period_keys()
        return QuotaState(
            daily_used=await self._read_counter(user_id, "day", today),
            daily_date=today,
            monthly_used=await self._read_counter(user_id, "month", month),
            month_key=month,
        )

    def _denied_period(self, state: QuotaState, limits: QuotaLimits, cost: int) -> str | None:
        if limits.daily is not None and state.daily_used + cost > limits.daily:
            return "daily"
        if limits.monthly is not None and state.monthly_used + cost > limits.monthly:
            return "monthly"
        return None

    async def evaluate(self, user_id: str, cost: int = 1) -> QuotaDecision:
        """Decision without raising; privileged users never touch the store."""

        if self.is_privileged(user_id):
            return QuotaDecision(user_id, True, True, False, QuotaState(), _UNLIMITED)
        state = await self.load_state(user_id)
        limits, subscribed = await self._limits(user_id)
        period = self._denied_period(state, limits, cost)
        return QuotaDecision(user_id, period is None, False, subscribed, state, limits, denied_period=period)

    async def check(self, user_id: str, cost: int = 1) -> QuotaDecision:
        decision = await self.evaluate(user_id, cost)
        if not decision.allowed:
            self._deny(decision)
        return decision

    def _deny(self, decision: QuotaDecision) -> None:
        period = decision.denied_period or "daily"
        used = decision.state.daily_used if period == "daily" else decision.state.monthly_used
        limit = decision.limits.daily if period == "daily" else decision.limits.monthly
        record_quota_denial(period)
        logger.info("quota_denied user_id=%s period=%s used=%s limit=%s", decision.user_id, period, used, limit)
        raise QuotaExceeded(decision.user_id, period, used, int(limit or 0))

    async def consume(self, user_id: str, cost: int = 1) -> QuotaDecision:
        """Charge ``cost`` units to both counters; never raises for an exhausted quota.

        Denial belongs to :meth:`check`.  Concurrent requests admitted at
        ``limit - 1`` all complete and may push a counter past its limit.
        """

        if self.is_privileged(user_id):
            return await self.evaluate(user_id, cost)
        today, month = self._period_keys()
        daily = await self.store.incr(self._counter_key(user_id, "day", today), cost, ttl=DAY_COUNTER_TTL_S)
        monthly = await self.store.incr(self._counter_key(user_id, "month", month), cost, ttl=MONTH_COUNTER_TTL_S)
        state = QuotaState(daily_used=daily, daily_date=today, monthly_used=monthly, month_key=month)
        limits, subscribed = await self._limits(user_id)
        over = self._denied_period(state, limits, 0)
        if over is not None:
            logger.info("quota_overrun user_id=%s period=%s daily=%s monthly=%s", user_id, over, daily, monthly)
        return QuotaDecision(user_id, over is None, False, subscribed, state, limits)

    async def check_and_consume(self, user_id: str, cost: int = 1) -> QuotaDecision:
        await self.check(user_id, cost)
        return await self.consume(user_id, cost)

    async def remaining(self, user_id: str) -> Dict[str, int | None]:
        decision = await self.evaluate(user_id, 0)
        return decision.remaining()

    async def status(self, user_id: str) -> QuotaStatus:
        decision = await self.evaluate(user_id, 0)
        now = self._now()
        return QuotaStatus(
            user_id=user_id,
            unlimited=decision.unlimited,
            subscribed=decision.subscribed,
            daily_used=decision.state.daily_used,
            daily_limit=decision.limits.daily,
            monthly_used=decision.state.monthly_used,
            monthly_limit=decision.limits.monthly,
            day_key=day_key(self.tz_name, now),
            month_key=month_key(self.tz_name, now),
        )


__all__ = ["QuotaController", "QuotaDecision", "QuotaLimits", "QuotaState"]
