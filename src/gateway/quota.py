"""Per-caller daily quota accounting.

The window is the current UTC day. Only the request count gates dispatch;
tokens and cost are reported alongside it. The check and the later usage
write are not atomic, so concurrent requests from one caller may overshoot
the request ceiling by the number of requests in flight.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Union

from . import pricing
from .config import UNLIMITED, LoadedConfig, TierLimits
from .store import RecordStore

logger = logging.getLogger(__name__)


class DenialReason(str, Enum):
    NO_AI_ACCESS = "no_ai_access"
    LIMIT_EXCEEDED = "limit_exceeded"


@dataclass(frozen=True)
class QuotaWindow:
    requests: int = 0
    tokens: int = 0
    cost: Decimal = Decimal(0)

    def plus(self, *, tokens: int, cost: Decimal) -> "QuotaWindow":
        return QuotaWindow(
            requests=self.requests + 1,
            tokens=self.tokens + tokens,
            cost=self.cost + cost,
        )


@dataclass(frozen=True)
class Allowed:
    tier: str
    window: QuotaWindow
    limits: TierLimits
    reset_at: datetime


@dataclass(frozen=True)
class Denied:
    tier: str
    reason: DenialReason
    limits: TierLimits
    reset_at: datetime
    window: QuotaWindow | None = None


QuotaDecision = Union[Allowed, Denied]


def start_of_utc_day(now: datetime | None = None) -> datetime:
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    current = current.astimezone(timezone.utc)
    return current.replace(hour=0, minute=0, second=0, microsecond=0)


def next_reset(now: datetime | None = None) -> datetime:
    return start_of_utc_day(now) + timedelta(days=1)


def seconds_until(reset_at: datetime, now: datetime | None = None) -> int:
    current = now or datetime.now(timezone.utc)
    return max(int((reset_at - current).total_seconds()), 0)


def _remaining(limit: float, used: float) -> float:
    if limit == UNLIMITED:
        return UNLIMITED
    return max(limit - used, 0)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def quota_status(tier: str, window: QuotaWindow, limits: TierLimits, reset_at: datetime) -> dict[str, Any]:
    """Wire shape shared by the quota route, frames and responses."""
    cost_used = pricing.as_number(window.cost)
    return {
        "tier": tier,
        "hasAccess": limits.ai_access,
        "usage": {
            "requests": window.requests,
            "tokens": window.tokens,
            "cost": cost_used,
        },
        "limits": {
            "requests": limits.requests_per_day,
            "tokens": limits.tokens_per_day,
            "cost": limits.cost_per_day,
        },
        "remaining": {
            "requests": _remaining(limits.requests_per_day, window.requests),
            "tokens": _remaining(limits.tokens_per_day, window.tokens),
            "cost": _remaining(limits.cost_per_day, cost_used),
        },
        "resetAt": _iso(reset_at),
    }


class QuotaLedger:
    def __init__(self, store: RecordStore, config: LoadedConfig) -> None:
        self.store = store
        self.config = config

    async def window(self, caller_id: str, now: datetime | None = None) -> QuotaWindow:
        totals = await self.store.usage_totals_since(caller_id, start_of_utc_day(now))
        return QuotaWindow(
            requests=totals.requests,
            tokens=totals.tokens,
            cost=pricing.from_units(totals.cost_units),
        )

    async def check(self, caller_id: str, tier: str, now: datetime | None = None) -> QuotaDecision:
        limits = self.config.limits_for(tier)
        reset_at = next_reset(now)
        if not limits.ai_access:
            return Denied(tier=tier, reason=DenialReason.NO_AI_ACCESS, limits=limits, reset_at=reset_at)
        window = await self.window(caller_id, now)
        if not limits.unlimited and window.requests >= limits.requests_per_day:
            logger.info(
                f"quota exceeded caller={caller_id} tier={tier} "
                f"requests={window.requests} limit={limits.requests_per_day}"
            )
            return Denied(
                tier=tier,
                reason=DenialReason.LIMIT_EXCEEDED,
                limits=limits,
                reset_at=reset_at,
                window=window,
            )
        return Allowed(tier=tier, window=window, limits=limits, reset_at=reset_at)

    async def status(self, caller_id: str, tier: str, now: datetime | None = None) -> dict[str, Any]:
        limits = self.config.limits_for(tier)
        reset_at = next_reset(now)
        if not limits.ai_access:
            return quota_status(tier, QuotaWindow(), limits, reset_at)
        window = await self.window(caller_id, now)
        return quota_status(tier, window, limits, reset_at)
