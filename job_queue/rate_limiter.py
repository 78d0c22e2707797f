"""
Rate Limiter — per-resource daily sending caps.

Each resource (usually an inbox, resource_key "inbox:<id>") gets one
RateWindow per day. Windows are 24h long and start at
rate_limits.day_boundary_hour UTC. A window's counter only ever moves
through BaseRateWindowStore.reserve, which is atomic in every backend.

  check_and_reserve("inbox:42", 500)
      → Allowed(window)                   counter incremented
      → Deferred(retry_after, window)     window full; retry when it rolls over
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from database.store_base import BaseRateWindowStore
from models.schemas import Job, RateWindow

logger = structlog.get_logger()


@dataclass(frozen=True)
class Allowed:
    window: RateWindow


@dataclass(frozen=True)
class Deferred:
    retry_after: timedelta
    window: RateWindow


RateDecision = Union[Allowed, Deferred]


def window_bounds(now: datetime, day_boundary_hour: int = 0) -> tuple[datetime, datetime]:
    """Return the [start, end) of the daily window containing now (UTC)."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    start = now.replace(hour=day_boundary_hour, minute=0, second=0, microsecond=0)
    if now < start:
        start -= timedelta(days=1)
    return start, start + timedelta(days=1)


class RateLimiter:

    def __init__(self, store: BaseRateWindowStore, day_boundary_hour: int = 0):
        if not 0 <= day_boundary_hour <= 23:
            raise ValueError("day_boundary_hour must be between 0 and 23")
        self.store = store
        self.day_boundary_hour = day_boundary_hour

    async def check_and_reserve(
        self,
        resource_key: str,
        provider_daily_limit: int,
        now: Optional[datetime] = None,
    ) -> RateDecision:
        now = now or datetime.now(timezone.utc)
        start, end = window_bounds(now, self.day_boundary_hour)

        allowed, window = await self.store.reserve(
            resource_key, start, end, provider_daily_limit,
        )
        if allowed:
            return Allowed(window)

        logger.info("rate_limit_deferred",
                    resource_key=resource_key,
                    count=window.count,
                    limit=provider_daily_limit,
                    window_end=end.isoformat())
        return Deferred(retry_after=end - now, window=window)

    async def usage(self, resource_key: str, now: Optional[datetime] = None) -> Optional[RateWindow]:
        """Current window for a resource, if one exists."""
        now = now or datetime.now(timezone.utc)
        start, _ = window_bounds(now, self.day_boundary_hour)
        return await self.store.get_window(resource_key, start)


# ──────────────────────────────────────────────────────────────
#  Provider limits
# ──────────────────────────────────────────────────────────────

def detect_email_provider(email: str) -> str:
    """Map a sending address to its mailbox provider by domain."""
    domain = (email or "").rsplit("@", 1)[-1].lower()

    if "gmail" in domain or "google" in domain:
        return "google"
    if any(p in domain for p in ("outlook", "hotmail", "live", "microsoft")):
        return "outlook"
    if "zoho" in domain:
        return "zoho"
    if "yahoo" in domain:
        return "yahoo"
    if any(p in domain for p in ("icloud", "me.com", "mac.com")):
        return "apple"
    return "other"


class ProviderLimits:
    """
    Resolves the daily limit for a job:
      1. payload["daily_limit"] (per-inbox override, warmup ramp)
      2. provider detected from payload["inbox_email"]
      3. default_daily_limit
    """

    def __init__(self, provider_limits: dict[str, int] = None, default_daily_limit: int = 100):
        self.provider_limits = dict(provider_limits or {})
        self.default_daily_limit = default_daily_limit

    @classmethod
    def from_settings(cls, rate_config) -> ProviderLimits:
        return cls(rate_config.provider_limits, rate_config.default_daily_limit)

    def limit_for(self, job: Job) -> int:
        explicit = job.payload.get("daily_limit")
        if explicit is not None:
            return int(explicit)

        inbox_email = job.payload.get("inbox_email")
        if inbox_email:
            provider = detect_email_provider(inbox_email)
            if provider in self.provider_limits:
                return self.provider_limits[provider]

        return self.default_daily_limit
