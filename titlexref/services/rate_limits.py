"""Outbound request pacing and provider cooldown tracking."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import date, datetime, timedelta
from typing import Callable, Mapping

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import ProviderCooldown
from ..errors import RateLimitedError

logger = logging.getLogger(__name__)

DEFAULT_INTERVALS: dict[str, float] = {
    "mapping": 0.5,
    "imdbapi": 0.2,
    "cinemeta": 0.05,
    "title_search": 0.1,
    "jikan": 1.0,
}
DEFAULT_DAILY_LIMITS: dict[str, int] = {"title_search": 500}


class RequestThrottle:
    """Enforce a minimum interval between calls to a single provider.

    Priority callers are admitted ahead of background callers; a provider with
    a daily budget refuses calls once the budget is spent until local midnight.
    """

    def __init__(
        self,
        name: str,
        min_interval: float,
        *,
        daily_limit: int | None = None,
        clock: Callable[[], float] = time.monotonic,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.name = name
        self._min_interval = max(0.0, min_interval)
        self._daily_limit = daily_limit
        self._clock = clock
        self._today = today
        self._lock = asyncio.Lock()
        self._last_request: float | None = None
        self._priority_waiters = 0
        self._priority_idle = asyncio.Event()
        self._priority_idle.set()
        self._daily_count = 0
        self._day = today()

    @property
    def daily_count(self) -> int:
        return self._daily_count

    def _consume_daily_budget(self) -> None:
        if self._daily_limit is None:
            return
        current_day = self._today()
        if current_day != self._day:
            self._day = current_day
            self._daily_count = 0
        if self._daily_count >= self._daily_limit:
            logger.warning(
                "%s daily limit exceeded (%d/day)", self.name, self._daily_limit
            )
            raise RateLimitedError(self.name, "Daily limit exceeded")
        self._daily_count += 1

    async def wait(self, *, priority: bool = False) -> None:
        """Block until the caller may issue its request."""

        self._consume_daily_budget()
        if priority:
            self._priority_waiters += 1
            self._priority_idle.clear()
        else:
            while self._priority_waiters:
                await self._priority_idle.wait()

        try:
            async with self._lock:
                if self._last_request is not None:
                    remaining = self._min_interval - (self._clock() - self._last_request)
                    if remaining > 0:
                        await asyncio.sleep(remaining)
                self._last_request = self._clock()
        finally:
            if priority:
                self._priority_waiters -= 1
                if not self._priority_waiters:
                    self._priority_idle.set()


class ThrottleGroup:
    """Lazily created throttles keyed by provider name."""

    def __init__(
        self,
        intervals: Mapping[str, float] | None = None,
        daily_limits: Mapping[str, int] | None = None,
    ) -> None:
        self._intervals = dict(DEFAULT_INTERVALS if intervals is None else intervals)
        self._daily_limits = dict(
            DEFAULT_DAILY_LIMITS if daily_limits is None else daily_limits
        )
        self._throttles: dict[str, RequestThrottle] = {}

    def get(self, provider: str) -> RequestThrottle | None:
        if provider not in self._intervals:
            return None
        throttle = self._throttles.get(provider)
        if throttle is None:
            throttle = RequestThrottle(
                provider,
                self._intervals[provider],
                daily_limit=self._daily_limits.get(provider),
            )
            self._throttles[provider] = throttle
        return throttle


class RateLimitRegistry:
    """Per-provider cooldowns, cached in memory and persisted to the database."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        *,
        cooldown_seconds: float = 3_600,
        api_keys: Mapping[str, str | None] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._cooldown = timedelta(seconds=cooldown_seconds)
        self._api_keys = dict(api_keys or {})
        self._limited_until: dict[str, datetime] = {}

    async def load(self) -> None:
        """Populate the in-memory cache with unexpired persisted cooldowns."""

        if self._session_factory is None:
            return
        now = datetime.utcnow()
        async with self._session_factory() as session:
            result = await session.execute(select(ProviderCooldown))
            for row in result.scalars():
                if row.limited_until > now:
                    self._limited_until[row.provider] = row.limited_until

    def has_key(self, provider: str) -> bool:
        return bool(self._api_keys.get(provider))

    def is_rate_limited(self, provider: str) -> bool:
        until = self._limited_until.get(provider)
        if until is None:
            return False
        if until <= datetime.utcnow():
            self._limited_until.pop(provider, None)
            return False
        return True

    def is_available(self, provider: str) -> bool:
        """A keyed provider is usable when it has a key and is not cooling down."""

        return self.has_key(provider) and not self.is_rate_limited(provider)

    def limited_until(self, provider: str) -> datetime | None:
        if not self.is_rate_limited(provider):
            return None
        return self._limited_until[provider]

    async def mark_rate_limited(
        self, provider: str, cooldown_seconds: float | None = None
    ) -> datetime:
        cooldown = (
            self._cooldown
            if cooldown_seconds is None
            else timedelta(seconds=cooldown_seconds)
        )
        until = datetime.utcnow() + cooldown
        self._limited_until[provider] = until
        logger.warning("%s rate limited until %s", provider, until.isoformat())
        if self._session_factory is not None:
            async with self._session_factory() as session:
                await session.merge(ProviderCooldown(provider=provider, limited_until=until))
                await session.commit()
        return until

    async def clear(self, provider: str) -> None:
        self._limited_until.pop(provider, None)
        if self._session_factory is not None:
            async with self._session_factory() as session:
                await session.execute(
                    delete(ProviderCooldown).where(ProviderCooldown.provider == provider)
                )
                await session.commit()

    def status(self) -> dict[str, dict[str, object]]:
        providers = sorted(set(self._api_keys) | set(self._limited_until))
        report: dict[str, dict[str, object]] = {}
        for provider in providers:
            until = self.limited_until(provider)
            report[provider] = {
                "has_key": self.has_key(provider),
                "rate_limited": until is not None,
                "limited_until": until.isoformat() if until else None,
            }
        return report
