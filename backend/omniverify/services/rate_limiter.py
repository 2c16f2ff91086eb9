# backend/omniverify/services/rate_limiter.py
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select, func, delete

from ..db import utcnow
from ..models import RateLimitRecord

logger = logging.getLogger("omniverify.rate_limiter")


@dataclass
class RateLimitStatus:
    requests_made: int
    remaining: int
    max_requests: int
    window_seconds: int
    utilization: float
    next_available: datetime

    def as_dict(self) -> dict:
        return {
            "requests_made": self.requests_made,
            "remaining": self.remaining,
            "max_requests": self.max_requests,
            "window_seconds": self.window_seconds,
            "utilization": self.utilization,
            "next_available": self.next_available.isoformat(),
        }


class RateLimiter:
    """
    Sliding-window limiter over the persisted ``rate_limit_records`` table.

    The table is shared by every worker process, so it is the only source of
    truth for provider call budget. Callers ``record()`` before issuing the
    request. Workers racing between ``can_call`` and ``record`` can overshoot
    the ceiling by at most one call each.
    """

    def __init__(
        self,
        session_maker,
        max_requests: int = 180,
        window_seconds: int = 60,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_maker = session_maker
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._window = timedelta(seconds=window_seconds)
        self._clock = clock

    async def _count_in_window(self, session, now: datetime) -> int:
        q = await session.execute(
            select(func.count(RateLimitRecord.id)).where(
                RateLimitRecord.window_start >= now - self._window
            )
        )
        return int(q.scalar() or 0)

    async def can_call(self) -> bool:
        now = self._clock()
        async with self._session_maker() as session:
            count = await self._count_in_window(session, now)
        allowed = count < self.max_requests
        if not allowed:
            logger.debug("Rate limit reached: %d/%d in %ds window",
                         count, self.max_requests, self.window_seconds)
        return allowed

    async def record(self) -> None:
        now = self._clock()
        async with self._session_maker() as session:
            session.add(RateLimitRecord(window_start=now, window_end=now + self._window))
            await session.commit()

    async def next_available(self) -> datetime:
        """Time at which the oldest call still holding a slot leaves the window."""
        now = self._clock()
        async with self._session_maker() as session:
            q = await session.execute(
                select(RateLimitRecord.window_start)
                .where(RateLimitRecord.window_start >= now - self._window)
                .order_by(RateLimitRecord.window_start.desc())
                .offset(self.max_requests - 1)
                .limit(1)
            )
            oldest_blocking = q.scalar()
        if oldest_blocking is None:
            return now
        return max(now, oldest_blocking + self._window)

    async def seconds_until_available(self) -> float:
        return max((await self.next_available() - self._clock()).total_seconds(), 0.0)

    async def status(self) -> RateLimitStatus:
        now = self._clock()
        async with self._session_maker() as session:
            count = await self._count_in_window(session, now)
        return RateLimitStatus(
            requests_made=count,
            remaining=max(self.max_requests - count, 0),
            max_requests=self.max_requests,
            window_seconds=self.window_seconds,
            utilization=round(count / self.max_requests * 100, 2) if self.max_requests else 100.0,
            next_available=await self.next_available(),
        )

    async def cleanup(self, retention_seconds: int = 3600) -> int:
        """Delete records whose window ended more than ``retention_seconds`` ago."""
        cutoff = self._clock() - timedelta(seconds=retention_seconds)
        async with self._session_maker() as session:
            res = await session.execute(
                delete(RateLimitRecord).where(RateLimitRecord.window_end < cutoff)
            )
            await session.commit()
        deleted = res.rowcount or 0
        logger.info("Rate limit cleanup removed %d records older than %s", deleted, cutoff)
        return deleted
