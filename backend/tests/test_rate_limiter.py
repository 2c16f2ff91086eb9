"""
Sliding-window rate limiter over the persisted rate_limit_records table.
"""
import random
from datetime import timedelta

import pytest
from sqlalchemy import select

from omniverify.models import RateLimitRecord
from omniverify.services.rate_limiter import RateLimiter


@pytest.fixture
def limiter(session_maker, clock):
    return RateLimiter(session_maker, max_requests=3, window_seconds=60, clock=clock)


@pytest.mark.asyncio
async def test_blocks_at_ceiling_and_reopens_after_window(limiter, clock):
    for _ in range(3):
        assert await limiter.can_call()
        await limiter.record()
        clock.advance(0.2)

    assert not await limiter.can_call()

    clock.advance(61)
    assert await limiter.can_call()


@pytest.mark.asyncio
async def test_next_available_is_oldest_blocking_call_plus_window(limiter, clock):
    start = clock()
    for _ in range(3):
        await limiter.record()
        clock.advance(10)

    # calls at +0, +10, +20; the third most recent is the one at +0
    assert await limiter.next_available() == start + timedelta(seconds=60)


@pytest.mark.asyncio
async def test_next_available_is_now_below_ceiling(limiter, clock):
    await limiter.record()
    await limiter.record()
    assert await limiter.next_available() == clock()
    assert await limiter.seconds_until_available() == 0.0


@pytest.mark.asyncio
async def test_status_reports_utilization(session_maker, clock):
    limiter = RateLimiter(session_maker, max_requests=4, window_seconds=60, clock=clock)
    await limiter.record()

    status = await limiter.status()
    assert status.requests_made == 1
    assert status.remaining == 3
    assert status.utilization == 25.0


@pytest.mark.asyncio
async def test_cleanup_only_removes_expired_records(limiter, session_maker, clock):
    await limiter.record()
    clock.advance(2 * 3600)
    await limiter.record()

    assert await limiter.cleanup(retention_seconds=3600) == 1

    async with session_maker() as session:
        remaining = (await session.execute(select(RateLimitRecord))).scalars().all()
    assert len(remaining) == 1


@pytest.mark.asyncio
async def test_can_call_matches_window_count_for_random_sequences(limiter, clock):
    rng = random.Random(7)
    recorded = []
    for _ in range(40):
        clock.advance(rng.uniform(0, 25))
        now = clock()
        in_window = sum(1 for ts in recorded if ts >= now - timedelta(seconds=60))

        assert await limiter.can_call() == (in_window < 3)

        if rng.random() < 0.7:
            await limiter.record()
            recorded.append(now)
