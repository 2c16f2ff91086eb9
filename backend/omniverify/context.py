# backend/omniverify/context.py
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from .config import Settings, settings as default_settings
from .db import get_session_maker, dispose_engine, utcnow
from .queues import RedisJobQueue, queue_specs
from .services.batch_composer import BatchComposer
from .services.bouncer_client import BouncerClient
from .services.circuit_breaker import CircuitBreaker
from .services.dead_letters import DeadLetterStore
from .services.health import HealthRecorder
from .services.rate_limiter import RateLimiter

logger = logging.getLogger("omniverify.context")


@dataclass
class AppContext:
    """Everything a worker or the API needs, built once per process."""
    settings: Settings
    session_maker: Any
    jobs: Any
    rate_limiter: RateLimiter
    breaker: CircuitBreaker
    client: BouncerClient
    composer: BatchComposer
    dead_letters: DeadLetterStore
    health: HealthRecorder
    clock: Callable[[], datetime] = utcnow
    owns_engine: bool = True

    async def close(self):
        await self.client.close()
        await self.jobs.close()
        if self.owns_engine:
            await dispose_engine()
        logger.info("Application context closed")


def build_context(
    settings: Optional[Settings] = None,
    session_maker=None,
    jobs=None,
    client: Optional[BouncerClient] = None,
    composer: Optional[BatchComposer] = None,
    clock: Callable[[], datetime] = utcnow,
) -> AppContext:
    s = settings or default_settings
    owns_engine = session_maker is None
    session_maker = session_maker or get_session_maker()
    jobs = jobs or RedisJobQueue.from_url(
        s.REDIS_URL, prefix=s.QUEUE_PREFIX, lease_seconds=s.JOB_LEASE_SECONDS
    )
    client = client or BouncerClient(
        api_key=s.BOUNCER_API_KEY,
        base_url=s.BOUNCER_API_BASE_URL,
        timeout=s.BOUNCER_TIMEOUT_SECONDS,
        max_retries=s.BOUNCER_MAX_RETRIES,
        backoff_base=s.BOUNCER_BACKOFF_BASE,
    )

    rate_limiter = RateLimiter(
        session_maker,
        max_requests=s.RATE_LIMIT_MAX_REQUESTS,
        window_seconds=s.RATE_LIMIT_WINDOW_SECONDS,
        clock=clock,
    )
    breaker = CircuitBreaker(
        "bouncer",
        failure_threshold=s.CIRCUIT_FAILURE_THRESHOLD,
        recovery_timeout=s.CIRCUIT_RECOVERY_TIMEOUT,
        clock=clock,
    )
    dead_letters = DeadLetterStore(
        session_maker, jobs=jobs, max_retry_count=s.DEAD_LETTER_MAX_RETRY_COUNT, clock=clock
    )
    health = HealthRecorder(
        session_maker,
        jobs,
        rate_limiter,
        breaker,
        dead_letters,
        client=client,
        queue_names=queue_specs(s).keys(),
        ping_timeout=s.HEALTH_PING_TIMEOUT,
        clock=clock,
    )
    return AppContext(
        settings=s,
        session_maker=session_maker,
        jobs=jobs,
        rate_limiter=rate_limiter,
        breaker=breaker,
        client=client,
        composer=composer or BatchComposer(s.BATCH_STRATEGY),
        dead_letters=dead_letters,
        health=health,
        clock=clock,
        owns_engine=owns_engine,
    )
