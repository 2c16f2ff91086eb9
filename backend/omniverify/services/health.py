# backend/omniverify/services/health.py
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, Optional

import async_timeout
import httpx
from redis.exceptions import RedisError
from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError

from ..db import utcnow, ping_db
from ..models import Batch, BatchStatus, HealthMetric
from .circuit_breaker import CircuitState

logger = logging.getLogger("omniverify.health")

CIRCUIT_STATE_VALUES = {
    CircuitState.CLOSED.value: 0.0,
    CircuitState.HALF_OPEN.value: 1.0,
    CircuitState.OPEN.value: 2.0,
}


class HealthRecorder:
    """
    Periodic snapshot of pipeline health: dependency pings, queue depth,
    rate-limit utilization, circuit state and dead-letter backlog.
    Snapshots are flattened into ``health_metrics`` rows.
    """

    def __init__(
        self,
        session_maker,
        jobs,
        rate_limiter,
        breaker,
        dead_letters,
        client=None,
        queue_names: Iterable[str] = (),
        ping_timeout: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_maker = session_maker
        self._jobs = jobs
        self._rate_limiter = rate_limiter
        self._breaker = breaker
        self._dead_letters = dead_letters
        self._client = client
        self._queue_names = list(queue_names)
        self._ping_timeout = ping_timeout
        self._clock = clock

    # ---------------------------------------------------
    # Pings
    # ---------------------------------------------------
    async def _check_database(self) -> str:
        try:
            async with async_timeout.timeout(self._ping_timeout):
                await ping_db(self._session_maker)
            return "up"
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
            logger.warning("Database health check failed: %s", e)
            return "down"

    async def _check_redis(self) -> str:
        try:
            async with async_timeout.timeout(self._ping_timeout):
                await self._jobs.ping()
            return "up"
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            logger.warning("Redis health check failed: %s", e)
            return "down"

    async def _check_provider(self) -> str:
        if self._client is None:
            return "unknown"
        try:
            async with async_timeout.timeout(self._ping_timeout):
                ok = await self._client.ping()
            return "up" if ok else "down"
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            logger.warning("Provider health check failed: %s", e)
            return "down"

    # ---------------------------------------------------
    # Snapshot
    # ---------------------------------------------------
    async def snapshot(self) -> dict:
        queues: Dict[str, dict] = {}
        redis_status = await self._check_redis()
        if redis_status == "up":
            for name in self._queue_names:
                queues[name] = await self._jobs.stats(name)

        database_status = await self._check_database()
        rate_limit = None
        dead_letters = None
        if database_status == "up":
            rate_limit = (await self._rate_limiter.status()).as_dict()
            dead_letters = await self._dead_letters.health()

        snap = {
            "timestamp": self._clock().isoformat(),
            "database": database_status,
            "redis": redis_status,
            "bouncer_api": await self._check_provider(),
            "queues": queues,
            "rate_limit": rate_limit,
            "circuit_breaker": self._breaker.stats(),
            "dead_letters": dead_letters,
        }
        snap["status"] = self.overall_status(snap)
        return snap

    @staticmethod
    def overall_status(snap: dict) -> str:
        if snap["database"] != "up" or snap["redis"] != "up":
            return "unhealthy"
        if snap["circuit_breaker"]["state"] != CircuitState.CLOSED.value:
            return "degraded"
        if snap["bouncer_api"] == "down":
            return "degraded"
        dl = snap.get("dead_letters") or {}
        if dl.get("status") == "critical":
            return "degraded"
        return "healthy"

    @staticmethod
    def flatten(snap: dict) -> Dict[str, float]:
        up = {"up": 1.0, "down": 0.0}
        metrics = {
            "database_status": up.get(snap["database"], 0.0),
            "redis_status": up.get(snap["redis"], 0.0),
            "bouncer_api_status": up.get(snap["bouncer_api"], 0.0),
            "circuit_breaker_state": CIRCUIT_STATE_VALUES[snap["circuit_breaker"]["state"]],
            "circuit_breaker_failures": float(snap["circuit_breaker"]["failure_count"]),
        }
        for name, stats in snap["queues"].items():
            for field_name in ("waiting", "delayed", "active", "failed"):
                metrics[f"queue_{name}_{field_name}"] = float(stats[field_name])
        if snap.get("rate_limit"):
            metrics["rate_limit_utilization"] = float(snap["rate_limit"]["utilization"])
            metrics["rate_limit_requests"] = float(snap["rate_limit"]["requests_made"])
        if snap.get("dead_letters"):
            metrics["dead_letter_unreviewed"] = float(snap["dead_letters"]["unreviewed"])
        return metrics

    async def record(self, snap: Optional[dict] = None) -> dict:
        snap = snap or await self.snapshot()
        now = self._clock()
        metrics = self.flatten(snap)
        async with self._session_maker() as session:
            session.add_all(
                HealthMetric(metric_name=name, metric_value=value, recorded_ts=now)
                for name, value in metrics.items()
            )
            await session.commit()
        logger.info("Health snapshot status=%s recorded %d metrics", snap["status"], len(metrics))
        return snap

    # ---------------------------------------------------
    # Retention
    # ---------------------------------------------------
    async def cleanup(self, metrics_retention_days: int = 7, completed_batch_retention_days: int = 30) -> dict:
        now = self._clock()
        async with self._session_maker() as session:
            metrics = await session.execute(
                delete(HealthMetric).where(
                    HealthMetric.recorded_ts < now - timedelta(days=metrics_retention_days)
                )
            )
            batches = await session.execute(
                delete(Batch).where(
                    Batch.status == BatchStatus.completed.value,
                    Batch.completed_ts < now - timedelta(days=completed_batch_retention_days),
                )
            )
            await session.commit()
        result = {
            "health_metrics": metrics.rowcount or 0,
            "completed_batches": batches.rowcount or 0,
        }
        logger.info("Health cleanup removed %(health_metrics)d metrics, %(completed_batches)d batches", result)
        return result
