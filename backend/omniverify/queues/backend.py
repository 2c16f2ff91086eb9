# backend/omniverify/queues/backend.py
"""
Durable priority/delay job queue on Redis.

Per queue:
    {prefix}:{queue}:waiting    ZSET  job id -> (100 - priority) * 1e13 + enqueue ms
    {prefix}:{queue}:delayed    ZSET  job id -> due ms
    {prefix}:{queue}:active     ZSET  job id -> lease deadline ms
    {prefix}:{queue}:completed  counter
    {prefix}:{queue}:failed     counter
    {prefix}:{queue}:paused     flag
    {prefix}:job:{id}           job JSON

A worker that dies mid-job leaves its id in ``active``; once the lease runs
out ``requeue_stalled`` puts it back on ``waiting``.
"""
import logging
import time
import uuid
from typing import Any, Dict, List, Optional

import redis.asyncio as redis

from .jobs import Job, Priority, JOB_QUEUES

logger = logging.getLogger("omniverify.queue")

PRIORITY_SCALE = 10 ** 13
FAILED_JOB_TTL = 7 * 24 * 3600
DEFAULT_LEASE_SECONDS = 600

# pop the best waiting job and lease it in one step
CLAIM_SCRIPT = """
local popped = redis.call('ZPOPMIN', KEYS[1], 1)
if #popped == 0 then
    return false
end
redis.call('ZADD', KEYS[2], ARGV[1], popped[1])
return popped[1]
"""


def _now_ms() -> int:
    return int(time.time() * 1000)


class RedisJobQueue:
    def __init__(
        self,
        client: "redis.Redis",
        prefix: str = "omniverify",
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
    ):
        self._r = client
        self.prefix = prefix
        self.lease_ms = int(lease_seconds * 1000)
        self._claim = client.register_script(CLAIM_SCRIPT)

    @classmethod
    def from_url(
        cls, url: str, prefix: str = "omniverify", lease_seconds: float = DEFAULT_LEASE_SECONDS
    ) -> "RedisJobQueue":
        return cls(redis.from_url(url, decode_responses=True), prefix=prefix, lease_seconds=lease_seconds)

    async def close(self):
        await self._r.aclose()

    async def ping(self) -> bool:
        return bool(await self._r.ping())

    # ---------------------------------------------------
    # Keys
    # ---------------------------------------------------
    def _key(self, queue: str, part: str) -> str:
        return f"{self.prefix}:{queue}:{part}"

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    @staticmethod
    def _score(priority: int, enqueued_ms: int) -> int:
        return (100 - int(priority)) * PRIORITY_SCALE + enqueued_ms

    # ---------------------------------------------------
    # Producer side
    # ---------------------------------------------------
    async def enqueue(
        self,
        name: str,
        data: Optional[Dict[str, Any]] = None,
        delay: float = 0.0,
        priority: int = Priority.NORMAL,
        queue: Optional[str] = None,
    ) -> str:
        queue = queue or JOB_QUEUES[name]
        job = Job(
            id=uuid.uuid4().hex,
            queue=queue,
            name=name,
            data=data or {},
            priority=priority,
            enqueued_ms=_now_ms(),
        )
        async with self._r.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(job.id), job.to_json())
            if delay and delay > 0:
                pipe.zadd(self._key(queue, "delayed"), {job.id: job.enqueued_ms + int(delay * 1000)})
            else:
                pipe.zadd(self._key(queue, "waiting"), {job.id: self._score(priority, job.enqueued_ms)})
            await pipe.execute()
        logger.debug("Enqueued %s/%s id=%s delay=%.1fs priority=%d", queue, name, job.id, delay or 0, priority)
        return job.id

    async def schedule_repeatable(
        self,
        name: str,
        every_seconds: int,
        data: Optional[Dict[str, Any]] = None,
        priority: int = Priority.LOW,
    ) -> Optional[str]:
        """
        Enqueue ``name`` at most once per ``every_seconds`` across all processes.
        The SET NX EX lock is the tick; returns the job id when this call won it.
        """
        acquired = await self._r.set(
            f"{self.prefix}:repeat:{name}", str(_now_ms()), nx=True, ex=int(every_seconds)
        )
        if not acquired:
            return None
        return await self.enqueue(name, data, priority=priority)

    # ---------------------------------------------------
    # Consumer side
    # ---------------------------------------------------
    async def promote_due(self, queue: str) -> int:
        now = _now_ms()
        due: List[str] = await self._r.zrangebyscore(self._key(queue, "delayed"), 0, now)
        promoted = 0
        for job_id in due:
            # ZREM result decides which process owns the promotion
            if not await self._r.zrem(self._key(queue, "delayed"), job_id):
                continue
            raw = await self._r.get(self._job_key(job_id))
            if raw is None:
                continue
            job = Job.from_json(raw)
            await self._r.zadd(self._key(queue, "waiting"), {job_id: self._score(job.priority, now)})
            promoted += 1
        return promoted

    async def dequeue(self, queue: str) -> Optional[Job]:
        if await self._r.exists(self._key(queue, "paused")):
            return None
        await self.promote_due(queue)
        job_id = await self._claim(
            keys=[self._key(queue, "waiting"), self._key(queue, "active")],
            args=[_now_ms() + self.lease_ms],
        )
        if job_id is None:
            return None
        raw = await self._r.get(self._job_key(job_id))
        if raw is None:
            await self._r.zrem(self._key(queue, "active"), job_id)
            logger.warning("Job %s popped from %s but payload is gone", job_id, queue)
            return None
        return Job.from_json(raw)

    async def ack(self, job: Job, ok: bool = True, error: Optional[str] = None):
        async with self._r.pipeline(transaction=True) as pipe:
            pipe.zrem(self._key(job.queue, "active"), job.id)
            if ok:
                pipe.incr(self._key(job.queue, "completed"))
                pipe.delete(self._job_key(job.id))
            else:
                pipe.incr(self._key(job.queue, "failed"))
                pipe.expire(self._job_key(job.id), FAILED_JOB_TTL)
            await pipe.execute()
        if not ok:
            logger.error("Job %s/%s id=%s failed: %s", job.queue, job.name, job.id, error)

    async def requeue_stalled(self, queue: str) -> int:
        """Put jobs whose lease ran out back on ``waiting``; returns how many."""
        expired: List[str] = await self._r.zrangebyscore(self._key(queue, "active"), 0, _now_ms())
        requeued = 0
        for job_id in expired:
            # ZREM result decides which process owns the requeue
            if not await self._r.zrem(self._key(queue, "active"), job_id):
                continue
            raw = await self._r.get(self._job_key(job_id))
            if raw is None:
                continue
            job = Job.from_json(raw)
            await self._r.zadd(self._key(queue, "waiting"), {job_id: self._score(job.priority, job.enqueued_ms)})
            logger.warning("Requeued stalled job %s/%s id=%s", queue, job.name, job_id)
            requeued += 1
        return requeued

    # ---------------------------------------------------
    # Admin / stats
    # ---------------------------------------------------
    async def pause(self, queue: str):
        await self._r.set(self._key(queue, "paused"), "1")

    async def resume(self, queue: str):
        await self._r.delete(self._key(queue, "paused"))

    async def pending_count(self, queue: str) -> int:
        return int(await self._r.zcard(self._key(queue, "waiting"))) + int(
            await self._r.zcard(self._key(queue, "delayed"))
        )

    async def stats(self, queue: str) -> Dict[str, int]:
        async with self._r.pipeline(transaction=False) as pipe:
            pipe.zcard(self._key(queue, "waiting"))
            pipe.zcard(self._key(queue, "delayed"))
            pipe.zcard(self._key(queue, "active"))
            pipe.get(self._key(queue, "completed"))
            pipe.get(self._key(queue, "failed"))
            pipe.exists(self._key(queue, "paused"))
            waiting, delayed, active, completed, failed, paused = await pipe.execute()
        return {
            "waiting": int(waiting or 0),
            "delayed": int(delayed or 0),
            "active": int(active or 0),
            "completed": int(completed or 0),
            "failed": int(failed or 0),
            "paused": bool(paused),
        }
