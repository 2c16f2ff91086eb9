# backend/omniverify/workers/worker.py
import asyncio
import collections
import logging

from redis.exceptions import RedisError
from sqlalchemy.exc import OperationalError

from ..queues.jobs import Job, QueueSpec

LOG = logging.getLogger("omniverify.worker")

# transient infrastructure errors: the job goes back on the queue
REQUEUE_ON = (OperationalError, RedisError, OSError)
REQUEUE_DELAY = 30.0


class JobRateLimiter:
    """
    In-process cap on jobs started per minute for one queue.

    Secondary safeguard only; the persisted RateLimiter decides provider
    budget across processes.
    """
    def __init__(self, max_per_period: int, period: float = 60.0):
        self._max = max_per_period
        self._period = period
        self._starts = collections.deque()
        self._lock = asyncio.Lock()

    async def acquire(self):
        if not self._max:
            return
        loop = asyncio.get_running_loop()
        async with self._lock:
            while True:
                now = loop.time()
                while self._starts and now - self._starts[0] >= self._period:
                    self._starts.popleft()
                if len(self._starts) < self._max:
                    self._starts.append(now)
                    return
                await asyncio.sleep(self._period - (now - self._starts[0]))

    def release(self):
        """Give back the newest slot when it went unused."""
        if self._max and self._starts:
            self._starts.pop()


class QueueWorker:
    """``spec.concurrency`` pull loops over one queue, all sharing one handler."""

    def __init__(self, spec: QueueSpec, jobs, handler, poll_interval: float = 1.0):
        self.spec = spec
        self.jobs = jobs
        self.handler = handler
        self.poll_interval = poll_interval
        self._limiter = JobRateLimiter(spec.rate_per_minute)

    async def run(self):
        LOG.info("Worker started queue=%s concurrency=%d rate=%d/min",
                 self.spec.name, self.spec.concurrency, self.spec.rate_per_minute)
        tasks = [
            asyncio.create_task(self._loop(slot), name=f"{self.spec.name}-{slot}")
            for slot in range(self.spec.concurrency)
        ]
        try:
            await asyncio.gather(*tasks)
        finally:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            LOG.info("Worker stopped queue=%s", self.spec.name)

    async def _loop(self, slot: int):
        while True:
            # a start slot is taken before the job leaves the queue
            await self._limiter.acquire()
            try:
                job = await self.jobs.dequeue(self.spec.name)
            except RedisError as e:
                self._limiter.release()
                LOG.error("Dequeue failed queue=%s slot=%d: %s", self.spec.name, slot, e)
                await asyncio.sleep(self.poll_interval)
                continue

            if job is None:
                self._limiter.release()
                await asyncio.sleep(self.poll_interval)
                continue

            await self.process(job)

    async def process(self, job: Job) -> bool:
        try:
            await self.handler(job)
        except REQUEUE_ON as e:
            LOG.exception("Transient error in %s/%s id=%s, requeueing", job.queue, job.name, job.id)
            await self.jobs.ack(job, ok=False, error=str(e))
            try:
                await self.jobs.enqueue(job.name, job.data, delay=REQUEUE_DELAY, priority=job.priority)
            except RedisError as re:
                LOG.error("Failed to requeue %s id=%s: %s", job.name, job.id, re)
            return False
        except Exception as e:
            LOG.exception("Unhandled error in %s/%s id=%s", job.queue, job.name, job.id)
            await self.jobs.ack(job, ok=False, error=str(e))
            return False

        await self.jobs.ack(job, ok=True)
        return True
