"""
Queue worker plumbing: ack semantics, transient requeue, per-queue job rate.
"""
import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from omniverify.config import Settings
from omniverify.queues.jobs import (
    BATCH_DOWNLOAD,
    CHECK_BATCH_STATUS,
    CLEANUP_RATE_LIMITS,
    HEALTH_CHECK,
    Priority,
    QueueSpec,
    queue_specs,
)
from omniverify.workers.runner import scheduler_loop, selected_specs
from omniverify.workers.worker import REQUEUE_DELAY, JobRateLimiter, QueueWorker


def make_worker(jobs, handler):
    return QueueWorker(QueueSpec("batch-status-check", 2, 0), jobs, handler, poll_interval=0.01)


async def one_job(jobs):
    await jobs.enqueue(CHECK_BATCH_STATUS, {"batch_id": "b1"}, priority=Priority.HIGH)
    job, _ = jobs.take()
    return job


@pytest.mark.asyncio
async def test_successful_job_is_acked(jobs):
    seen = []

    async def handler(job):
        seen.append(job.data["batch_id"])

    job = await one_job(jobs)
    assert await make_worker(jobs, handler).process(job) is True
    assert seen == ["b1"]
    assert jobs.acked == [(job.id, True)]


@pytest.mark.asyncio
async def test_failed_job_is_not_requeued(jobs):
    async def handler(job):
        raise RuntimeError("bug")

    job = await one_job(jobs)
    assert await make_worker(jobs, handler).process(job) is False
    assert jobs.acked == [(job.id, False)]
    assert jobs.pending == []


@pytest.mark.asyncio
async def test_database_outage_requeues(jobs):
    async def handler(job):
        raise OperationalError("SELECT 1", {}, Exception("server closed the connection"))

    job = await one_job(jobs)
    assert await make_worker(jobs, handler).process(job) is False

    retried, delay = jobs.take(CHECK_BATCH_STATUS)
    assert delay == REQUEUE_DELAY
    assert retried.data == {"batch_id": "b1"}
    assert retried.priority == Priority.HIGH


@pytest.mark.asyncio
async def test_run_drains_queue(jobs):
    done = asyncio.Event()
    seen = []

    async def handler(job):
        seen.append(job.data["batch_id"])
        if len(seen) == 3:
            done.set()

    for i in range(3):
        await jobs.enqueue(CHECK_BATCH_STATUS, {"batch_id": f"b{i}"})

    task = asyncio.create_task(make_worker(jobs, handler).run())
    await asyncio.wait_for(done.wait(), timeout=2)
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    assert sorted(seen) == ["b0", "b1", "b2"]
    assert len(jobs.acked) == 3


@pytest.mark.asyncio
async def test_job_rate_limiter_waits_for_window():
    limiter = JobRateLimiter(2, period=0.2)
    loop = asyncio.get_running_loop()
    start = loop.time()

    await limiter.acquire()
    await limiter.acquire()
    assert loop.time() - start < 0.1
    await limiter.acquire()
    assert loop.time() - start >= 0.15


@pytest.mark.asyncio
async def test_job_rate_limiter_release_returns_the_slot():
    limiter = JobRateLimiter(1, period=60)
    loop = asyncio.get_running_loop()
    start = loop.time()

    await limiter.acquire()
    limiter.release()
    await asyncio.wait_for(limiter.acquire(), timeout=1)
    assert loop.time() - start < 0.5


@pytest.mark.asyncio
async def test_throttled_worker_leaves_jobs_queued(jobs):
    seen = []

    async def handler(job):
        seen.append(job.data["batch_id"])

    for i in range(2):
        await jobs.enqueue(CHECK_BATCH_STATUS, {"batch_id": f"b{i}"})
    worker = QueueWorker(QueueSpec("batch-status-check", 1, 1), jobs, handler, poll_interval=0.01)

    task = asyncio.create_task(worker.run())
    await asyncio.sleep(0.1)
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    # one start per minute: the second job stays on the queue for other workers
    assert seen == ["b0"]
    assert [job.data["batch_id"] for job, _ in jobs.pending] == ["b1"]


def test_selected_specs():
    assert len(selected_specs(Settings(WORKER_QUEUES=""))) == 4
    specs = selected_specs(Settings(WORKER_QUEUES="batch-download"))
    assert [s.name for s in specs] == [BATCH_DOWNLOAD]
    assert specs[0].concurrency == 3
    with pytest.raises(ValueError):
        selected_specs(Settings(WORKER_QUEUES="nope"))


@pytest.mark.asyncio
async def test_scheduler_enqueues_each_repeatable_once(ctx, jobs):
    task = asyncio.create_task(scheduler_loop(ctx))
    await asyncio.sleep(0)
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    assert jobs.names() == [CLEANUP_RATE_LIMITS, HEALTH_CHECK]
    job, _ = jobs.pending[0]
    assert job.priority == Priority.LOW
    assert sorted(jobs.stalled_checks) == sorted(queue_specs(ctx.settings))
