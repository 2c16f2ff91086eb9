# backend/omniverify/workers/runner.py
import asyncio
import logging
import signal

from redis.exceptions import RedisError

from ..config import settings
from ..context import build_context
from ..db import wait_for_db
from ..queues.jobs import CLEANUP_RATE_LIMITS, HEALTH_CHECK, queue_specs
from .handlers import JobHandlers
from .worker import QueueWorker

# Logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
LOG = logging.getLogger("omniverify.runner")


# -------------------------------------------------------------------
# Repeatable jobs
# -------------------------------------------------------------------
async def scheduler_loop(ctx):
    every = {
        CLEANUP_RATE_LIMITS: ctx.settings.CLEANUP_EVERY_SECONDS,
        HEALTH_CHECK: ctx.settings.HEALTH_CHECK_EVERY_SECONDS,
    }
    queues = list(queue_specs(ctx.settings))
    while True:
        for name, seconds in every.items():
            try:
                job_id = await ctx.jobs.schedule_repeatable(name, seconds)
                if job_id:
                    LOG.info("Scheduled repeatable %s id=%s (every %ds)", name, job_id, seconds)
            except RedisError as e:
                LOG.error("Failed to schedule %s: %s", name, e)
        for queue in queues:
            try:
                await ctx.jobs.requeue_stalled(queue)
            except RedisError as e:
                LOG.error("Failed to requeue stalled jobs on %s: %s", queue, e)
        await asyncio.sleep(ctx.settings.SCHEDULER_TICK_SECONDS)


def selected_specs(s):
    specs = queue_specs(s)
    wanted = [q.strip() for q in s.WORKER_QUEUES.split(",") if q.strip()]
    if not wanted:
        return list(specs.values())
    unknown = set(wanted) - set(specs)
    if unknown:
        raise ValueError(f"Unknown queues in WORKER_QUEUES: {sorted(unknown)}")
    return [specs[q] for q in wanted]


# -------------------------------------------------------------------
# Worker process
# -------------------------------------------------------------------
async def run_workers(ctx=None):
    await wait_for_db(max_retries=8, delay=2.0)
    ctx = ctx or build_context()
    handlers = JobHandlers(ctx)

    workers = [
        QueueWorker(spec, ctx.jobs, handlers, poll_interval=ctx.settings.QUEUE_POLL_INTERVAL)
        for spec in selected_specs(ctx.settings)
    ]
    tasks = [asyncio.create_task(w.run()) for w in workers]
    tasks.append(asyncio.create_task(scheduler_loop(ctx)))

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    LOG.info("Workers running: %s", ", ".join(w.spec.name for w in workers))
    try:
        await stop.wait()
        LOG.info("Shutdown signal received")
    finally:
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await ctx.close()
        LOG.info("Workers shutdown")


# -------------------------------------------------------------------
# Flush logs on exit
# -------------------------------------------------------------------
def main():
    LOG.info("Starting omniverify workers")
    try:
        asyncio.run(run_workers())
    except (KeyboardInterrupt, SystemExit):
        LOG.info("Workers received exit signal")
    finally:
        for h in logging.getLogger().handlers:
            h.flush()
        LOG.info("Workers done")


if __name__ == "__main__":
    main()
