# backend/omniverify/workers/handlers.py
"""
Job handlers for the four queues.

Backpressure (admission limit, exhausted rate limit, open circuit) re-enqueues
the job with a delay and returns; it never touches ``retry_count``. Real
failures go through ``handle_failure`` which either re-enqueues with backoff or
dead-letters the batch.
"""
import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import select, func, delete

from ..db import safe_commit
from ..exceptions import BatchTimeoutError, CircuitOpenError, ProviderBatchFailedError
from ..models import (
    PROVIDER_BATCH_STATUSES,
    TERMINAL_BATCH_STATUSES,
    Batch,
    BatchStatus,
    Contact,
    QueueItem,
    QueueItemStatus,
    VerificationResult,
)
from ..models.batch import new_batch_id
from ..models.lifecycle import advance_batch, transition_batch, transition_item
from ..queues.jobs import (
    CHECK_BATCH_STATUS,
    CLEANUP_RATE_LIMITS,
    CREATE_BATCH,
    DOWNLOAD_BATCH_RESULTS,
    HEALTH_CHECK,
    RETRY_FAILED_BATCH,
    Job,
    Priority,
)
from ..services.errors import RETRY_POLICIES, ErrorKind, backoff_delay, classify, is_exhausted

LOG = logging.getLogger("omniverify.handlers")

ERROR_MESSAGE_LIMIT = 2000


class JobHandlers:
    def __init__(self, ctx):
        self.ctx = ctx
        self.s = ctx.settings
        self._routes = {
            CREATE_BATCH: self.create_batch,
            RETRY_FAILED_BATCH: self.create_batch,
            CHECK_BATCH_STATUS: self.check_batch_status,
            DOWNLOAD_BATCH_RESULTS: self.download_batch_results,
            CLEANUP_RATE_LIMITS: self.cleanup,
            HEALTH_CHECK: self.health_check,
        }

    async def __call__(self, job: Job):
        handler = self._routes.get(job.name)
        if handler is None:
            raise ValueError(f"No handler for job {job.name!r}")
        await handler(job)

    # ---------------------------------------------------
    # Helpers
    # ---------------------------------------------------
    def _seconds_until(self, when: Optional[datetime]) -> float:
        if when is None:
            return 0.0
        return (when - self.ctx.clock()).total_seconds()

    async def _defer(self, job: Job, delay: float, reason: str):
        delay = max(delay, self.s.MIN_DEFER_SECONDS)
        LOG.info("Deferring %s (%s) for %.1fs: %s", job.name, job.data.get("batch_id") or "new", delay, reason)
        await self.ctx.jobs.enqueue(job.name, job.data, delay=delay, priority=job.priority)

    async def _rate_limited(self, job: Job) -> bool:
        if await self.ctx.rate_limiter.can_call():
            return False
        wait = await self.ctx.rate_limiter.seconds_until_available()
        await self._defer(job, wait, "rate limit exhausted")
        return True

    async def _call_provider(self, fn, *args):
        """Record the call against the shared window, then issue it."""
        async def call():
            await self.ctx.rate_limiter.record()
            return await fn(*args)
        return await self.ctx.breaker.execute(call)

    async def _active_batches(self, exclude: Optional[str] = None) -> int:
        """Batches currently submitted to the provider (processing or downloading)."""
        conds = [Batch.status.in_([s.value for s in PROVIDER_BATCH_STATUSES])]
        if exclude:
            conds.append(Batch.id != exclude)
        async with self.ctx.session_maker() as session:
            q = await session.execute(select(func.count(Batch.id)).where(*conds))
            return int(q.scalar() or 0)

    # ---------------------------------------------------
    # Failure handling
    # ---------------------------------------------------
    async def handle_failure(self, job: Job, batch_id: str, exc: BaseException):
        kind = classify(exc)
        if kind == ErrorKind.CIRCUIT_OPEN:
            await self._defer(job, self._seconds_until(exc.next_attempt_time), "circuit open")
            return

        policy = RETRY_POLICIES[kind]
        now = self.ctx.clock()
        async with self.ctx.session_maker() as session:
            batch = await session.get(Batch, batch_id)
            if batch is None:
                LOG.error("Failure for unknown batch=%s (%s): %s", batch_id, kind.value, exc)
                return
            if BatchStatus(batch.status) in TERMINAL_BATCH_STATUSES:
                LOG.info("Ignoring %s failure for terminal batch=%s", kind.value, batch_id)
                return

            batch.retry_count += 1
            batch.error_message = f"{kind.value}: {exc}"[:ERROR_MESSAGE_LIMIT]
            retry_count = batch.retry_count

            if is_exhausted(kind, retry_count):
                transition_batch(batch, BatchStatus.failed, now=now)
                items = (await session.execute(
                    select(QueueItem).where(
                        QueueItem.batch_id == batch_id,
                        QueueItem.status == QueueItemStatus.assigned.value,
                    )
                )).scalars().all()
                for item in items:
                    transition_item(item, QueueItemStatus.failed, now=now)

                await self.ctx.dead_letters.log(
                    batch_id=batch.id,
                    user_id=batch.user_id,
                    request_id=batch.request_id,
                    error=str(exc) or kind.value,
                    kind=kind,
                    priority=policy.dead_letter_priority,
                    requires_manual_review=policy.requires_manual_review,
                    metadata={
                        "job": job.name,
                        "retry_count": retry_count,
                        "provider_batch_id": batch.provider_batch_id,
                        "queue_items": len(items),
                    },
                    session=session,
                )
                await safe_commit(session)
                LOG.error("Batch %s failed permanently after %d attempt(s) (%s): %s",
                          batch_id, retry_count, kind.value, exc)
                return

            await safe_commit(session)

        if kind == ErrorKind.RATE_LIMIT:
            delay = max(await self.ctx.rate_limiter.seconds_until_available(), policy.base_delay)
        else:
            delay = backoff_delay(kind, retry_count)
        LOG.warning("Batch %s %s attempt %d/%s failed (%s), retrying in %.1fs: %s",
                    batch_id, job.name, retry_count, policy.max_retries, kind.value, delay, exc)
        await self.ctx.jobs.enqueue(job.name, job.data, delay=delay, priority=job.priority)

    # ---------------------------------------------------
    # email-verification: create-batch / retry-failed-batch
    # ---------------------------------------------------
    async def _claim_batch(self, session, data: dict) -> Tuple[Optional[Batch], List[str]]:
        batch = None
        batch_id = data.get("batch_id")
        if batch_id:
            batch = await session.get(Batch, batch_id)
            if batch is None:
                LOG.warning("Batch %s vanished before submission", batch_id)
                return None, []
            if batch.status != BatchStatus.queued.value:
                LOG.info("Batch %s already %s, skipping submission", batch_id, batch.status)
                return None, []

        item_ids = data.get("queue_item_ids") or []
        if item_ids:
            pending = (await session.execute(
                select(QueueItem).where(
                    QueueItem.id.in_(item_ids),
                    QueueItem.status == QueueItemStatus.queued.value,
                )
            )).scalars().all()
            if pending and batch is None:
                batch = Batch(
                    id=new_batch_id(),
                    user_id=data["user_id"],
                    request_id=data["request_id"],
                    status=BatchStatus.queued.value,
                )
                session.add(batch)
                await session.flush()
            for item in pending:
                transition_item(item, QueueItemStatus.assigned, batch_id=batch.id, now=self.ctx.clock())

        if batch is None:
            return None, []

        emails = (await session.execute(
            select(Contact.email)
            .join(QueueItem, QueueItem.contact_id == Contact.id)
            .where(
                QueueItem.batch_id == batch.id,
                QueueItem.status == QueueItemStatus.assigned.value,
            )
            .order_by(QueueItem.id)
        )).scalars().all()
        batch.quantity = len(emails)
        return batch, list(emails)

    async def _mark_submitted(self, batch_id: str, created):
        async with self.ctx.session_maker() as session:
            batch = await session.get(Batch, batch_id)
            transition_batch(batch, BatchStatus.processing, now=self.ctx.clock())
            batch.provider_batch_id = created.provider_batch_id
            batch.quantity = created.quantity
            batch.duplicates = created.duplicates
            batch.error_message = None
            await safe_commit(session)

    async def create_batch(self, job: Job):
        data = job.data
        batch_id = data.get("batch_id")

        active = await self._active_batches(exclude=batch_id)
        if active >= self.s.MAX_CONCURRENT_BATCHES:
            await self._defer(job, self.s.ADMISSION_DEFER_SECONDS,
                              f"{active} active batches (max {self.s.MAX_CONCURRENT_BATCHES})")
            return

        if await self._rate_limited(job):
            return

        async with self.ctx.session_maker() as session:
            batch, emails = await self._claim_batch(session, data)
            if batch is None:
                await session.rollback()
                return
            if not emails:
                LOG.warning("Batch %s has no assigned emails, nothing to submit", batch.id)
                await session.rollback()
                return
            batch_id = batch.id
            await safe_commit(session)

        if data.get("batch_id") != batch_id:
            # later attempts of this job must reuse the same batch row
            job.data = data = {**data, "batch_id": batch_id}

        composition = self.ctx.composer.optimize(emails)
        LOG.info("Submitting batch=%s emails=%d domains=%d strategy=%s metrics=%s",
                 batch_id, len(emails), composition.domain_count, composition.strategy,
                 composition.metrics.as_dict())

        try:
            created = await self._call_provider(self.ctx.client.create_batch, composition.emails)
        except CircuitOpenError as e:
            await self._defer(job, self._seconds_until(e.next_attempt_time), "circuit open")
            return
        except Exception as e:
            await self.handle_failure(job, batch_id, e)
            return

        try:
            await self._mark_submitted(batch_id, created)
        except Exception as e:
            LOG.error("Batch %s accepted as provider batch %s but could not be saved: %s",
                      batch_id, created.provider_batch_id, e)
            await self.handle_failure(job, batch_id, e)
            return

        await self.ctx.jobs.enqueue(
            CHECK_BATCH_STATUS,
            {"batch_id": batch_id},
            delay=self.s.STATUS_CHECK_INITIAL_DELAY,
            priority=Priority.HIGH,
        )
        LOG.info("Batch %s submitted as provider batch %s", batch_id, created.provider_batch_id)

    # ---------------------------------------------------
    # batch-status-check
    # ---------------------------------------------------
    async def check_batch_status(self, job: Job):
        batch_id = job.data["batch_id"]
        async with self.ctx.session_maker() as session:
            batch = await session.get(Batch, batch_id)
        if batch is None:
            LOG.warning("Status check for unknown batch=%s", batch_id)
            return
        if batch.status != BatchStatus.processing.value:
            LOG.debug("Status check skipped, batch=%s is %s", batch_id, batch.status)
            return

        if await self._rate_limited(job):
            return

        try:
            report = await self._call_provider(self.ctx.client.get_status, batch.provider_batch_id)
        except CircuitOpenError as e:
            await self._defer(job, self._seconds_until(e.next_attempt_time), "circuit open")
            return
        except Exception as e:
            await self.handle_failure(job, batch_id, e)
            return

        if report.status == "completed":
            async with self.ctx.session_maker() as session:
                advanced = await advance_batch(
                    session, batch_id, BatchStatus.processing, BatchStatus.downloading, now=self.ctx.clock()
                )
                await safe_commit(session)
            if not advanced:
                LOG.info("Batch %s already advanced by another status check", batch_id)
                return
            await self.ctx.jobs.enqueue(
                DOWNLOAD_BATCH_RESULTS, {"batch_id": batch_id}, priority=Priority.CRITICAL
            )
            LOG.info("Batch %s completed at provider, download scheduled", batch_id)
            return

        if report.status == "failed":
            await self.handle_failure(
                job, batch_id, ProviderBatchFailedError(batch.provider_batch_id, report.error)
            )
            return

        elapsed = (self.ctx.clock() - (batch.submitted_ts or batch.created_ts)).total_seconds()
        if elapsed > self.s.BATCH_TIMEOUT_SECONDS:
            await self.handle_failure(
                job, batch_id, BatchTimeoutError(batch_id, elapsed, self.s.BATCH_TIMEOUT_SECONDS)
            )
            return

        if report.status in ("queued", "processing"):
            LOG.debug("Batch %s still %s progress=%s", batch_id, report.status, report.progress)
            delay = self.s.STATUS_CHECK_INTERVAL
        else:
            LOG.warning("Batch %s returned unknown provider status %r, re-checking later",
                        batch_id, report.raw_status)
            delay = self.s.STATUS_UNKNOWN_INTERVAL
        await self.ctx.jobs.enqueue(job.name, job.data, delay=delay, priority=job.priority)

    # ---------------------------------------------------
    # batch-download
    # ---------------------------------------------------
    async def download_batch_results(self, job: Job):
        batch_id = job.data["batch_id"]
        async with self.ctx.session_maker() as session:
            batch = await session.get(Batch, batch_id)
        if batch is None:
            LOG.warning("Download for unknown batch=%s", batch_id)
            return
        if batch.status != BatchStatus.downloading.value:
            LOG.debug("Download skipped, batch=%s is %s", batch_id, batch.status)
            return

        if await self._rate_limited(job):
            return

        try:
            results = await self._call_provider(self.ctx.client.download_results, batch.provider_batch_id)
        except CircuitOpenError as e:
            await self._defer(job, self._seconds_until(e.next_attempt_time), "circuit open")
            return
        except Exception as e:
            await self.handle_failure(job, batch_id, e)
            return

        try:
            outcome = await self._store_results(batch_id, results)
        except Exception as e:
            LOG.error("Batch %s results could not be saved: %s", batch_id, e)
            await self.handle_failure(job, batch_id, e)
            return
        if outcome is None:
            LOG.info("Batch %s already completed by another download", batch_id)
            return

        stored, items = outcome
        LOG.info("Batch %s completed: stored %d/%d results for %d queue items",
                 batch_id, stored, len(results), items)

    async def _store_results(self, batch_id: str, results) -> Optional[Tuple[int, int]]:
        """
        Complete the batch and write its results in one transaction.

        Returns ``None`` when another download already completed it, otherwise
        ``(results stored, queue items completed)``. On any exception nothing is
        committed and the batch stays ``downloading``.
        """
        now = self.ctx.clock()
        async with self.ctx.session_maker() as session:
            completed = await advance_batch(
                session, batch_id, BatchStatus.downloading, BatchStatus.completed, now=now
            )
            if not completed:
                await session.rollback()
                return None

            rows = (await session.execute(
                select(QueueItem, Contact)
                .join(Contact, Contact.id == QueueItem.contact_id)
                .where(
                    QueueItem.batch_id == batch_id,
                    QueueItem.status == QueueItemStatus.assigned.value,
                )
            )).all()
            by_email = {contact.email: (item, contact) for item, contact in rows}

            await session.execute(delete(VerificationResult).where(VerificationResult.batch_id == batch_id))
            stored = 0
            seen = set()
            for result in results:
                pair = by_email.get(result.email)
                if pair is None:
                    LOG.debug("Batch %s result for unexpected email %s ignored", batch_id, result.email)
                    continue
                if result.email in seen:
                    # one row per (batch, contact); the first report wins
                    LOG.debug("Batch %s duplicate result for %s ignored", batch_id, result.email)
                    continue
                seen.add(result.email)
                item, contact = pair
                session.add(VerificationResult(
                    batch_id=batch_id,
                    contact_id=contact.id,
                    status=result.status,
                    reason=result.reason,
                    score=result.score,
                    toxic=result.toxic,
                    toxicity=result.toxicity,
                    provider=result.provider,
                    domain_info=result.domain_info,
                    account_info=result.account_info,
                    dns_info=result.dns_info,
                    processed_ts=now,
                ))
                contact.latest_status = result.status
                contact.latest_reason = result.reason
                contact.latest_score = result.score
                contact.latest_batch_id = batch_id
                contact.verified_ts = now
                stored += 1

            for item, _ in rows:
                transition_item(item, QueueItemStatus.completed, now=now)

            await safe_commit(session)
        return stored, len(rows)

    # ---------------------------------------------------
    # cleanup-tasks
    # ---------------------------------------------------
    async def cleanup(self, job: Job):
        removed_limits = await self.ctx.rate_limiter.cleanup(self.s.RATE_LIMIT_RETENTION_SECONDS)
        removed = await self.ctx.health.cleanup(
            metrics_retention_days=self.s.HEALTH_METRICS_RETENTION_DAYS,
            completed_batch_retention_days=self.s.COMPLETED_BATCH_RETENTION_DAYS,
        )
        removed_letters = await self.ctx.dead_letters.cleanup(
            days_to_keep=self.s.DEAD_LETTER_RETENTION_DAYS, reviewed_only=True
        )
        LOG.info("Cleanup done: rate_limits=%d metrics=%d batches=%d dead_letters=%d",
                 removed_limits, removed["health_metrics"], removed["completed_batches"], removed_letters)

    async def health_check(self, job: Job):
        snap = await self.ctx.health.record()
        if snap["status"] != "healthy":
            LOG.warning("Pipeline health is %s: circuit=%s database=%s redis=%s",
                        snap["status"], snap["circuit_breaker"]["state"], snap["database"], snap["redis"])
