# backend/omniverify/services/dead_letters.py
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, func, update, delete, and_, case
from sqlalchemy.exc import SQLAlchemyError

from ..db import utcnow
from ..exceptions import DeadLetterRetryError, IllegalTransitionError
from ..models import Batch, BatchStatus, QueueItem, QueueItemStatus, DeadLetterEntry
from ..models.lifecycle import transition_batch, transition_item
from ..queues.jobs import RETRY_FAILED_BATCH, Priority

logger = logging.getLogger("omniverify.dead_letters")

CLEANUP_CHUNK = 1000


@dataclass
class DeadLetterPage:
    items: List[DeadLetterEntry]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


@dataclass
class RetryOutcome:
    total_requested: int = 0
    successful: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    job_ids: List[str] = field(default_factory=list)


class DeadLetterStore:
    """
    Durable record of batches that exhausted retries or failed permanently.

    ``retry`` runs one transaction per entry: a bad entry is reported in the
    outcome and never rolls back the others.
    """

    def __init__(
        self,
        session_maker,
        jobs=None,
        max_retry_count: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_maker = session_maker
        self._jobs = jobs
        self.max_retry_count = max_retry_count
        self._clock = clock

    # ---------------------------------------------------
    # Write
    # ---------------------------------------------------
    async def log(
        self,
        batch_id: str,
        user_id: str,
        request_id: str,
        error: str,
        kind: Optional[str] = None,
        priority: str = "medium",
        requires_manual_review: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
        session=None,
    ) -> DeadLetterEntry:
        """Add an entry. With ``session`` the caller owns the commit."""
        if not (batch_id and user_id and request_id and error):
            raise ValueError("batch_id, user_id, request_id and error are required")

        entry = DeadLetterEntry(
            batch_id=batch_id,
            user_id=user_id,
            request_id=request_id,
            error_message=str(error),
            error_kind=getattr(kind, "value", kind),
            priority=priority,
            requires_manual_review=requires_manual_review,
            meta=metadata,
            failed_ts=self._clock(),
            reviewed=False,
        )
        if session is not None:
            session.add(entry)
        else:
            async with self._session_maker() as own:
                own.add(entry)
                await own.commit()

        logger.warning("Dead-lettered batch=%s user=%s kind=%s priority=%s: %s",
                       batch_id, user_id, entry.error_kind, priority, error)
        return entry

    # ---------------------------------------------------
    # Read
    # ---------------------------------------------------
    def _filters(self, user_id=None, reviewed_only=False, unreviewed_only=False,
                 from_date=None, to_date=None):
        conds = []
        if user_id:
            conds.append(DeadLetterEntry.user_id == user_id)
        if reviewed_only:
            conds.append(DeadLetterEntry.reviewed.is_(True))
        elif unreviewed_only:
            conds.append(DeadLetterEntry.reviewed.is_(False))
        if from_date:
            conds.append(DeadLetterEntry.failed_ts >= from_date)
        if to_date:
            conds.append(DeadLetterEntry.failed_ts <= to_date)
        return conds

    async def list(
        self,
        user_id: Optional[str] = None,
        reviewed_only: bool = False,
        unreviewed_only: bool = False,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> DeadLetterPage:
        conds = self._filters(user_id, reviewed_only, unreviewed_only, from_date, to_date)
        async with self._session_maker() as session:
            total = (await session.execute(
                select(func.count(DeadLetterEntry.id)).where(*conds)
            )).scalar() or 0
            rows = (await session.execute(
                select(DeadLetterEntry)
                .where(*conds)
                .order_by(DeadLetterEntry.failed_ts.desc(), DeadLetterEntry.id.desc())
                .limit(limit)
                .offset(offset)
            )).scalars().all()
        return DeadLetterPage(items=list(rows), total=int(total), limit=limit, offset=offset)

    async def unreviewed_count(self) -> int:
        async with self._session_maker() as session:
            q = await session.execute(
                select(func.count(DeadLetterEntry.id)).where(DeadLetterEntry.reviewed.is_(False))
            )
            return int(q.scalar() or 0)

    # ---------------------------------------------------
    # Retry / review
    # ---------------------------------------------------
    async def retry(
        self,
        ids: List[int],
        user_id: Optional[str] = None,
        mark_reviewed: bool = True,
    ) -> RetryOutcome:
        outcome = RetryOutcome(total_requested=len(ids))
        for dead_letter_id in ids:
            try:
                payload = await self._retry_one(dead_letter_id, user_id, mark_reviewed)
            except (DeadLetterRetryError, IllegalTransitionError) as e:
                outcome.failed += 1
                outcome.errors.append({"id": dead_letter_id, "error": str(e)})
                logger.warning("Dead letter retry rejected id=%s: %s", dead_letter_id, e)
                continue
            except SQLAlchemyError as e:
                outcome.failed += 1
                outcome.errors.append({"id": dead_letter_id, "error": str(e)})
                logger.exception("Dead letter retry failed id=%s", dead_letter_id)
                continue

            outcome.successful += 1
            if self._jobs is not None:
                job_id = await self._jobs.enqueue(RETRY_FAILED_BATCH, payload, priority=Priority.HIGH)
                outcome.job_ids.append(job_id)

        logger.info("Dead letter retry requested=%d successful=%d failed=%d",
                    outcome.total_requested, outcome.successful, outcome.failed)
        return outcome

    async def _retry_one(self, dead_letter_id: int, user_id: Optional[str], mark_reviewed: bool) -> dict:
        now = self._clock()
        async with self._session_maker() as session:
            entry = await session.get(DeadLetterEntry, dead_letter_id)
            if entry is None:
                raise DeadLetterRetryError(dead_letter_id, "dead letter entry not found")
            if user_id and entry.user_id != user_id:
                raise DeadLetterRetryError(dead_letter_id, "entry belongs to another user")

            batch = await session.get(Batch, entry.batch_id)
            if batch is None:
                raise DeadLetterRetryError(dead_letter_id, f"batch {entry.batch_id} no longer exists")
            if batch.retry_count >= self.max_retry_count:
                raise DeadLetterRetryError(
                    dead_letter_id,
                    f"batch {batch.id} reached retry ceiling ({batch.retry_count}/{self.max_retry_count})",
                )

            # retry_count stays cumulative: a replay only gets what is left of the
            # failure kind's budget, often one attempt, until the ceiling blocks it
            transition_batch(batch, BatchStatus.queued, now=now)
            batch.retry_count += 1
            batch.error_message = None

            items = (await session.execute(
                select(QueueItem).where(
                    QueueItem.batch_id == batch.id,
                    QueueItem.status.in_([QueueItemStatus.failed.value, QueueItemStatus.assigned.value]),
                )
            )).scalars().all()
            item_ids = []
            for item in items:
                item_ids.append(item.id)
                transition_item(item, QueueItemStatus.queued, now=now)

            if mark_reviewed:
                entry.reviewed = True
                entry.reviewed_ts = now

            await session.commit()

        return {
            "batch_id": batch.id,
            "user_id": batch.user_id,
            "request_id": batch.request_id,
            "queue_item_ids": item_ids,
        }

    async def mark_reviewed(self, ids: List[int]) -> int:
        if not ids:
            return 0
        async with self._session_maker() as session:
            res = await session.execute(
                update(DeadLetterEntry)
                .where(DeadLetterEntry.id.in_(ids))
                .values(reviewed=True, reviewed_ts=self._clock())
            )
            await session.commit()
        return res.rowcount or 0

    # ---------------------------------------------------
    # Housekeeping
    # ---------------------------------------------------
    async def cleanup(self, days_to_keep: int = 90, reviewed_only: bool = True) -> int:
        cutoff = self._clock() - timedelta(days=days_to_keep)
        conds = [DeadLetterEntry.failed_ts < cutoff]
        if reviewed_only:
            conds.append(DeadLetterEntry.reviewed.is_(True))

        deleted = 0
        async with self._session_maker() as session:
            while True:
                ids = (await session.execute(
                    select(DeadLetterEntry.id).where(and_(*conds)).limit(CLEANUP_CHUNK)
                )).scalars().all()
                if not ids:
                    break
                await session.execute(delete(DeadLetterEntry).where(DeadLetterEntry.id.in_(ids)))
                await session.commit()
                deleted += len(ids)
                if len(ids) < CLEANUP_CHUNK:
                    break

        logger.info("Dead letter cleanup removed %d entries older than %d days (reviewed_only=%s)",
                    deleted, days_to_keep, reviewed_only)
        return deleted

    # ---------------------------------------------------
    # Triage
    # ---------------------------------------------------
    async def statistics(self, days: int = 30, user_id: Optional[str] = None) -> dict:
        now = self._clock()
        conds = [DeadLetterEntry.failed_ts >= now - timedelta(days=days)]
        if user_id:
            conds.append(DeadLetterEntry.user_id == user_id)

        async with self._session_maker() as session:
            total, reviewed = (await session.execute(
                select(
                    func.count(DeadLetterEntry.id),
                    func.coalesce(func.sum(case((DeadLetterEntry.reviewed.is_(True), 1), else_=0)), 0),
                ).where(*conds)
            )).one()

            day = func.date(DeadLetterEntry.failed_ts)
            by_day = (await session.execute(
                select(day.label("day"), func.count(DeadLetterEntry.id))
                .where(*conds)
                .group_by(day)
                .order_by(day.desc())
                .limit(7)
            )).all()

            prefix = func.substr(DeadLetterEntry.error_message, 1, 100)
            top_errors = (await session.execute(
                select(prefix.label("prefix"), func.count(DeadLetterEntry.id).label("n"))
                .where(*conds)
                .group_by(prefix)
                .order_by(func.count(DeadLetterEntry.id).desc())
                .limit(10)
            )).all()

            by_user = (await session.execute(
                select(DeadLetterEntry.user_id, func.count(DeadLetterEntry.id).label("n"))
                .where(*conds)
                .group_by(DeadLetterEntry.user_id)
                .order_by(func.count(DeadLetterEntry.id).desc())
            )).all()

        total = int(total or 0)
        reviewed = int(reviewed or 0)
        return {
            "period_days": days,
            "total": total,
            "reviewed": reviewed,
            "unreviewed": total - reviewed,
            "by_day": [{"date": str(d), "count": int(n)} for d, n in by_day],
            "top_errors": [{"message": p, "count": int(n)} for p, n in top_errors],
            "by_user": [{"user_id": u, "count": int(n)} for u, n in by_user],
        }

    async def health(self) -> dict:
        now = self._clock()
        async with self._session_maker() as session:
            recent = (await session.execute(
                select(func.count(DeadLetterEntry.id)).where(
                    DeadLetterEntry.failed_ts >= now - timedelta(hours=24)
                )
            )).scalar() or 0
        unreviewed = await self.unreviewed_count()

        score = 100
        issues = []
        if recent > 100:
            score -= 30
            issues.append(f"High failure rate: {recent} dead letters in 24h")
        elif recent > 50:
            score -= 15
            issues.append(f"Elevated failure rate: {recent} dead letters in 24h")
        if unreviewed > 1000:
            score -= 40
            issues.append(f"Review backlog: {unreviewed} unreviewed dead letters")
        elif unreviewed > 500:
            score -= 20
            issues.append(f"Growing review backlog: {unreviewed} unreviewed dead letters")

        status = "critical" if score < 50 else "warning" if score < 75 else "healthy"
        return {
            "score": score,
            "status": status,
            "failures_24h": int(recent),
            "unreviewed": unreviewed,
            "issues": issues,
        }
