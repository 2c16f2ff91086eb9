# backend/omniverify/pipeline.py
"""
Upstream boundary of the verification pipeline.

``submit`` turns a raw email list into QueueItems plus staggered create-batch
jobs; ``health`` exposes the aggregate state for an ops surface.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select

from .db import safe_commit
from .models import Contact, QueueItem, QueueItemStatus
from .queues.jobs import CREATE_BATCH, EMAIL_VERIFICATION, Priority
from .services.batch_composer import domain_hash, extract_domain
from .utils.helpers import chunk_list, dedupe, is_valid_syntax, normalize_email

logger = logging.getLogger("omniverify.pipeline")

LOOKUP_CHUNK = 1000


@dataclass
class SubmissionReceipt:
    job_ids: List[str] = field(default_factory=list)
    batch_count: int = 0
    total_emails: int = 0
    rejected: int = 0
    duplicates: int = 0
    estimated_processing_seconds: int = 0


class Pipeline:
    def __init__(self, ctx):
        self.ctx = ctx

    async def _upsert_contacts(self, session, emails: List[str]) -> Dict[str, Contact]:
        contacts: Dict[str, Contact] = {}
        for chunk in chunk_list(emails, LOOKUP_CHUNK):
            q = await session.execute(select(Contact).where(Contact.email.in_(chunk)))
            for c in q.scalars().all():
                contacts[c.email] = c

        missing = [e for e in emails if e not in contacts]
        for e in missing:
            contacts[e] = Contact(email=e, domain=extract_domain(e) or None)
        session.add_all(contacts[e] for e in missing)
        await session.flush()
        return contacts

    async def submit(
        self,
        emails: Iterable[str],
        user_id: str,
        request_id: str,
        priority: int = Priority.NORMAL,
        batch_size: Optional[int] = None,
    ) -> SubmissionReceipt:
        s = self.ctx.settings
        batch_size = batch_size or s.BATCH_SIZE
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")

        raw = [normalize_email(e) for e in emails]
        valid = [e for e in raw if is_valid_syntax(e)]
        unique = dedupe(valid)
        receipt = SubmissionReceipt(
            total_emails=len(unique),
            rejected=len(raw) - len(valid),
            duplicates=len(valid) - len(unique),
        )
        if not unique:
            logger.warning("Submission user=%s request=%s had no valid emails", user_id, request_id)
            return receipt

        async with self.ctx.session_maker() as session:
            contacts = await self._upsert_contacts(session, unique)
            items = [
                QueueItem(
                    contact_id=contacts[e].id,
                    user_id=user_id,
                    request_id=request_id,
                    status=QueueItemStatus.queued.value,
                    priority=priority,
                    domain_hash=domain_hash(extract_domain(e)),
                )
                for e in unique
            ]
            session.add_all(items)
            await session.flush()
            item_ids = [item.id for item in items]
            await safe_commit(session)

        ahead = await self.ctx.jobs.pending_count(EMAIL_VERIFICATION)
        for index, chunk in enumerate(chunk_list(item_ids, batch_size)):
            job_id = await self.ctx.jobs.enqueue(
                CREATE_BATCH,
                {
                    "user_id": user_id,
                    "request_id": request_id,
                    "queue_item_ids": list(chunk),
                },
                delay=index * s.SUBMIT_STAGGER_SECONDS,
                priority=priority,
            )
            receipt.job_ids.append(job_id)

        receipt.batch_count = len(receipt.job_ids)
        receipt.estimated_processing_seconds = (ahead + receipt.batch_count) * s.SECONDS_PER_QUEUED_BATCH
        logger.info(
            "Submitted user=%s request=%s emails=%d batches=%d rejected=%d duplicates=%d eta=%ds",
            user_id, request_id, receipt.total_emails, receipt.batch_count,
            receipt.rejected, receipt.duplicates, receipt.estimated_processing_seconds,
        )
        return receipt

    async def health(self) -> dict:
        return await self.ctx.health.snapshot()
