"""
Batch and QueueItem lifecycle.

Every status write goes through ``transition_batch`` / ``transition_item`` so
illegal moves (``completed -> processing`` and friends) raise
``IllegalTransitionError`` instead of being silently persisted.

    Batch:      queued -> processing -> downloading -> completed
                   \\___________\\______________\\____-> failed -> queued (retry)

    QueueItem:  queued -> assigned -> completed
                   \\_________\\_____-> failed -> queued (retry)
                assigned -> queued  (released before submission)
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import update

from omniverify.db import utcnow
from omniverify.exceptions import IllegalTransitionError
from .batch import Batch, BatchStatus, QueueItem, QueueItemStatus


BATCH_TRANSITIONS = {
    BatchStatus.queued: {BatchStatus.processing, BatchStatus.failed},
    BatchStatus.processing: {BatchStatus.downloading, BatchStatus.failed},
    BatchStatus.downloading: {BatchStatus.completed, BatchStatus.failed},
    BatchStatus.failed: {BatchStatus.queued},
    BatchStatus.completed: set(),
}

QUEUE_ITEM_TRANSITIONS = {
    QueueItemStatus.queued: {QueueItemStatus.assigned, QueueItemStatus.failed},
    QueueItemStatus.assigned: {
        QueueItemStatus.completed,
        QueueItemStatus.failed,
        QueueItemStatus.queued,
    },
    QueueItemStatus.failed: {QueueItemStatus.queued},
    QueueItemStatus.completed: set(),
}


def can_transition_batch(current, target) -> bool:
    return BatchStatus(target) in BATCH_TRANSITIONS[BatchStatus(current)]


def transition_batch(batch: Batch, target: BatchStatus, now: Optional[datetime] = None) -> Batch:
    current = BatchStatus(batch.status)
    target = BatchStatus(target)
    if target not in BATCH_TRANSITIONS[current]:
        raise IllegalTransitionError("batch", current, target)

    now = now or utcnow()
    batch.status = target.value
    batch.updated_ts = now
    # completed_ts is set iff the batch is completed
    batch.completed_ts = now if target == BatchStatus.completed else None
    if target == BatchStatus.queued:
        batch.submitted_ts = None
        batch.provider_batch_id = None
    elif target == BatchStatus.processing:
        batch.submitted_ts = now
    return batch


async def advance_batch(session, batch_id: str, expected: BatchStatus, target: BatchStatus,
                        now: Optional[datetime] = None, **values) -> bool:
    """
    Compare-and-set ``expected -> target`` as one UPDATE.

    Returns False when another job moved the batch first, so concurrent
    status checks or downloads cannot both advance it.
    """
    if not can_transition_batch(expected, target):
        raise IllegalTransitionError("batch", expected, target)
    now = now or utcnow()
    values.update(
        status=BatchStatus(target).value,
        updated_ts=now,
        completed_ts=now if BatchStatus(target) == BatchStatus.completed else None,
    )
    res = await session.execute(
        update(Batch)
        .where(Batch.id == batch_id, Batch.status == BatchStatus(expected).value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return (res.rowcount or 0) == 1


def transition_item(
    item: QueueItem,
    target: QueueItemStatus,
    batch_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> QueueItem:
    current = QueueItemStatus(item.status)
    target = QueueItemStatus(target)
    if target not in QUEUE_ITEM_TRANSITIONS[current]:
        raise IllegalTransitionError("queue item", current, target)

    now = now or utcnow()
    if target == QueueItemStatus.assigned:
        if not batch_id:
            raise IllegalTransitionError("queue item", current, target)
        item.batch_id = batch_id
        item.assigned_ts = now
    elif target == QueueItemStatus.queued:
        item.batch_id = None
        item.assigned_ts = None
        item.completed_ts = None
    else:
        item.completed_ts = now
    item.status = target.value
    return item
