"""
Batch / QueueItem transitions, including the compare-and-set used by workers.
"""
from datetime import datetime

import pytest
from sqlalchemy import select

from omniverify.exceptions import IllegalTransitionError
from omniverify.models import Batch, BatchStatus, QueueItem, QueueItemStatus
from omniverify.models.lifecycle import (
    advance_batch,
    can_transition_batch,
    transition_batch,
    transition_item,
)

NOW = datetime(2026, 3, 2, 12, 0, 0)


def make_batch(status=BatchStatus.queued):
    return Batch(id="b" * 32, user_id="u1", request_id="r1", status=status.value)


def make_item(status=QueueItemStatus.queued):
    return QueueItem(contact_id=1, user_id="u1", request_id="r1", status=status.value)


@pytest.mark.parametrize(
    "current, target",
    [
        (BatchStatus.queued, BatchStatus.processing),
        (BatchStatus.processing, BatchStatus.downloading),
        (BatchStatus.downloading, BatchStatus.completed),
        (BatchStatus.processing, BatchStatus.failed),
        (BatchStatus.failed, BatchStatus.queued),
    ],
)
def test_legal_batch_transitions(current, target):
    assert can_transition_batch(current, target)
    batch = transition_batch(make_batch(current), target, NOW)
    assert batch.status == target.value


@pytest.mark.parametrize(
    "current, target",
    [
        (BatchStatus.completed, BatchStatus.processing),
        (BatchStatus.completed, BatchStatus.queued),
        (BatchStatus.queued, BatchStatus.completed),
        (BatchStatus.processing, BatchStatus.queued),
        (BatchStatus.failed, BatchStatus.processing),
    ],
)
def test_illegal_batch_transitions(current, target):
    with pytest.raises(IllegalTransitionError):
        transition_batch(make_batch(current), target, NOW)


def test_completed_ts_only_on_completion():
    batch = transition_batch(make_batch(BatchStatus.queued), BatchStatus.processing, NOW)
    assert batch.completed_ts is None
    assert batch.submitted_ts == NOW

    transition_batch(batch, BatchStatus.downloading, NOW)
    transition_batch(batch, BatchStatus.completed, NOW)
    assert batch.completed_ts == NOW


def test_requeue_clears_submission():
    batch = make_batch(BatchStatus.failed)
    batch.provider_batch_id = "prov-1"
    batch.submitted_ts = NOW
    transition_batch(batch, BatchStatus.queued, NOW)

    assert batch.provider_batch_id is None
    assert batch.submitted_ts is None
    assert batch.completed_ts is None


def test_item_assignment_requires_batch():
    with pytest.raises(IllegalTransitionError):
        transition_item(make_item(), QueueItemStatus.assigned)

    item = transition_item(make_item(), QueueItemStatus.assigned, batch_id="b1", now=NOW)
    assert item.batch_id == "b1"
    assert item.assigned_ts == NOW


def test_item_requeue_releases_batch():
    item = transition_item(make_item(), QueueItemStatus.assigned, batch_id="b1", now=NOW)
    transition_item(item, QueueItemStatus.failed, now=NOW)
    assert item.completed_ts == NOW

    transition_item(item, QueueItemStatus.queued, now=NOW)
    assert item.batch_id is None
    assert item.completed_ts is None


def test_completed_item_is_final():
    item = transition_item(make_item(), QueueItemStatus.assigned, batch_id="b1", now=NOW)
    transition_item(item, QueueItemStatus.completed, now=NOW)
    with pytest.raises(IllegalTransitionError):
        transition_item(item, QueueItemStatus.queued, now=NOW)


@pytest.mark.asyncio
async def test_advance_batch_is_compare_and_set(session_maker):
    async with session_maker() as session:
        session.add(make_batch(BatchStatus.processing))
        await session.commit()

        first = await advance_batch(session, "b" * 32, BatchStatus.processing, BatchStatus.downloading, NOW)
        second = await advance_batch(session, "b" * 32, BatchStatus.processing, BatchStatus.downloading, NOW)
        await session.commit()

        assert first is True
        assert second is False
        status = (await session.execute(select(Batch.status))).scalar_one()
        assert status == BatchStatus.downloading.value


@pytest.mark.asyncio
async def test_advance_batch_rejects_illegal_moves(session_maker):
    async with session_maker() as session:
        with pytest.raises(IllegalTransitionError):
            await advance_batch(session, "x", BatchStatus.completed, BatchStatus.processing)
