"""
Dead-letter store: logging, triage queries, isolated retry and retention.
"""
import pytest
from sqlalchemy import delete, select

from omniverify.exceptions import BouncerApiError
from omniverify.models import Batch, BatchStatus, Contact, DeadLetterEntry, QueueItem, QueueItemStatus
from omniverify.queues.jobs import RETRY_FAILED_BATCH, Priority

from .test_pipeline import run_next


async def dead_lettered(ctx, batch_id, user_id="u1", retry_count=1, error="Bouncer API error: 400 bad"):
    async with ctx.session_maker() as session:
        contact = Contact(email=f"{batch_id}@x.com", domain="x.com")
        session.add(contact)
        await session.flush()
        session.add(Batch(id=batch_id, user_id=user_id, request_id="r1",
                          status=BatchStatus.failed.value, retry_count=retry_count,
                          provider_batch_id=f"prov-{batch_id}", error_message=error))
        session.add(QueueItem(contact_id=contact.id, user_id=user_id, request_id="r1",
                              batch_id=batch_id, status=QueueItemStatus.failed.value))
        await session.commit()
    return await ctx.dead_letters.log(batch_id, user_id, "r1", error, kind="PERMANENT_FAILURE")


@pytest.mark.asyncio
async def test_log_requires_fields(ctx):
    with pytest.raises(ValueError):
        await ctx.dead_letters.log("b1", "u1", "r1", "")


@pytest.mark.asyncio
async def test_retry_isolates_bad_entries(ctx, jobs, session_maker):
    store = ctx.dead_letters
    first = await dead_lettered(ctx, "b1")
    second = await dead_lettered(ctx, "b2")
    third = await dead_lettered(ctx, "b3")
    async with session_maker() as session:
        await session.execute(delete(Batch).where(Batch.id == "b2"))
        await session.commit()

    outcome = await store.retry([first.id, second.id, third.id])

    assert outcome.total_requested == 3
    assert outcome.successful == 2
    assert outcome.failed == 1
    assert outcome.errors[0]["id"] == second.id
    assert "no longer exists" in outcome.errors[0]["error"]

    assert jobs.names() == [RETRY_FAILED_BATCH, RETRY_FAILED_BATCH]
    job, _ = jobs.pending[0]
    assert job.priority == Priority.HIGH
    assert job.data["batch_id"] == "b1"
    assert len(job.data["queue_item_ids"]) == 1

    async with session_maker() as session:
        b1 = await session.get(Batch, "b1")
        items = (await session.execute(select(QueueItem).where(QueueItem.user_id == "u1"))).scalars().all()
    assert b1.status == BatchStatus.queued.value
    assert b1.retry_count == 2
    assert b1.provider_batch_id is None
    requeued = [i for i in items if i.status == QueueItemStatus.queued.value]
    assert len(requeued) == 2
    assert all(i.batch_id is None for i in requeued)

    assert (await store.list(reviewed_only=True)).total == 2


@pytest.mark.asyncio
async def test_retry_job_resubmits_batch(ctx, handlers, jobs, bouncer, session_maker):
    entry = await dead_lettered(ctx, "b1")
    await ctx.dead_letters.retry([entry.id])

    await run_next(handlers, jobs, RETRY_FAILED_BATCH)

    assert bouncer.create_calls == 1
    assert bouncer.batches["prov-1"] == ["b1@x.com"]
    async with session_maker() as session:
        batch = await session.get(Batch, "b1")
        item = (await session.execute(select(QueueItem))).scalar_one()
    assert batch.status == BatchStatus.processing.value
    assert item.status == QueueItemStatus.assigned.value
    assert item.batch_id == "b1"


@pytest.mark.asyncio
async def test_replayed_batch_keeps_its_spent_budget(ctx, handlers, jobs, bouncer, session_maker):
    entry = await dead_lettered(ctx, "b1", retry_count=5, error="Bouncer API error: 503 Service Unavailable")
    await ctx.dead_letters.retry([entry.id])
    bouncer.create_error = BouncerApiError(503, "Service Unavailable")

    await run_next(handlers, jobs, RETRY_FAILED_BATCH)

    # five API errors were already spent, so the replay gets a single attempt
    assert bouncer.create_calls == 1
    assert jobs.pending == []
    async with session_maker() as session:
        batch = await session.get(Batch, "b1")
        letters = (await session.execute(select(DeadLetterEntry).order_by(DeadLetterEntry.id))).scalars().all()
    assert batch.status == BatchStatus.failed.value
    assert batch.retry_count == 7
    assert len(letters) == 2
    assert letters[-1].meta["retry_count"] == 7

    # still under the ceiling of 10, so it can be replayed again
    outcome = await ctx.dead_letters.retry([letters[-1].id])
    assert outcome.successful == 1


@pytest.mark.asyncio
async def test_retry_ceiling_and_ownership(ctx, jobs):
    capped = await dead_lettered(ctx, "b1", retry_count=10)
    other = await dead_lettered(ctx, "b2", user_id="u2")

    outcome = await ctx.dead_letters.retry([other.id, 999], user_id="u1")

    assert outcome.successful == 0
    assert outcome.failed == 2
    messages = " ".join(e["error"] for e in outcome.errors)
    assert "belongs to another user" in messages
    assert "not found" in messages
    assert jobs.pending == []

    outcome = await ctx.dead_letters.retry([capped.id])
    assert outcome.failed == 1
    assert "retry ceiling" in outcome.errors[0]["error"]


@pytest.mark.asyncio
async def test_list_filters_and_pagination(ctx, clock):
    store = ctx.dead_letters
    entries = []
    for i, user in enumerate(("u1", "u1", "u2")):
        entries.append(await dead_lettered(ctx, f"b{i}", user_id=user))
        clock.advance(60)

    page = await store.list(limit=2)
    assert page.total == 3
    assert [e.id for e in page.items] == [entries[2].id, entries[1].id]
    assert page.has_more

    assert (await store.list(limit=2, offset=2)).has_more is False
    assert (await store.list(user_id="u2")).total == 1
    assert (await store.list(from_date=entries[1].failed_ts)).total == 2

    assert await store.mark_reviewed([entries[0].id]) == 1
    assert (await store.list(reviewed_only=True)).total == 1
    assert (await store.list(unreviewed_only=True)).total == 2
    assert await store.unreviewed_count() == 2


@pytest.mark.asyncio
async def test_statistics(ctx):
    store = ctx.dead_letters
    a = await dead_lettered(ctx, "b1", error="Bouncer API error: 402 Payment Required")
    await dead_lettered(ctx, "b2", error="Bouncer API error: 402 Payment Required")
    await dead_lettered(ctx, "b3", user_id="u2", error="Provider batch prov-b3 failed")
    await store.mark_reviewed([a.id])

    stats = await store.statistics(days=30)

    assert stats["total"] == 3
    assert stats["reviewed"] == 1
    assert stats["unreviewed"] == 2
    assert stats["by_day"] == [{"date": "2026-03-02", "count": 3}]
    assert stats["top_errors"][0] == {"message": "Bouncer API error: 402 Payment Required", "count": 2}
    assert stats["by_user"][0] == {"user_id": "u1", "count": 2}
    assert (await store.statistics(user_id="u2"))["total"] == 1


@pytest.mark.asyncio
async def test_cleanup_keeps_unreviewed_by_default(ctx, clock):
    store = ctx.dead_letters
    reviewed = await dead_lettered(ctx, "b1")
    await dead_lettered(ctx, "b2")
    await store.mark_reviewed([reviewed.id])

    assert await store.cleanup(days_to_keep=90) == 0
    clock.advance(91 * 24 * 3600)
    assert await store.cleanup(days_to_keep=90) == 1
    assert await store.cleanup(days_to_keep=90, reviewed_only=False) == 1
    assert (await store.list()).total == 0


@pytest.mark.asyncio
async def test_health(ctx):
    await dead_lettered(ctx, "b1")
    health = await ctx.dead_letters.health()
    assert health == {
        "score": 100,
        "status": "healthy",
        "failures_24h": 1,
        "unreviewed": 1,
        "issues": [],
    }
