# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for the pending-message buffer."""

from __future__ import annotations

import pytest

from relay_dispatch.errors import StoreUnavailableError
from relay_dispatch.models import JobStatus, PendingReason


@pytest.mark.asyncio
async def test_group_consume_in_insertion_order(db, clock):
    """Scenario C: two entries for one key come back together, then nothing."""
    await db.add_pending("instanceA", "+51999888777", "51999888777", "text", "hello")
    clock.advance(5)
    await db.add_pending("instanceA", "+51999888777", "51999888777", "text", "again")

    entries = await db.consume_pending("instanceA", "51999888777")
    assert [e.payload for e in entries] == ["hello", "again"]
    assert all(e.recipient == "+51999888777" for e in entries)
    assert await db.consume_pending("instanceA", "51999888777") == []


@pytest.mark.asyncio
async def test_same_timestamp_ordered_by_id(db):
    for payload in ("a", "b", "c"):
        await db.add_pending("instanceA", "1", "1", "text", payload)
    assert [e.payload for e in await db.consume_pending("instanceA", "1")] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_consume_only_matching_key(db):
    await db.add_pending("instanceA", "1", "1", "text", "a")
    await db.add_pending("instanceA", "2", "2", "text", "b")
    await db.add_pending("instanceB", "1", "1", "text", "c")

    entries = await db.consume_pending("instanceA", "1")
    assert [e.payload for e in entries] == ["a"]
    assert await db.count_pending("instanceA", "2") == 1
    assert await db.count_pending("instanceB", "1") == 1


@pytest.mark.asyncio
async def test_add_pending_does_not_touch_jobs(db):
    entry = await db.add_pending("instanceA", "1", "1", "media", "s3://x", PendingReason.CONTACT_INACTIVE)
    assert entry.reason is PendingReason.CONTACT_INACTIVE
    assert entry.type.value == "media"
    assert (await db.get_queue_stats()).total == 0
    assert await db.list_jobs(status=JobStatus.PENDING) == []


@pytest.mark.asyncio
async def test_default_reason_is_unknown(db):
    entry = await db.add_pending("instanceA", "1", "1", "text", "a")
    assert entry.reason is PendingReason.UNKNOWN


@pytest.mark.asyncio
async def test_summary(db):
    assert (await db.get_pending_summary()).total == 0
    await db.add_pending("instanceA", "1", "1", "text", "a")
    await db.add_pending("instanceA", "2", "2", "text", "b")
    await db.add_pending("instanceB", "1", "1", "text", "c")

    summary = await db.get_pending_summary()
    assert summary.total == 3
    assert summary.per_instance == {"instanceA": 2, "instanceB": 1}
    # read-only
    assert (await db.get_pending_summary()).total == 3


class TestReleaseTransaction:
    """Moving a group into the job queue is all-or-nothing."""

    @pytest.mark.asyncio
    async def test_release_creates_jobs_in_order(self, db, clock):
        for payload in ("m0", "m1", "m2"):
            await db.add_pending("instanceA", "+51999", "51999", "text", payload)
            clock.advance(1)

        job_ids = await db.release_pending("instanceA", "51999", 3)

        jobs = [await db.get_job(job_id) for job_id in job_ids]
        assert [j.payload for j in jobs] == ["m0", "m1", "m2"]
        assert all(j.status is JobStatus.PENDING and j.max_attempts == 3 for j in jobs)
        assert await db.count_pending("instanceA", "51999") == 0

    @pytest.mark.asyncio
    async def test_failed_insert_keeps_every_entry(self, db, monkeypatch):
        for payload in ("m0", "m1", "m2"):
            await db.add_pending("instanceA", "+51999", "51999", "text", payload)
        original = db.jobs.enqueue
        calls = []

        async def second_insert_fails(*args, **kwargs):
            calls.append(args)
            if len(calls) == 2:
                raise StoreUnavailableError("disk I/O error")
            return await original(*args, **kwargs)

        monkeypatch.setattr(db.jobs, "enqueue", second_insert_fails)
        with pytest.raises(StoreUnavailableError):
            await db.release_pending("instanceA", "51999", 3)

        assert await db.count_pending("instanceA", "51999") == 3
        assert await db.list_jobs() == []

        monkeypatch.undo()
        job_ids = await db.release_pending("instanceA", "51999", 3)
        assert [(await db.get_job(i)).payload for i in job_ids] == ["m0", "m1", "m2"]

    @pytest.mark.asyncio
    async def test_invalid_budget_rolls_back(self, db):
        await db.add_pending("instanceA", "1", "1", "text", "a")
        with pytest.raises(ValueError):
            await db.release_pending("instanceA", "1", 0)
        assert await db.count_pending("instanceA", "1") == 1


class TestDivertTransaction:
    @pytest.mark.asyncio
    async def test_divert_completes_and_buffers(self, db):
        await db.enqueue("instanceA", "text", "+51999", "hello", max_attempts=3)
        (job,) = await db.claim_batch(1)

        entry = await db.divert_job(job, "51999", PendingReason.CONTACT_INACTIVE)

        assert entry.payload == "hello"
        stored = await db.get_job(job.id)
        assert stored.status is JobStatus.COMPLETED
        assert stored.attempts == 0

    @pytest.mark.asyncio
    async def test_lost_claim_writes_nothing(self, db, clock):
        await db.enqueue("instanceA", "text", "+51999", "hello", max_attempts=3)
        (job,) = await db.claim_batch(1)
        clock.advance(db.lease_ms)
        await db.reclaim_expired()

        assert await db.divert_job(job, "51999", PendingReason.CONTACT_INACTIVE) is None
        assert (await db.get_job(job.id)).status is JobStatus.PENDING
        assert await db.count_pending("instanceA", "51999") == 0

    @pytest.mark.asyncio
    async def test_buffer_insert_failure_rolls_back_completion(self, db, monkeypatch):
        await db.enqueue("instanceA", "text", "+51999", "hello", max_attempts=3)
        (job,) = await db.claim_batch(1)

        async def broken(*args, **kwargs):
            raise StoreUnavailableError("database is locked")

        monkeypatch.setattr(db.pending, "add_pending", broken)
        with pytest.raises(StoreUnavailableError):
            await db.divert_job(job, "51999", PendingReason.CONTACT_INACTIVE)

        assert (await db.get_job(job.id)).status is JobStatus.PROCESSING
        assert await db.count_pending("instanceA", "51999") == 0
