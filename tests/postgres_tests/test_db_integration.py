# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Database integration tests using testcontainers PostgreSQL.

These tests exercise what SQLite cannot show: row locks, ``SKIP LOCKED``
claims and concurrent transactions from several connection pools.
"""

import asyncio
from itertools import chain

import pytest

from relay_dispatch.errors import StoreUnavailableError
from relay_dispatch.models import JobStatus, PendingReason

pytestmark = [pytest.mark.db, pytest.mark.asyncio]


class TestConcurrentClaims:
    """Several dispatchers claiming from one queue."""

    async def test_drain_is_disjoint_and_complete(self, pg_stores):
        stores = await pg_stores(5)
        ids = [await stores[0].enqueue("acme-wa", "text", "1", str(i), max_attempts=3) for i in range(60)]

        async def drain(store):
            claimed = []
            while True:
                batch = await store.claim_batch(4)
                if not batch:
                    return claimed
                claimed.extend(job.id for job in batch)

        results = await asyncio.gather(*(drain(store) for store in stores))
        everything = list(chain.from_iterable(results))
        assert len(everything) == len(set(everything))
        assert sorted(everything) == ids

    async def test_single_round_never_overlaps(self, pg_stores):
        stores = await pg_stores(4)
        for i in range(10):
            await stores[0].enqueue("acme-wa", "text", "1", str(i), max_attempts=3)

        results = await asyncio.gather(*(store.claim_batch(10) for store in stores))
        claimed = [job.id for job in chain.from_iterable(results)]
        assert len(claimed) == len(set(claimed))
        for batch in results:
            assert [job.id for job in batch] == sorted(job.id for job in batch)
            assert all(job.status is JobStatus.PROCESSING for job in batch)

    async def test_claim_skips_rows_locked_by_open_transaction(self, pg_stores):
        """A row held by another transaction is skipped, not waited on."""
        first, second = await pg_stores(2)
        locked = await first.enqueue("acme-wa", "text", "1", "a", max_attempts=3)
        free = await first.enqueue("acme-wa", "text", "1", "b", max_attempts=3)

        async with first.adapter.transaction() as tx:
            await tx.fetch_returning(
                "SELECT id FROM outbound_jobs WHERE id = :id FOR UPDATE", {"id": locked}
            )
            batch = await asyncio.wait_for(second.claim_batch(10), timeout=10)
            assert [job.id for job in batch] == [free]

        (job,) = await second.claim_batch(10)
        assert job.id == locked


class TestConcurrentPending:
    async def test_consume_is_exactly_once(self, pg_stores, clock):
        stores = await pg_stores(6)
        for i in range(8):
            await stores[0].add_pending("acme-wa", "+51999888777", "51999888777", "text", f"m{i}")
            clock.advance(1)

        results = await asyncio.gather(*(store.consume_pending("acme-wa", "51999888777") for store in stores))
        non_empty = [r for r in results if r]
        assert len(non_empty) == 1
        assert [entry.payload for entry in non_empty[0]] == [f"m{i}" for i in range(8)]
        assert await stores[0].count_pending("acme-wa", "51999888777") == 0

    async def test_release_is_exactly_once(self, pg_stores, clock):
        stores = await pg_stores(4)
        for i in range(5):
            await stores[0].add_pending("acme-wa", "51999", "51999", "text", f"m{i}")
            clock.advance(1)

        results = await asyncio.gather(*(store.release_pending("acme-wa", "51999", 3) for store in stores))
        assert sorted(len(r) for r in results) == [0, 0, 0, 5]
        jobs = await stores[0].list_jobs()
        assert sorted(job.payload for job in jobs) == [f"m{i}" for i in range(5)]

    async def test_failed_release_rolls_back(self, pg_db, monkeypatch):
        for payload in ("m0", "m1", "m2"):
            await pg_db.add_pending("acme-wa", "51999", "51999", "text", payload)
        original = pg_db.jobs.enqueue
        calls = []

        async def second_insert_fails(*args, **kwargs):
            calls.append(args)
            if len(calls) == 2:
                raise StoreUnavailableError("connection lost")
            return await original(*args, **kwargs)

        monkeypatch.setattr(pg_db.jobs, "enqueue", second_insert_fails)
        with pytest.raises(StoreUnavailableError):
            await pg_db.release_pending("acme-wa", "51999", 3)

        assert await pg_db.count_pending("acme-wa", "51999") == 3
        assert await pg_db.list_jobs() == []


class TestDivert:
    async def test_divert_rolls_back_on_buffer_failure(self, pg_db, monkeypatch):
        await pg_db.enqueue("acme-wa", "text", "+51999", "hello", max_attempts=3)
        (job,) = await pg_db.claim_batch(1)

        async def broken(*args, **kwargs):
            raise StoreUnavailableError("connection lost")

        monkeypatch.setattr(pg_db.pending, "add_pending", broken)
        with pytest.raises(StoreUnavailableError):
            await pg_db.divert_job(job, "51999", PendingReason.CONTACT_INACTIVE)

        assert (await pg_db.get_job(job.id)).status is JobStatus.PROCESSING
        assert await pg_db.count_pending("acme-wa", "51999") == 0

    async def test_concurrent_divert_and_reclaim_keep_one_copy(self, pg_stores, clock):
        first, second = await pg_stores(2)
        await first.enqueue("acme-wa", "text", "+51999", "hello", max_attempts=3)
        (job,) = await first.claim_batch(1)
        clock.advance(first.lease_ms)

        reclaimed, entry = await asyncio.gather(
            second.reclaim_expired(),
            first.divert_job(job, "51999", PendingReason.CONTACT_INACTIVE),
        )

        status = (await first.get_job(job.id)).status
        pending = await first.count_pending("acme-wa", "51999")
        if entry is None:
            assert [j.id for j in reclaimed] == [job.id]
            assert (status, pending) == (JobStatus.PENDING, 0)
        else:
            assert reclaimed == []
            assert (status, pending) == (JobStatus.COMPLETED, 1)
