# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for the dispatcher tick: delivery, retry, backpressure, diversion."""

from __future__ import annotations

import asyncio

import pytest

from relay_dispatch.channels import LoopbackChannel
from relay_dispatch.dispatcher import Dispatcher
from relay_dispatch.errors import RecipientUnavailableError, StoreUnavailableError, TransientDeliveryError
from relay_dispatch.history import DbHistoryRecorder
from relay_dispatch.models import ConnectionState, HistoryStatus, JobStatus, PendingReason
from relay_dispatch.prometheus import DispatchMetrics


def make_dispatcher(db, clock, channel=None, **kwargs):
    channel = channel or LoopbackChannel()
    metrics = DispatchMetrics()
    dispatcher = Dispatcher(db, channel, DbHistoryRecorder(db), metrics, clock=clock, **kwargs)
    return dispatcher, channel, metrics


def counter(metrics, name, instance_id="acme-wa"):
    return metrics.registry.get_sample_value(name, {"instance_id": instance_id}) or 0.0


class TestDelivery:
    @pytest.mark.asyncio
    async def test_success_completes_and_records(self, db, clock):
        dispatcher, channel, metrics = make_dispatcher(db, clock)
        job_id = await db.enqueue("acme-wa", "text", "+51999888777", "hello", max_attempts=3)

        assert await dispatcher.tick() == 1

        job = await db.get_job(job_id)
        assert job.status is JobStatus.COMPLETED
        assert job.attempts == 0
        assert [(m.recipient, m.kind, m.content) for m in channel.sent] == [("+51999888777", "text", "hello")]
        (entry,) = await db.get_history()
        assert entry.status is HistoryStatus.SENT
        assert entry.to_number == "+51999888777"
        assert entry.metadata["job_id"] == job_id
        assert counter(metrics, "rdp_sent_total") == 1

    @pytest.mark.asyncio
    async def test_media_uses_send_media(self, db, clock):
        dispatcher, channel, _ = make_dispatcher(db, clock)
        await db.enqueue("acme-wa", "media", "+51999888777", "s3://bucket/pic.jpg", max_attempts=3)
        await dispatcher.tick()
        assert channel.sent[0].kind == "media"
        assert channel.sent[0].content == "s3://bucket/pic.jpg"

    @pytest.mark.asyncio
    async def test_empty_queue(self, db, clock):
        dispatcher, channel, _ = make_dispatcher(db, clock)
        assert await dispatcher.tick() == 0
        assert channel.calls == 0

    @pytest.mark.asyncio
    async def test_batch_size_bounds_claim(self, db, clock):
        dispatcher, channel, _ = make_dispatcher(db, clock, batch_size=2)
        for i in range(5):
            await db.enqueue("acme-wa", "text", "1", str(i), max_attempts=3)
        assert await dispatcher.tick() == 2
        assert len(channel.sent) == 2
        assert (await db.get_queue_stats()).waiting == 3

    def test_rejects_zero_batch(self):
        with pytest.raises(ValueError):
            Dispatcher(None, LoopbackChannel(), batch_size=0)


class TestRetry:
    @pytest.mark.asyncio
    async def test_scenario_a_two_failures_then_success(self, db, clock):
        dispatcher, channel, metrics = make_dispatcher(db, clock)
        job_id = await db.enqueue("acme-wa", "text", "+51999888777", "hello", max_attempts=3)
        channel.fail_next("acme-wa", TransientDeliveryError("rate limited"), TransientDeliveryError("reset"))

        await dispatcher.tick()
        job = await db.get_job(job_id)
        assert (job.status, job.attempts) == (JobStatus.PENDING, 1)
        assert job.next_attempt_at == clock() + 2000

        # not due yet
        assert await dispatcher.tick() == 0
        clock.advance(2000)
        await dispatcher.tick()
        job = await db.get_job(job_id)
        assert (job.status, job.attempts, job.last_error) == (JobStatus.PENDING, 2, "reset")

        clock.advance(4000)
        await dispatcher.tick()
        job = await db.get_job(job_id)
        assert job.status is JobStatus.COMPLETED
        assert job.attempts == 2
        history = await db.get_history()
        assert [e.status for e in history] == [HistoryStatus.SENT]
        assert counter(metrics, "rdp_retried_total") == 2
        assert counter(metrics, "rdp_sent_total") == 1

    @pytest.mark.asyncio
    async def test_scenario_b_single_attempt_fails(self, db, clock):
        dispatcher, channel, metrics = make_dispatcher(db, clock)
        job_id = await db.enqueue("acme-wa", "text", "+51999888777", "hello", max_attempts=1)
        channel.fail_next("acme-wa", RuntimeError("socket closed"))

        await dispatcher.tick()

        job = await db.get_job(job_id)
        assert job.status is JobStatus.FAILED
        assert job.attempts == 1
        assert job.last_error == "socket closed"
        (entry,) = await db.get_history()
        assert entry.status is HistoryStatus.FAILED
        assert entry.metadata["error"] == "socket closed"
        assert counter(metrics, "rdp_failed_total") == 1

    @pytest.mark.asyncio
    async def test_send_timeout_counts_as_failure(self, db, clock):
        class SlowChannel(LoopbackChannel):
            async def send_text(self, instance_id, recipient, text):
                await asyncio.sleep(5)

        dispatcher, _, _ = make_dispatcher(db, clock, channel=SlowChannel(), send_timeout=0.05)
        job_id = await db.enqueue("acme-wa", "text", "1", "x", max_attempts=3)
        await dispatcher.tick()
        job = await db.get_job(job_id)
        assert job.attempts == 1
        assert "timed out" in job.last_error

    @pytest.mark.asyncio
    async def test_exception_without_message_uses_type_name(self, db, clock):
        dispatcher, channel, _ = make_dispatcher(db, clock)
        job_id = await db.enqueue("acme-wa", "text", "1", "x", max_attempts=3)
        channel.fail_next("acme-wa", ConnectionResetError())
        await dispatcher.tick()
        assert (await db.get_job(job_id)).last_error == "ConnectionResetError"


class TestBackpressure:
    @pytest.mark.asyncio
    async def test_scenario_d_down_channel_never_called(self, db, clock):
        dispatcher, channel, metrics = make_dispatcher(db, clock)
        channel.set_state("instanceA", ConnectionState.DISCONNECTED)
        job_id = await db.enqueue("instanceA", "text", "+51999888777", "hello", max_attempts=3)

        await dispatcher.tick()

        assert channel.calls == 0
        job = await db.get_job(job_id)
        assert job.status is JobStatus.PENDING
        assert job.attempts == 1
        assert job.next_attempt_at == clock() + 2000
        assert "not connected" in job.last_error
        assert counter(metrics, "rdp_channel_down_total", "instanceA") == 1

    @pytest.mark.asyncio
    async def test_unknown_state_is_treated_as_down(self, db, clock):
        class OddChannel(LoopbackChannel):
            def get_connection_state(self, instance_id):
                return "pairing"

        dispatcher, channel, _ = make_dispatcher(db, clock, channel=OddChannel())
        job_id = await db.enqueue("acme-wa", "text", "1", "x", max_attempts=3)
        await dispatcher.tick()
        assert channel.calls == 0
        assert "pairing" in (await db.get_job(job_id)).last_error

    @pytest.mark.asyncio
    async def test_other_instances_unaffected(self, db, clock):
        dispatcher, channel, _ = make_dispatcher(db, clock)
        channel.set_state("down-wa", "logged_out")
        down = await db.enqueue("down-wa", "text", "1", "x", max_attempts=3)
        up = await db.enqueue("acme-wa", "text", "2", "y", max_attempts=3)
        await dispatcher.tick()
        assert (await db.get_job(down)).status is JobStatus.PENDING
        assert (await db.get_job(up)).status is JobStatus.COMPLETED


class TestDiversion:
    @pytest.mark.asyncio
    async def test_gated_recipient_moves_to_pending(self, db, clock):
        dispatcher, channel, metrics = make_dispatcher(db, clock)
        channel.unreachable.add("+51999888777")
        job_id = await db.enqueue("acme-wa", "text", "+51999888777", "hello", max_attempts=3)

        await dispatcher.tick()

        job = await db.get_job(job_id)
        assert job.status is JobStatus.COMPLETED
        assert job.attempts == 0
        (entry,) = await db.consume_pending("acme-wa", "51999888777")
        assert entry.payload == "hello"
        assert entry.recipient == "+51999888777"
        assert entry.reason is PendingReason.CONTACT_INACTIVE
        (history,) = await db.get_history()
        assert history.status is HistoryStatus.QUEUED
        assert counter(metrics, "rdp_diverted_total") == 1

    @pytest.mark.asyncio
    async def test_unknown_reason_stored_as_unknown(self, db, clock):
        dispatcher, channel, _ = make_dispatcher(db, clock)
        channel.fail_next("acme-wa", RecipientUnavailableError("blocked", reason="opted_out"))
        await db.enqueue("acme-wa", "text", "51999", "hello", max_attempts=3)
        await dispatcher.tick()
        (entry,) = await db.consume_pending("acme-wa", "51999")
        assert entry.reason is PendingReason.UNKNOWN

    @pytest.mark.asyncio
    async def test_unnormalizable_recipient_fails_instead(self, db, clock):
        dispatcher, channel, _ = make_dispatcher(db, clock)
        channel.fail_next("acme-wa", RecipientUnavailableError())
        job_id = await db.enqueue("acme-wa", "text", "support@example", "hello", max_attempts=3)
        await dispatcher.tick()
        job = await db.get_job(job_id)
        assert job.attempts == 1
        assert (await db.get_pending_summary()).total == 0

    @pytest.mark.asyncio
    async def test_buffer_failure_leaves_single_copy(self, db, clock, monkeypatch):
        dispatcher, channel, metrics = make_dispatcher(db, clock)
        channel.unreachable.add("+51999888777")
        job_id = await db.enqueue("acme-wa", "text", "+51999888777", "hello", max_attempts=3)

        async def broken(*args, **kwargs):
            raise StoreUnavailableError("database is locked")

        monkeypatch.setattr(db.pending, "add_pending", broken)
        await dispatcher.tick()

        assert (await db.get_job(job_id)).status is JobStatus.PROCESSING
        assert (await db.get_pending_summary()).total == 0
        assert counter(metrics, "rdp_diverted_total") == 0

        monkeypatch.undo()
        clock.advance(db.lease_ms)
        (reclaimed,) = await db.reclaim_expired()
        assert reclaimed.status is JobStatus.PENDING
        assert (await db.get_pending_summary()).total == 0

        channel.unreachable.clear()
        await dispatcher.tick()
        assert [m.content for m in channel.sent] == ["hello"]
        assert (await db.get_pending_summary()).total == 0


class TestResilience:
    @pytest.mark.asyncio
    async def test_single_flight(self, db, clock):
        release = asyncio.Event()

        class BlockingChannel(LoopbackChannel):
            async def send_text(self, instance_id, recipient, text):
                await release.wait()
                return await super().send_text(instance_id, recipient, text)

        dispatcher, channel, _ = make_dispatcher(db, clock, channel=BlockingChannel())
        await db.enqueue("acme-wa", "text", "1", "x", max_attempts=3)

        first = asyncio.create_task(dispatcher.tick())
        while not dispatcher.busy:
            await asyncio.sleep(0.01)
        assert await dispatcher.tick() is None
        release.set()
        assert await first == 1
        assert dispatcher.busy is False
        assert len(channel.sent) == 1

    @pytest.mark.asyncio
    async def test_claim_error_ends_tick(self, db, clock, monkeypatch):
        dispatcher, channel, _ = make_dispatcher(db, clock)

        async def broken(*args, **kwargs):
            raise StoreUnavailableError("disk I/O error")

        monkeypatch.setattr(db, "claim_batch", broken)
        assert await dispatcher.tick() == 0
        assert dispatcher.busy is False
        assert channel.calls == 0

    @pytest.mark.asyncio
    async def test_store_error_while_resolving_leaves_job_claimed(self, db, clock, monkeypatch):
        dispatcher, channel, _ = make_dispatcher(db, clock)
        job_id = await db.enqueue("acme-wa", "text", "1", "x", max_attempts=3)
        ok_id = await db.enqueue("acme-wa", "text", "2", "y", max_attempts=3)
        original = db.complete_job

        async def flaky(job_id_arg, **kwargs):
            if job_id_arg == job_id:
                raise StoreUnavailableError("database is locked")
            return await original(job_id_arg, **kwargs)

        monkeypatch.setattr(db, "complete_job", flaky)
        assert await dispatcher.tick() == 2
        assert (await db.get_job(job_id)).status is JobStatus.PROCESSING
        assert (await db.get_job(ok_id)).status is JobStatus.COMPLETED

        # the lease sweep picks it up later
        clock.advance(db.lease_ms)
        (reclaimed,) = await db.reclaim_expired()
        assert reclaimed.id == job_id

    @pytest.mark.asyncio
    async def test_history_failure_does_not_change_outcome(self, db, clock):
        class BrokenHistory:
            async def record(self, *args, **kwargs):
                raise RuntimeError("history backend down")

        dispatcher = Dispatcher(db, LoopbackChannel(), BrokenHistory(), clock=clock)
        job_id = await db.enqueue("acme-wa", "text", "1", "x", max_attempts=3)
        assert await dispatcher.tick() == 1
        assert (await db.get_job(job_id)).status is JobStatus.COMPLETED


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_run_until_stopped(self, db, clock):
        dispatcher, channel, _ = make_dispatcher(db, clock, poll_interval=0.01)
        job_id = await db.enqueue("acme-wa", "text", "1", "x", max_attempts=3)

        task = asyncio.create_task(dispatcher.run())
        for _ in range(200):
            if (await db.get_job(job_id)).status is JobStatus.COMPLETED:
                break
            await asyncio.sleep(0.01)
        dispatcher.stop()
        await asyncio.wait_for(task, timeout=2)

        assert (await db.get_job(job_id)).status is JobStatus.COMPLETED
        assert len(channel.sent) == 1
