# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Dispatcher loop: claims due jobs and resolves them against the channel.

Each tick claims a batch from the store and delivers every job concurrently.
A job ends in exactly one of these ways:

- delivered: ``complete_job`` and a ``sent`` history record
- channel down: ``fail_job`` without calling the transport
- recipient gated: content moved to the pending buffer, job completed,
  ``queued`` history record, no attempt consumed
- send error or timeout: ``fail_job``; a terminal failure also writes a
  ``failed`` history record

Only one tick runs at a time per dispatcher. Several dispatchers (in one or
many processes) may share a store because claiming is atomic.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Callable

from .channels import ChannelAdapter
from .dispatch_db import DispatchDb, epoch_ms
from .errors import ChannelDownError, PermanentError, RecipientUnavailableError, StoreUnavailableError
from .history import HistoryRecorder
from .logger import get_logger
from .models import (
    ConnectionState,
    HistoryDirection,
    HistoryStatus,
    Job,
    JobStatus,
    JobType,
    PendingReason,
    normalize_recipient,
)
from .prometheus import DispatchMetrics

DEFAULT_BATCH_SIZE = 10
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_SEND_TIMEOUT = 30.0

_PENDING_REASONS = {reason.value for reason in PendingReason}


def _coerce_state(state: ConnectionState | str | None) -> str:
    if isinstance(state, ConnectionState):
        return state.value
    return str(state or "unknown")


class Dispatcher:
    """Fixed-interval claim/deliver/resolve loop.

    Attributes:
        db: Store providing atomic claim and job transitions.
        channel: Transport used for delivery and connectivity checks.
        history: Recorder receiving one entry per resolved job.
        metrics: Prometheus counters, optional.
        batch_size: Maximum jobs claimed per tick.
        poll_interval: Seconds between tick starts.
        send_timeout: Seconds allowed for a single transport call.
    """

    def __init__(
        self,
        db: DispatchDb,
        channel: ChannelAdapter,
        history: HistoryRecorder | None = None,
        metrics: DispatchMetrics | None = None,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        clock: Callable[[], int] = epoch_ms,
        logger=None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.db = db
        self.channel = channel
        self.history = history
        self.metrics = metrics
        self.batch_size = int(batch_size)
        self.poll_interval = float(poll_interval)
        self.send_timeout = float(send_timeout)
        self.clock = clock
        self.logger = logger or get_logger("Dispatcher")
        self._busy = False
        self._stop = asyncio.Event()
        self._current: asyncio.Task | None = None

    @property
    def busy(self) -> bool:
        return self._busy

    # ------------------------------------------------------------------ loop
    async def run(self) -> None:
        """Start a tick every ``poll_interval`` seconds until :meth:`stop`.

        A timer firing while the previous tick is still running is skipped.
        """
        self.logger.debug("Dispatcher loop started (interval=%ss, batch=%d)", self.poll_interval, self.batch_size)
        while not self._stop.is_set():
            if self._busy:
                self.logger.debug("Previous tick still running, skipping")
            else:
                self._current = asyncio.create_task(self._guarded_tick(), name="dispatcher-tick")
            await self._sleep(self.poll_interval)
        if self._current is not None:
            await asyncio.gather(self._current, return_exceptions=True)
        self.logger.debug("Dispatcher loop stopped")

    def stop(self) -> None:
        self._stop.set()

    def reset(self) -> None:
        """Allow :meth:`run` to be started again after :meth:`stop`."""
        self._stop.clear()

    async def _sleep(self, timeout: float) -> None:
        if math.isinf(timeout):
            await self._stop.wait()
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=max(0.0, timeout))
        except asyncio.TimeoutError:
            return

    async def _guarded_tick(self) -> None:
        try:
            await self.tick()
        except Exception as exc:  # pragma: no cover - tick already logs
            self.logger.exception("Unhandled error in dispatcher tick: %s", exc)

    # ------------------------------------------------------------------ tick
    async def tick(self) -> int | None:
        """Run one claim/deliver/resolve cycle.

        Returns:
            Number of jobs claimed, or None when another tick is in progress.
        """
        if self._busy:
            return None
        self._busy = True
        try:
            try:
                jobs = await self.db.claim_batch(self.batch_size, now_ms=self.clock())
            except StoreUnavailableError as exc:
                self.logger.error("Claim failed, skipping tick: %s", exc)
                return 0
            except Exception as exc:
                self.logger.exception("Unexpected error while claiming jobs: %s", exc)
                return 0
            if not jobs:
                return 0
            self.logger.debug("Claimed %d jobs", len(jobs))
            await asyncio.gather(*(self._process(job) for job in jobs))
            return len(jobs)
        finally:
            self._busy = False

    async def _process(self, job: Job) -> None:
        try:
            await self._deliver(job)
        except StoreUnavailableError as exc:
            self.logger.error("Store error while resolving job %s, left for reclaim: %s", job.id, exc)
        except Exception as exc:
            self.logger.exception("Unexpected error while resolving job %s: %s", job.id, exc)

    async def _deliver(self, job: Job) -> None:
        state = _coerce_state(self.channel.get_connection_state(job.instance_id))
        if state != ConnectionState.CONNECTED.value:
            error = ChannelDownError(job.instance_id, state)
            self.logger.info("Job %s not sent: %s", job.id, error)
            if self.metrics:
                self.metrics.inc_channel_down(job.instance_id)
            await self._fail(job, str(error))
            return

        try:
            await asyncio.wait_for(self._send(job), timeout=self.send_timeout)
        except RecipientUnavailableError as exc:
            await self._divert(job, exc)
            return
        except asyncio.TimeoutError:
            await self._fail(job, f"Send timed out after {self.send_timeout}s")
            return
        except Exception as exc:
            await self._fail(job, str(exc) or type(exc).__name__)
            return

        await self.db.complete_job(job.id, now_ms=self.clock())
        if self.metrics:
            self.metrics.inc_sent(job.instance_id)
        await self._record(job, HistoryStatus.SENT, {"job_id": job.id, "attempts": job.attempts})

    async def _send(self, job: Job) -> None:
        if job.type is JobType.MEDIA:
            await self.channel.send_media(job.instance_id, job.recipient, job.payload)
        else:
            await self.channel.send_text(job.instance_id, job.recipient, job.payload)

    async def _fail(self, job: Job, error: str) -> None:
        updated = await self.db.fail_job(job.id, error, now_ms=self.clock())
        if updated is None:
            return
        if updated.status is JobStatus.FAILED:
            permanent = PermanentError(f"Job {job.id} failed after {updated.attempts} attempts: {error}")
            self.logger.warning("%s", permanent)
            if self.metrics:
                self.metrics.inc_failed(job.instance_id)
            await self._record(
                job, HistoryStatus.FAILED, {"job_id": job.id, "attempts": updated.attempts, "error": error}
            )
        else:
            self.logger.info(
                "Job %s attempt %d/%d failed, retry at %d: %s",
                job.id,
                updated.attempts,
                updated.max_attempts,
                updated.next_attempt_at,
                error,
            )
            if self.metrics:
                self.metrics.inc_retried(job.instance_id)

    async def _divert(self, job: Job, exc: RecipientUnavailableError) -> None:
        try:
            normalized = normalize_recipient(job.recipient)
        except ValueError:
            await self._fail(job, f"{exc}; recipient '{job.recipient}' cannot be normalized")
            return
        reason = exc.reason if exc.reason in _PENDING_REASONS else PendingReason.UNKNOWN.value
        entry = await self.db.divert_job(job, normalized, reason, now_ms=self.clock())
        if entry is None:
            self.logger.warning("Job %s lost its claim before it could be diverted", job.id)
            return
        self.logger.info("Job %s diverted to pending buffer (%s): %s", job.id, reason, exc)
        if self.metrics:
            self.metrics.inc_diverted(job.instance_id)
        await self._record(job, HistoryStatus.QUEUED, {"job_id": job.id, "reason": reason})

    async def _record(self, job: Job, status: HistoryStatus, metadata: dict) -> None:
        if self.history is None:
            return
        await self.history.record(
            job.instance_id, HistoryDirection.OUTBOUND, job.recipient, job.payload, status, metadata
        )


__all__ = ["DEFAULT_BATCH_SIZE", "DEFAULT_POLL_INTERVAL", "DEFAULT_SEND_TIMEOUT", "Dispatcher"]
