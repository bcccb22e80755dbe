# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Dispatch service orchestrator.

Wires the store, dispatcher, monitor and history recorder together and runs
their background loops:

- dispatch loop: claims and delivers due jobs every ``poll_interval``
- metrics loop: publishes queue snapshots every ``monitor.interval``
- reclaim loop: returns jobs with an expired processing lease to the queue
- cleanup loop: removes history older than ``history.retention_hours``

Example:
    service = DispatchService(load_config("relay.ini"), LoopbackChannel())
    await service.start()
    job_id = await service.enqueue("acme-wa", "text", "+51999888777", "hello")
    ...
    await service.stop()
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from .channels import ChannelAdapter, load_channel
from .config import DispatchConfig
from .dispatch_db import DispatchDb, epoch_ms
from .dispatcher import Dispatcher
from .history import DbHistoryRecorder
from .logger import get_logger
from .models import (
    EnqueueRequest,
    Job,
    JobStatus,
    JobType,
    PendingEntry,
    PendingReason,
    QueueSnapshot,
    normalize_recipient,
)
from .monitor import QueueMonitor
from .prometheus import DispatchMetrics
from .sinks import CompositeSink, LoggingSink, ObservabilitySink, PrometheusSink, WebhookSink


class DispatchService:
    """Owns the dispatch subsystem and its background tasks.

    Attributes:
        config: Effective configuration.
        channel: Transport used by the dispatcher.
        db: Persistent store.
        metrics: Prometheus counters and gauges.
        history: Recorder for delivery outcomes, None when disabled.
        dispatcher: Claim/deliver/resolve loop.
        monitor: Queue snapshot publisher.
    """

    def __init__(
        self,
        config: DispatchConfig | None = None,
        channel: ChannelAdapter | None = None,
        *,
        db: DispatchDb | None = None,
        metrics: DispatchMetrics | None = None,
        sink: ObservabilitySink | None = None,
        clock: Callable[[], int] = epoch_ms,
    ):
        self.config = config or DispatchConfig()
        self.logger = get_logger("DispatchService")
        self.clock = clock
        self.channel = channel or load_channel(self.config.channel)
        self.db = db or DispatchDb(
            self.config.queue.db_path,
            policy=self.config.retry.policy(),
            lease_ms=int(self.config.timing.lease_seconds * 1000),
            clock=clock,
        )
        self.metrics = metrics or DispatchMetrics()
        self.history = DbHistoryRecorder(self.db) if self.config.history.enabled else None
        self.dispatcher = Dispatcher(
            self.db,
            self.channel,
            self.history,
            self.metrics,
            batch_size=self.config.queue.batch_size,
            poll_interval=self.config.timing.poll_interval,
            send_timeout=self.config.timing.send_timeout,
            clock=clock,
        )
        self.monitor = QueueMonitor(
            self.db,
            sink or self._build_sink(),
            queue_name=self.config.queue.queue_name,
            interval=self.config.monitor.interval,
            clock=clock,
        )
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._initialized = False

    def _build_sink(self) -> ObservabilitySink:
        monitor = self.config.monitor
        sinks: list[ObservabilitySink] = [PrometheusSink(self.metrics)]
        if monitor.log_snapshots:
            sinks.append(LoggingSink())
        if monitor.webhook_url:
            sinks.append(WebhookSink(monitor.webhook_url, token=monitor.webhook_token, timeout=monitor.webhook_timeout))
        return sinks[0] if len(sinks) == 1 else CompositeSink(sinks)

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        """Create the schema. Safe to call more than once."""
        if not self._initialized:
            await self.db.init_db()
            self._initialized = True

    async def start(self) -> None:
        """Initialize the store and spawn the background loops."""
        await self.init()
        self._stop.clear()
        self.dispatcher.reset()
        self.monitor.reset()
        if self.config.monitor.prometheus_port:
            self.metrics.serve_http(self.config.monitor.prometheus_port)
            self.logger.info("Prometheus metrics on port %d", self.config.monitor.prometheus_port)
        self._tasks = [
            asyncio.create_task(self.dispatcher.run(), name="dispatch-loop"),
            asyncio.create_task(self.monitor.run(), name="metrics-loop"),
            asyncio.create_task(
                self._periodic(self.reclaim_expired, self.config.timing.reclaim_interval), name="reclaim-loop"
            ),
        ]
        if self.history is not None:
            self._tasks.append(
                asyncio.create_task(
                    self._periodic(self.cleanup_history, self.config.history.cleanup_interval),
                    name="history-cleanup-loop",
                )
            )
        self.logger.info(
            "Dispatch service started (db=%s, batch=%d, interval=%ss)",
            self.config.queue.db_path,
            self.config.queue.batch_size,
            self.config.timing.poll_interval,
        )

    async def stop(self) -> None:
        """Stop every loop, wait for the running tick to finish, close the store."""
        self._stop.set()
        self.dispatcher.stop()
        self.monitor.stop()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.db.close()
        self._initialized = False
        self.logger.info("Dispatch service stopped")

    async def __aenter__(self) -> DispatchService:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def _periodic(self, func: Callable[[], Awaitable[Any]], interval: float) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass
            try:
                await func()
            except Exception as exc:
                self.logger.exception("Unhandled error in %s: %s", getattr(func, "__name__", func), exc)

    # -------------------------------------------------------------------- queue
    async def enqueue(
        self,
        instance_id: str,
        type: JobType | str,
        recipient: str,
        payload: str,
        max_attempts: int | None = None,
    ) -> int:
        """Validate and enqueue one job; ``max_attempts`` defaults to the configured budget."""
        request = EnqueueRequest(
            instance_id=instance_id,
            type=type,
            recipient=recipient,
            payload=payload,
            max_attempts=self.config.retry.max_attempts if max_attempts is None else max_attempts,
        )
        job_id = await self.db.enqueue(
            request.instance_id, request.type, request.recipient, request.payload, request.max_attempts
        )
        self.logger.debug("Enqueued job %s for %s/%s", job_id, request.instance_id, request.recipient)
        return job_id

    async def requeue_failed(self, job_id: int, max_attempts: int | None = None) -> int:
        """Enqueue a fresh copy of a terminally failed job. Returns the new job id.

        Raises:
            ValueError: If the job does not exist or is not failed.
        """
        job = await self.db.get_job(job_id)
        if job is None:
            raise ValueError(f"Job {job_id} not found")
        if job.status is not JobStatus.FAILED:
            raise ValueError(f"Job {job_id} is {job.status.value}, only failed jobs can be requeued")
        new_id = await self.enqueue(
            job.instance_id, job.type, job.recipient, job.payload, max_attempts or job.max_attempts
        )
        self.logger.info("Requeued failed job %s as %s", job_id, new_id)
        return new_id

    async def reclaim_expired(self) -> list[Job]:
        """Return expired processing claims to the queue (or fail them)."""
        jobs = await self.db.reclaim_expired()
        for job in jobs:
            self.logger.warning(
                "Reclaimed job %s after lease expiry (attempts=%d/%d, status=%s)",
                job.id,
                job.attempts,
                job.max_attempts,
                job.status.value,
            )
            if job.status is JobStatus.FAILED:
                self.metrics.inc_failed(job.instance_id)
        return jobs

    async def cleanup_history(self) -> int:
        if self.history is None:
            return 0
        return await self.history.cleanup(self.config.history.retention_hours)

    # ------------------------------------------------------------------ pending
    async def defer(
        self,
        instance_id: str,
        recipient: str,
        type: JobType | str,
        payload: str,
        reason: PendingReason | str = PendingReason.CONTACT_INACTIVE,
    ) -> PendingEntry:
        """Hold a message until :meth:`release_pending` is called for its recipient.

        The message is checked against the same rules as :meth:`enqueue`, so
        every held entry can later become a job.

        Raises:
            pydantic.ValidationError: If the message could not be enqueued.
            ValueError: If the recipient has no digits or the reason is unknown.
        """
        request = EnqueueRequest(
            instance_id=instance_id,
            type=type,
            recipient=recipient,
            payload=payload,
            max_attempts=self.config.retry.max_attempts,
        )
        return await self.db.add_pending(
            request.instance_id,
            request.recipient,
            normalize_recipient(request.recipient),
            request.type,
            request.payload,
            PendingReason(reason),
        )

    async def release_pending(self, instance_id: str, recipient: str) -> list[int]:
        """Drain the pending buffer for a recipient and enqueue each entry.

        Entries are enqueued in the order they were deferred, each as a new
        job with the default attempt budget. The move is one store transaction:
        on failure every entry stays in the buffer and the error propagates.

        Returns:
            The new job ids, empty if nothing was pending or a concurrent
            release already took the entries.
        """
        job_ids = await self.db.release_pending(
            instance_id, normalize_recipient(recipient), self.config.retry.max_attempts
        )
        if job_ids:
            self.logger.info("Released %d pending messages for %s/%s", len(job_ids), instance_id, recipient)
        return job_ids

    # --------------------------------------------------------------- monitoring
    async def snapshot(self) -> QueueSnapshot:
        return await self.monitor.collect()


__all__ = ["DispatchService"]
