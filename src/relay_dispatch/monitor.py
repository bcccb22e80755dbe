# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Periodic queue snapshot publisher."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from .dispatch_db import DispatchDb, epoch_ms
from .logger import get_logger
from .models import QueueSnapshot
from .sinks import ObservabilitySink

DEFAULT_QUEUE_NAME = "outbound-messages"
DEFAULT_METRICS_INTERVAL = 15.0


class QueueMonitor:
    """Reads queue stats and the pending summary and pushes them to a sink.

    The monitor performs no writes. A failing store or sink is logged and the
    next interval tries again.
    """

    def __init__(
        self,
        db: DispatchDb,
        sink: ObservabilitySink,
        *,
        queue_name: str = DEFAULT_QUEUE_NAME,
        interval: float = DEFAULT_METRICS_INTERVAL,
        clock: Callable[[], int] = epoch_ms,
        logger=None,
    ):
        self.db = db
        self.sink = sink
        self.queue_name = queue_name
        self.interval = float(interval)
        self.clock = clock
        self.logger = logger or get_logger("QueueMonitor")
        self._stop = asyncio.Event()

    async def collect(self) -> QueueSnapshot:
        now = self.clock()
        counts = await self.db.get_queue_stats(now_ms=now)
        summary = await self.db.get_pending_summary()
        return QueueSnapshot(queue_name=self.queue_name, counts=counts, pending_summary=summary, timestamp=now)

    async def publish_once(self) -> QueueSnapshot | None:
        """Collect and publish one snapshot. Returns None if either step failed."""
        try:
            snapshot = await self.collect()
        except Exception as exc:
            self.logger.error("Failed to collect queue metrics: %s", exc)
            return None
        try:
            await self.sink.publish(snapshot)
        except Exception as exc:
            self.logger.error("Failed to publish queue metrics: %s", exc)
            return None
        return snapshot

    async def run(self) -> None:
        while not self._stop.is_set():
            await self.publish_once()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue

    def stop(self) -> None:
        self._stop.set()

    def reset(self) -> None:
        self._stop.clear()


__all__ = ["DEFAULT_METRICS_INTERVAL", "DEFAULT_QUEUE_NAME", "QueueMonitor"]
