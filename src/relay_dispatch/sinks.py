# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Observability sinks receiving queue snapshots from the monitor.

A sink is any object with an async ``publish(snapshot)`` method. Publishing
is one-way and best-effort: the monitor logs a failing sink and moves on.

Sinks:
    - LoggingSink: writes the snapshot to the log.
    - PrometheusSink: mirrors the snapshot into Prometheus gauges.
    - WebhookSink: POSTs the snapshot as JSON with aiohttp.
    - CompositeSink: fans a snapshot out to several sinks.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from typing import Protocol

import aiohttp

from .logger import get_logger
from .models import QueueSnapshot
from .prometheus import DispatchMetrics


class ObservabilitySink(Protocol):
    async def publish(self, snapshot: QueueSnapshot) -> None: ...


class LoggingSink:
    def __init__(self, logger=None):
        self.logger = logger or get_logger("QueueMetrics")

    async def publish(self, snapshot: QueueSnapshot) -> None:
        counts = snapshot.counts
        self.logger.info(
            "Queue %s: waiting=%d active=%d delayed=%d completed=%d failed=%d pending=%d",
            snapshot.queue_name,
            counts.waiting,
            counts.active,
            counts.delayed,
            counts.completed,
            counts.failed,
            snapshot.pending_summary.total,
        )


class PrometheusSink:
    def __init__(self, metrics: DispatchMetrics):
        self.metrics = metrics

    async def publish(self, snapshot: QueueSnapshot) -> None:
        self.metrics.set_snapshot(snapshot)


class WebhookSink:
    """POST each snapshot to an HTTP endpoint.

    Non-2xx responses raise ``aiohttp.ClientResponseError`` so the monitor
    logs them like any other sink failure.
    """

    def __init__(self, url: str, *, token: str | None = None, timeout: float = 10.0):
        self.url = url
        self.token = token
        self.timeout = timeout

    async def publish(self, snapshot: QueueSnapshot) -> None:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(self.url, json=snapshot.model_dump(mode="json"), headers=headers) as resp:
                resp.raise_for_status()


class CompositeSink:
    """Publish to every child sink; one failing child does not stop the others."""

    def __init__(self, sinks: Iterable[ObservabilitySink], logger=None):
        self.sinks = list(sinks)
        self.logger = logger or get_logger("QueueMetrics")

    async def publish(self, snapshot: QueueSnapshot) -> None:
        results = await asyncio.gather(
            *(sink.publish(snapshot) for sink in self.sinks),
            return_exceptions=True,
        )
        for sink, result in zip(self.sinks, results):
            if isinstance(result, Exception):
                self.logger.warning("Sink %s failed: %s", type(sink).__name__, result)


__all__ = ["CompositeSink", "LoggingSink", "ObservabilitySink", "PrometheusSink", "WebhookSink"]
