# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the outbound dispatcher.

All metrics use the ``rdp_`` prefix (relay-dispatch).

Metrics exposed:
    - ``rdp_sent_total``: Counter of delivered jobs per instance.
    - ``rdp_retried_total``: Counter of failed attempts rescheduled per instance.
    - ``rdp_failed_total``: Counter of jobs failed terminally per instance.
    - ``rdp_diverted_total``: Counter of jobs moved to the pending buffer.
    - ``rdp_channel_down_total``: Counter of attempts skipped on a down channel.
    - ``rdp_queue_jobs``: Gauge of jobs per queue and state.
    - ``rdp_pending_messages``: Gauge of pending-buffer entries per instance.
    - ``rdp_pending_messages_total``: Gauge of all pending-buffer entries.
"""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest, start_http_server

from .models import QueueSnapshot


class DispatchMetrics:
    """Prometheus metrics collector for the dispatcher.

    Counters are labeled by ``instance_id`` to enable per-instance alerting.
    The gauges mirror the latest snapshot published by the queue monitor.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. If not provided,
                a new registry is created.
        """
        self.registry = registry or CollectorRegistry()
        self.sent = Counter(
            "rdp_sent_total",
            "Total delivered jobs",
            ["instance_id"],
            registry=self.registry,
        )
        self.retried = Counter(
            "rdp_retried_total",
            "Total failed attempts rescheduled for retry",
            ["instance_id"],
            registry=self.registry,
        )
        self.failed = Counter(
            "rdp_failed_total",
            "Total jobs failed terminally",
            ["instance_id"],
            registry=self.registry,
        )
        self.diverted = Counter(
            "rdp_diverted_total",
            "Total jobs diverted to the pending buffer",
            ["instance_id"],
            registry=self.registry,
        )
        self.channel_down = Counter(
            "rdp_channel_down_total",
            "Total attempts skipped because the channel was disconnected",
            ["instance_id"],
            registry=self.registry,
        )
        self.queue_jobs = Gauge(
            "rdp_queue_jobs",
            "Jobs per queue and state",
            ["queue", "state"],
            registry=self.registry,
        )
        self.pending = Gauge(
            "rdp_pending_messages",
            "Pending-buffer entries per instance",
            ["instance_id"],
            registry=self.registry,
        )
        self.pending_total = Gauge(
            "rdp_pending_messages_total",
            "Pending-buffer entries across all instances",
            registry=self.registry,
        )
        self._pending_instances: set[str] = set()

    def inc_sent(self, instance_id: str) -> None:
        self.sent.labels(instance_id=instance_id or "default").inc()

    def inc_retried(self, instance_id: str) -> None:
        self.retried.labels(instance_id=instance_id or "default").inc()

    def inc_failed(self, instance_id: str) -> None:
        self.failed.labels(instance_id=instance_id or "default").inc()

    def inc_diverted(self, instance_id: str) -> None:
        self.diverted.labels(instance_id=instance_id or "default").inc()

    def inc_channel_down(self, instance_id: str) -> None:
        self.channel_down.labels(instance_id=instance_id or "default").inc()

    def set_snapshot(self, snapshot: QueueSnapshot) -> None:
        """Copy a queue snapshot into the gauges.

        Instances missing from the snapshot's pending summary are reset to
        zero rather than keeping their last value.
        """
        for state, value in snapshot.counts.model_dump().items():
            self.queue_jobs.labels(queue=snapshot.queue_name, state=state).set(value)
        per_instance = snapshot.pending_summary.per_instance
        for instance_id in self._pending_instances - per_instance.keys():
            self.pending.labels(instance_id=instance_id).set(0)
        self._pending_instances.update(per_instance)
        for instance_id, count in per_instance.items():
            self.pending.labels(instance_id=instance_id).set(count)
        self.pending_total.set(snapshot.pending_summary.total)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)

    def serve_http(self, port: int, addr: str = "0.0.0.0") -> None:
        """Expose the registry on ``http://addr:port/metrics`` from a daemon thread."""
        start_http_server(port, addr=addr, registry=self.registry)


__all__ = ["DispatchMetrics"]
