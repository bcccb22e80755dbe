# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Durable outbound message dispatcher for messaging channels.

This package provides the delivery core of a multi-tenant messaging service:

- Job queue with atomic batch claim, linear capped backoff and lease reclaim
- Pending buffer for messages blocked by conversational policy
- Channel adapter contract with connectivity backpressure
- Queue snapshots published to logs, Prometheus and webhooks
- SQLite or PostgreSQL persistence

Example:
    Running the service with an in-process channel::

        from relay_dispatch import DispatchService, LoopbackChannel, load_config

        service = DispatchService(load_config(), LoopbackChannel())
        await service.start()
        await service.enqueue("acme-wa", "text", "+51999888777", "hello")

Authors:
    Softwell S.r.l.
"""

from .backoff import DEFAULT_MAX_ATTEMPTS, BackoffPolicy, backoff
from .channels import ChannelAdapter, LoopbackChannel, load_channel
from .config import DispatchConfig, load_config
from .dispatch_db import DispatchDb
from .dispatcher import Dispatcher
from .errors import (
    ChannelDownError,
    ConfigurationError,
    DispatchError,
    PermanentError,
    RecipientUnavailableError,
    StoreUnavailableError,
    TransientDeliveryError,
)
from .models import ConnectionState, Job, JobStatus, JobType, PendingEntry, PendingReason, QueueSnapshot
from .monitor import QueueMonitor
from .service import DispatchService

__version__ = "0.4.0"

__all__ = [
    "DEFAULT_MAX_ATTEMPTS",
    "BackoffPolicy",
    "ChannelAdapter",
    "ChannelDownError",
    "ConfigurationError",
    "ConnectionState",
    "DispatchConfig",
    "DispatchDb",
    "DispatchError",
    "DispatchService",
    "Dispatcher",
    "Job",
    "JobStatus",
    "JobType",
    "LoopbackChannel",
    "PendingEntry",
    "PendingReason",
    "PermanentError",
    "QueueMonitor",
    "QueueSnapshot",
    "RecipientUnavailableError",
    "StoreUnavailableError",
    "TransientDeliveryError",
    "backoff",
    "load_channel",
    "load_config",
]
