# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for the outbound dispatch subsystem.

This module defines the data models shared by the store, the dispatcher and
the monitor.

Models:
    - Job: One outbound delivery job and its attempt lifecycle
    - PendingEntry: A message held back by a conversational-policy gate
    - HistoryEntry: One row of the message history
    - QueueCounts / PendingSummary / QueueSnapshot: Monitoring payloads
    - EnqueueRequest: Validated input for creating a job
"""

from __future__ import annotations

import json
import re
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class JobStatus(str, Enum):
    """Lifecycle states of a job. ``completed`` and ``failed`` are terminal."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobType(str, Enum):
    """Kind of content a job carries."""

    TEXT = "text"
    MEDIA = "media"


class PendingReason(str, Enum):
    """Why a message was moved to the pending buffer."""

    CONTACT_INACTIVE = "contact_inactive"
    UNKNOWN = "unknown"


class HistoryDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class HistoryStatus(str, Enum):
    SENT = "sent"
    RECEIVED = "received"
    FAILED = "failed"
    QUEUED = "queued"


class ConnectionState(str, Enum):
    """Connectivity reported by a channel adapter for one instance."""

    CONNECTED = "connected"
    CONNECTING = "connecting"
    DISCONNECTED = "disconnected"
    LOGGED_OUT = "logged_out"


_JID_SUFFIX = re.compile(r"[@:].*$")
_NON_DIGITS = re.compile(r"\D")


def normalize_recipient(value: str) -> str:
    """Return the canonical pending-buffer key for a recipient address.

    Strips any JID suffix (``@s.whatsapp.net``, device part ``:12``) and keeps
    digits only, so ``"+51 999-888"`` and ``"51999888@s.whatsapp.net"``
    map to the same key.

    Raises:
        ValueError: If no digits remain.
    """
    local = _JID_SUFFIX.sub("", (value or "").strip())
    digits = _NON_DIGITS.sub("", local)
    if not digits:
        raise ValueError(f"Recipient '{value}' has no digits to normalize")
    return digits


class Job(BaseModel):
    """A durable outbound delivery job.

    Attributes:
        id: Autoincrement identifier, ordered by creation.
        instance_id: Tenant + channel scope key.
        type: Content kind (text or media).
        recipient: Destination address as given by the caller.
        payload: Text body or media reference.
        status: Current lifecycle state.
        attempts: Failed delivery attempts so far.
        max_attempts: Attempt budget fixed at creation.
        next_attempt_at: Epoch ms from which a pending job may be claimed.
        processing_deadline: Epoch ms after which a processing claim is stale.
        last_error: Diagnostic text of the last failure.
        created_at: Epoch ms of creation.
        updated_at: Epoch ms of the last transition.
    """

    model_config = ConfigDict(use_enum_values=False)

    id: int
    instance_id: str
    type: JobType
    recipient: str
    payload: str
    status: JobStatus
    attempts: int = 0
    max_attempts: int
    next_attempt_at: int
    processing_deadline: int | None = None
    last_error: str | None = None
    created_at: int
    updated_at: int

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Job:
        return cls.model_validate(row)


class PendingEntry(BaseModel):
    """A message deferred until its recipient becomes reachable."""

    id: int
    instance_id: str
    recipient: str
    normalized_recipient: str
    type: JobType
    payload: str
    reason: PendingReason
    created_at: int

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> PendingEntry:
        return cls.model_validate(row)


class HistoryEntry(BaseModel):
    """One recorded inbound or outbound message."""

    id: int
    instance_id: str
    direction: HistoryDirection
    from_number: str = ""
    to_number: str = ""
    content: str
    status: HistoryStatus
    created_at: int
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def decode_metadata(cls, v: Any) -> Any:
        """Accept the JSON text stored in the database."""
        if v is None or v == "":
            return {}
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return {"raw": v}
        return v


class QueueCounts(BaseModel):
    """Job counts by monitoring state."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed + self.delayed


class PendingSummary(BaseModel):
    """Pending-buffer size, overall and per instance."""

    total: int = 0
    per_instance: dict[str, int] = Field(default_factory=dict)


class QueueSnapshot(BaseModel):
    """Combined snapshot pushed to observability sinks."""

    queue_name: str
    counts: QueueCounts
    pending_summary: PendingSummary
    timestamp: int


class EnqueueRequest(BaseModel):
    """Validated arguments for creating a job.

    Attributes:
        instance_id: Tenant + channel scope key.
        type: Content kind.
        recipient: Destination address.
        payload: Text body or media reference.
        max_attempts: Attempt budget; always explicit once it reaches the store.
    """

    model_config = ConfigDict(extra="forbid")

    instance_id: Annotated[str, Field(min_length=1, max_length=128)]
    type: JobType
    recipient: Annotated[str, Field(min_length=1, max_length=128)]
    payload: Annotated[str, Field(min_length=1)]
    max_attempts: Annotated[int, Field(ge=1, le=100)]

    @field_validator("instance_id", "recipient")
    @classmethod
    def strip_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


__all__ = [
    "ConnectionState",
    "EnqueueRequest",
    "HistoryDirection",
    "HistoryEntry",
    "HistoryStatus",
    "Job",
    "JobStatus",
    "JobType",
    "PendingEntry",
    "PendingReason",
    "PendingSummary",
    "QueueCounts",
    "QueueSnapshot",
    "normalize_recipient",
]
