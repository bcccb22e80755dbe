# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception hierarchy for the outbound dispatch subsystem.

The dispatcher resolves every claimed job by looking at which of these
exceptions (if any) was raised while delivering it:

- ``TransientDeliveryError``: the channel was reachable but the send failed.
  Consumes an attempt and schedules a backoff retry.
- ``ChannelDownError``: the connectivity check failed, the transport was never
  called. Same retry path as a transient error.
- ``RecipientUnavailableError``: a conversational-policy gate. The message is
  moved to the pending buffer and does not consume an attempt.
- ``PermanentError``: the job ran out of attempts.
- ``StoreUnavailableError``: the storage layer failed. The current tick is
  abandoned and retried on the next interval.
"""

from __future__ import annotations


class DispatchError(Exception):
    """Base class for all dispatch errors."""

    code = "dispatch_error"


class TransientDeliveryError(DispatchError):
    """Raised by a transport when a send fails for a recoverable reason."""

    code = "transient_delivery"


class ChannelDownError(DispatchError):
    """Raised when the channel instance is not connected."""

    code = "channel_down"

    def __init__(self, instance_id: str, state: str | None = None):
        self.instance_id = instance_id
        self.state = state
        super().__init__(f"Instance {instance_id} is not connected (state={state or 'unknown'})")


class RecipientUnavailableError(DispatchError):
    """Raised when delivery is blocked by a conversational-policy gate.

    Attributes:
        reason: Pending reason recorded with the diverted message
            (``contact_inactive`` or ``unknown``).
    """

    code = "recipient_unavailable"

    def __init__(self, message: str = "Recipient is not reachable", reason: str = "contact_inactive"):
        super().__init__(message)
        self.reason = reason


class PermanentError(DispatchError):
    """Raised when a job has exhausted its delivery attempts."""

    code = "permanent_failure"


class StoreUnavailableError(DispatchError):
    """Raised when the persistent store cannot complete an operation."""

    code = "store_unavailable"


class ConfigurationError(DispatchError):
    """Raised for invalid or incomplete service configuration."""

    code = "configuration_error"


__all__ = [
    "ChannelDownError",
    "ConfigurationError",
    "DispatchError",
    "PermanentError",
    "RecipientUnavailableError",
    "StoreUnavailableError",
    "TransientDeliveryError",
]
