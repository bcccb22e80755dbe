# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Channel adapter contract and an in-process loopback implementation.

The real transport (session handling, encryption, wire protocol) lives in an
external library. The dispatcher only needs three operations from it, described
by :class:`ChannelAdapter`. A transport is plugged in through a factory
reference such as ``"mycompany.wa_transport:create_channel"``.
"""

from __future__ import annotations

import importlib
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from .errors import ConfigurationError, RecipientUnavailableError, TransientDeliveryError
from .logger import get_logger
from .models import ConnectionState

logger = get_logger("Channel")


@runtime_checkable
class ChannelAdapter(Protocol):
    """Transport operations consumed by the dispatcher.

    ``send_text``/``send_media`` return normally on success and raise on
    failure. Raising :class:`~relay_dispatch.errors.RecipientUnavailableError`
    signals a conversational-policy gate rather than a delivery failure.
    """

    async def send_text(self, instance_id: str, recipient: str, text: str) -> Any: ...

    async def send_media(self, instance_id: str, recipient: str, media_ref: str) -> Any: ...

    def get_connection_state(self, instance_id: str) -> ConnectionState | str: ...


@dataclass
class SentMessage:
    instance_id: str
    recipient: str
    kind: str
    content: str


@dataclass
class LoopbackChannel:
    """Channel adapter that records sends instead of transmitting them.

    Instances are connected unless listed in ``states``. Failures can be
    scripted per instance with :meth:`fail_next`; ``unreachable`` holds
    recipients that trigger :class:`RecipientUnavailableError`.

    Attributes:
        sent: Every successful send, in call order.
        calls: Number of send attempts, successful or not.
        states: Connection state overrides per instance.
        unreachable: Recipients currently gated by policy.
    """

    sent: list[SentMessage] = field(default_factory=list)
    calls: int = 0
    states: dict[str, ConnectionState] = field(default_factory=dict)
    unreachable: set[str] = field(default_factory=set)
    _failures: dict[str, list[Exception]] = field(default_factory=dict)

    def set_state(self, instance_id: str, state: ConnectionState | str) -> None:
        self.states[instance_id] = ConnectionState(state)

    def fail_next(self, instance_id: str, *errors: Exception) -> None:
        """Queue exceptions raised by the next sends for ``instance_id``."""
        self._failures.setdefault(instance_id, []).extend(errors)

    def get_connection_state(self, instance_id: str) -> ConnectionState:
        return self.states.get(instance_id, ConnectionState.CONNECTED)

    async def _send(self, instance_id: str, recipient: str, kind: str, content: str) -> SentMessage:
        self.calls += 1
        queued = self._failures.get(instance_id)
        if queued:
            raise queued.pop(0)
        if recipient in self.unreachable:
            raise RecipientUnavailableError(f"{recipient} has not opened a conversation window")
        if self.get_connection_state(instance_id) is not ConnectionState.CONNECTED:
            raise TransientDeliveryError(f"Instance {instance_id} dropped during send")
        message = SentMessage(instance_id, recipient, kind, content)
        self.sent.append(message)
        logger.debug("Loopback %s send to %s via %s", kind, recipient, instance_id)
        return message

    async def send_text(self, instance_id: str, recipient: str, text: str) -> SentMessage:
        return await self._send(instance_id, recipient, "text", text)

    async def send_media(self, instance_id: str, recipient: str, media_ref: str) -> SentMessage:
        return await self._send(instance_id, recipient, "media", media_ref)


def load_channel(reference: str, **kwargs: Any) -> ChannelAdapter:
    """Build a channel adapter from ``"package.module:factory"``.

    ``"loopback"`` returns a :class:`LoopbackChannel`. Keyword arguments are
    passed to the factory.

    Raises:
        ConfigurationError: If the reference cannot be imported or the
            factory does not return a channel adapter.
    """
    if reference == "loopback":
        return LoopbackChannel()
    module_name, _, attr = reference.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"Invalid channel reference '{reference}', expected 'module:factory'")
    try:
        module = importlib.import_module(module_name)
        factory: Callable[..., Any] = getattr(module, attr)
    except (ImportError, AttributeError) as exc:
        raise ConfigurationError(f"Cannot load channel factory '{reference}': {exc}") from exc
    channel = factory(**kwargs)
    if not isinstance(channel, ChannelAdapter):
        raise ConfigurationError(f"'{reference}' did not return a channel adapter")
    return channel


__all__ = ["ChannelAdapter", "LoopbackChannel", "SentMessage", "load_channel"]
