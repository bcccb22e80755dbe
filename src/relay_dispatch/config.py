# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration dataclasses and INI/environment loader.

Nested structure keeps related settings together:
- config.queue.db_path
- config.timing.poll_interval
- config.retry.max_attempts
- config.monitor.webhook_url

Example:
    Configuration file format (relay.ini)::

        [dispatch]
        db_path = /data/dispatch.db
        batch_size = 10
        poll_interval = 1.0
        send_timeout = 30
        lease_seconds = 300
        reclaim_interval = 30
        channel = loopback

        [retry]
        base_delay_ms = 2000
        cap_delay_ms = 30000
        max_attempts = 3

        [monitor]
        interval = 15
        prometheus_port = 9108
        webhook_url = https://metrics.example.com/queue

        [history]
        retention_hours = 24

    Environment variables override the file: ``RELAY_DB_PATH``,
    ``RELAY_POLL_INTERVAL``, ``RELAY_BATCH_SIZE``, ``RELAY_METRICS_INTERVAL``
    and ``RELAY_WEBHOOK_URL``.
"""

from __future__ import annotations

import configparser
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .backoff import DEFAULT_BASE_DELAY_MS, DEFAULT_CAP_DELAY_MS, DEFAULT_MAX_ATTEMPTS, BackoffPolicy
from .errors import ConfigurationError
from .logger import get_logger

logger = get_logger("Config")


@dataclass
class TimingConfig:
    """Timing and interval settings."""

    poll_interval: float = 1.0
    """Seconds between dispatcher ticks."""

    send_timeout: float = 30.0
    """Seconds allowed for a single transport call."""

    lease_seconds: int = 300
    """How long a claimed job may stay in processing before it is reclaimed."""

    reclaim_interval: float = 30.0
    """Seconds between lease reclaim sweeps."""


@dataclass
class QueueConfig:
    """Store location and batch settings."""

    db_path: str = "/data/dispatch.db"
    """SQLite path or PostgreSQL DSN."""

    batch_size: int = 10
    """Maximum jobs claimed per tick."""

    queue_name: str = "outbound-messages"
    """Name reported in queue snapshots."""


@dataclass
class RetryConfig:
    """Retry behavior settings."""

    base_delay_ms: int = DEFAULT_BASE_DELAY_MS
    """Backoff delay added per failed attempt."""

    cap_delay_ms: int = DEFAULT_CAP_DELAY_MS
    """Ceiling for a single backoff delay."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    """Attempt budget given to jobs enqueued without one."""

    def policy(self) -> BackoffPolicy:
        return BackoffPolicy(self.base_delay_ms, self.cap_delay_ms)


@dataclass
class HistoryConfig:
    """Message history retention."""

    enabled: bool = True
    """Record sent/failed/queued outcomes."""

    retention_hours: float = 24
    """Entries older than this are removed by the cleanup loop."""

    cleanup_interval: float = 3600.0
    """Seconds between cleanup runs."""


@dataclass
class MonitorConfig:
    """Queue snapshot publishing."""

    interval: float = 15.0
    """Seconds between snapshots."""

    log_snapshots: bool = True
    """Write every snapshot to the log."""

    prometheus_port: int | None = None
    """Expose metrics over HTTP on this port when set."""

    webhook_url: str | None = None
    """POST snapshots to this URL when set."""

    webhook_token: str | None = None
    """Bearer token for the webhook."""

    webhook_timeout: float = 10.0
    """Timeout in seconds for webhook calls."""


@dataclass
class DispatchConfig:
    """Complete service configuration."""

    timing: TimingConfig = field(default_factory=TimingConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)

    channel: str = "loopback"
    """Channel factory reference (``module:factory``) or ``loopback``."""

    log_level: str = "INFO"
    """Root log level used by the command line."""


class _Reader:
    """Typed access to one INI section with default fallback on bad values."""

    def __init__(self, parser: configparser.ConfigParser, section: str):
        self.parser = parser
        self.section = section

    def get_str(self, key: str, default: str | None) -> str | None:
        value = self.parser.get(self.section, key, fallback=None)
        if value is None:
            return default
        value = value.strip()
        return value or default

    def get_int(self, key: str, default: int | None) -> int | None:
        try:
            return self.parser.getint(self.section, key, fallback=default)
        except ValueError:
            logger.warning("Invalid int for [%s] %s, using default %s", self.section, key, default)
            return default

    def get_float(self, key: str, default: float) -> float:
        try:
            return self.parser.getfloat(self.section, key, fallback=default)
        except ValueError:
            logger.warning("Invalid float for [%s] %s, using default %s", self.section, key, default)
            return default

    def get_bool(self, key: str, default: bool) -> bool:
        try:
            return self.parser.getboolean(self.section, key, fallback=default)
        except ValueError:
            logger.warning("Invalid boolean for [%s] %s, using default %s", self.section, key, default)
            return default


def _env_number(env: Mapping[str, str], name: str, cast: type, default):
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning("Invalid value for %s=%r, using %s", name, raw, default)
        return default


def load_config(path: str | os.PathLike | None = None, env: Mapping[str, str] | None = None) -> DispatchConfig:
    """Build a :class:`DispatchConfig` from an INI file and the environment.

    Missing sections and keys keep their defaults. Environment variables are
    applied last.

    Args:
        path: Optional INI file.
        env: Environment mapping, ``os.environ`` when omitted.

    Raises:
        ConfigurationError: If ``path`` is given but does not exist, or the
            resulting values are inconsistent.
    """
    env = os.environ if env is None else env
    parser = configparser.ConfigParser(interpolation=None)
    if path is not None:
        if not Path(path).exists():
            raise ConfigurationError(f"Config file not found: {path}")
        parser.read(path)
        logger.debug("Loaded configuration from %s", path)
    for section in ("dispatch", "retry", "monitor", "history"):
        if not parser.has_section(section):
            parser.add_section(section)

    defaults = DispatchConfig()
    d = _Reader(parser, "dispatch")
    r = _Reader(parser, "retry")
    m = _Reader(parser, "monitor")
    h = _Reader(parser, "history")

    config = DispatchConfig(
        timing=TimingConfig(
            poll_interval=d.get_float("poll_interval", defaults.timing.poll_interval),
            send_timeout=d.get_float("send_timeout", defaults.timing.send_timeout),
            lease_seconds=d.get_int("lease_seconds", defaults.timing.lease_seconds),
            reclaim_interval=d.get_float("reclaim_interval", defaults.timing.reclaim_interval),
        ),
        queue=QueueConfig(
            db_path=d.get_str("db_path", defaults.queue.db_path),
            batch_size=d.get_int("batch_size", defaults.queue.batch_size),
            queue_name=d.get_str("queue_name", defaults.queue.queue_name),
        ),
        retry=RetryConfig(
            base_delay_ms=r.get_int("base_delay_ms", defaults.retry.base_delay_ms),
            cap_delay_ms=r.get_int("cap_delay_ms", defaults.retry.cap_delay_ms),
            max_attempts=r.get_int("max_attempts", defaults.retry.max_attempts),
        ),
        history=HistoryConfig(
            enabled=h.get_bool("enabled", defaults.history.enabled),
            retention_hours=h.get_float("retention_hours", defaults.history.retention_hours),
            cleanup_interval=h.get_float("cleanup_interval", defaults.history.cleanup_interval),
        ),
        monitor=MonitorConfig(
            interval=m.get_float("interval", defaults.monitor.interval),
            log_snapshots=m.get_bool("log_snapshots", defaults.monitor.log_snapshots),
            prometheus_port=m.get_int("prometheus_port", None),
            webhook_url=m.get_str("webhook_url", None),
            webhook_token=m.get_str("webhook_token", None),
            webhook_timeout=m.get_float("webhook_timeout", defaults.monitor.webhook_timeout),
        ),
        channel=d.get_str("channel", defaults.channel),
        log_level=d.get_str("log_level", defaults.log_level),
    )

    # Environment overrides
    if env.get("RELAY_DB_PATH"):
        config.queue.db_path = env["RELAY_DB_PATH"]
    config.timing.poll_interval = _env_number(env, "RELAY_POLL_INTERVAL", float, config.timing.poll_interval)
    config.queue.batch_size = _env_number(env, "RELAY_BATCH_SIZE", int, config.queue.batch_size)
    config.monitor.interval = _env_number(env, "RELAY_METRICS_INTERVAL", float, config.monitor.interval)
    if env.get("RELAY_WEBHOOK_URL"):
        config.monitor.webhook_url = env["RELAY_WEBHOOK_URL"]

    validate_config(config)
    return config


def validate_config(config: DispatchConfig) -> None:
    """Reject values the service cannot run with."""
    if config.queue.batch_size < 1:
        raise ConfigurationError("batch_size must be >= 1")
    if config.retry.max_attempts < 1:
        raise ConfigurationError("max_attempts must be >= 1")
    if config.timing.poll_interval <= 0:
        raise ConfigurationError("poll_interval must be > 0")
    if config.timing.lease_seconds <= 0:
        raise ConfigurationError("lease_seconds must be > 0")
    try:
        config.retry.policy()
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc


__all__ = [
    "DispatchConfig",
    "HistoryConfig",
    "MonitorConfig",
    "QueueConfig",
    "RetryConfig",
    "TimingConfig",
    "load_config",
    "validate_config",
]
