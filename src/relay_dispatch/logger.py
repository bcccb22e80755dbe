# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the relay dispatch service.

Handlers, levels and formats are configured once by the entry point
(``logging.basicConfig`` in the CLI). Modules only ask for named loggers.

Example:
    Typical usage in a module::

        from relay_dispatch.logger import get_logger

        logger = get_logger("Dispatcher")
        logger.info("Tick completed")
"""

from __future__ import annotations

import logging

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def get_logger(name: str = "RelayDispatch") -> logging.Logger:
    """Return the standard library logger bound to ``name``.

    Args:
        name: The logger name. Defaults to "RelayDispatch".
    """
    return logging.getLogger(name)


def configure_logging(level: str | int = "INFO") -> None:
    """Install the root handler used by command line entry points.

    Args:
        level: Level name ("DEBUG", "INFO", ...) or numeric level.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format=DEFAULT_LOG_FORMAT)
