# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""History recorder used by the dispatcher after each resolved job."""

from __future__ import annotations

from typing import Any, Protocol

from .dispatch_db import DispatchDb
from .logger import get_logger
from .models import HistoryDirection, HistoryStatus


class HistoryRecorder(Protocol):
    async def record(
        self,
        instance_id: str,
        direction: HistoryDirection | str,
        recipient: str,
        content: str,
        status: HistoryStatus | str,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...


class DbHistoryRecorder:
    """Writes history rows to the dispatch database.

    Recording is best-effort: any error is logged and swallowed so that a
    history outage never changes the outcome of a delivery.
    """

    def __init__(self, db: DispatchDb, logger=None):
        self.db = db
        self.logger = logger or get_logger("History")

    async def record(
        self,
        instance_id: str,
        direction: HistoryDirection | str,
        recipient: str,
        content: str,
        status: HistoryStatus | str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        try:
            await self.db.add_history(
                instance_id,
                direction,
                content=content,
                status=status,
                to_number=recipient if HistoryDirection(direction) is HistoryDirection.OUTBOUND else "",
                from_number=recipient if HistoryDirection(direction) is HistoryDirection.INBOUND else "",
                metadata=metadata,
            )
        except Exception as exc:
            self.logger.warning("Failed to record history for %s (%s): %s", instance_id, recipient, exc)

    async def cleanup(self, older_than_hours: float = 24) -> int:
        """Delete history older than ``older_than_hours``; errors are logged."""
        try:
            removed = await self.db.cleanup_history(older_than_hours)
        except Exception as exc:
            self.logger.warning("History cleanup failed: %s", exc)
            return 0
        if removed:
            self.logger.info("Removed %d history entries older than %sh", removed, older_than_hours)
        return removed


__all__ = ["DbHistoryRecorder", "HistoryRecorder"]
