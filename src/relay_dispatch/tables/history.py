# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Message history table manager."""

from __future__ import annotations

import json
from typing import Any

from ..models import HistoryDirection, HistoryEntry, HistoryStatus
from ..sql import BigInt, Integer, String, Table

_HISTORY_COLUMNS = "id, instance_id, direction, from_number, to_number, content, status, created_at, metadata"


class MessageHistoryTable(Table):
    """Audit trail of inbound and outbound messages per instance."""

    name = "message_history"
    indexes = {
        "idx_message_history_instance": "instance_id, created_at",
        "idx_message_history_created": "created_at",
    }

    def configure(self) -> None:
        c = self.columns
        c.column("id", Integer, primary_key=True)
        c.column("instance_id", String, nullable=False)
        c.column("direction", String, nullable=False)
        c.column("from_number", String, nullable=False, default="")
        c.column("to_number", String, nullable=False, default="")
        c.column("content", String, nullable=False)
        c.column("status", String, nullable=False)
        c.column("created_at", BigInt, nullable=False)
        c.column("metadata", String)

    async def add(
        self,
        instance_id: str,
        direction: HistoryDirection | str,
        *,
        content: str,
        status: HistoryStatus | str,
        now_ms: int,
        from_number: str = "",
        to_number: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await self.execute(
            """
            INSERT INTO message_history
                (instance_id, direction, from_number, to_number, content, status, created_at, metadata)
            VALUES
                (:instance_id, :direction, :from_number, :to_number, :content, :status, :now, :metadata)
            """,
            {
                "instance_id": instance_id,
                "direction": HistoryDirection(direction).value,
                "from_number": from_number or "",
                "to_number": to_number or "",
                "content": content,
                "status": HistoryStatus(status).value,
                "now": now_ms,
                "metadata": json.dumps(metadata or {}),
            },
        )

    async def get_messages(
        self,
        *,
        instance_id: str | None = None,
        direction: HistoryDirection | str | None = None,
        since_ms: int | None = None,
        limit: int = 100,
    ) -> list[HistoryEntry]:
        """Return history entries newest first."""
        conditions: list[str] = []
        params: dict[str, Any] = {"limit": int(limit)}
        if instance_id:
            conditions.append("instance_id = :instance_id")
            params["instance_id"] = instance_id
        if direction is not None:
            conditions.append("direction = :direction")
            params["direction"] = HistoryDirection(direction).value
        if since_ms is not None:
            conditions.append("created_at >= :since")
            params["since"] = since_ms
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = await self.adapter.fetch_all(
            f"""
            SELECT {_HISTORY_COLUMNS} FROM message_history
            {where}
            ORDER BY created_at DESC, id DESC
            LIMIT :limit
            """,
            params,
        )
        return [HistoryEntry.model_validate(row) for row in rows]

    async def remove_before(self, threshold_ms: int) -> int:
        """Delete entries older than ``threshold_ms``. Returns deleted count."""
        return await self.execute(
            "DELETE FROM message_history WHERE created_at < :threshold",
            {"threshold": threshold_ms},
        )


__all__ = ["MessageHistoryTable"]
