# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pending messages table manager: the deferred-delivery buffer."""

from __future__ import annotations

from ..logger import get_logger
from ..models import JobType, PendingEntry, PendingReason
from ..sql import BigInt, Integer, String, Table
from ..sql.adapters.base import Transaction

logger = get_logger("PendingMessagesTable")

_PENDING_COLUMNS = "id, instance_id, recipient, normalized_recipient, type, payload, reason, created_at"


class PendingMessagesTable(Table):
    """Messages held back until their recipient becomes reachable.

    Fields:
    - id: Autoincrement key, ordered by creation
    - instance_id: Tenant + channel scope key
    - recipient: Destination address as given by the caller
    - normalized_recipient: Canonical key (digits only)
    - type / payload: Content kind and content (or content reference)
    - reason: contact_inactive | unknown
    - created_at: Epoch ms

    Entries sharing ``(instance_id, normalized_recipient)`` form one FIFO
    group. A group is only ever removed as a whole, by ``consume_pending``.
    """

    name = "pending_messages"
    indexes = {
        "idx_pending_messages_key": "instance_id, normalized_recipient, created_at",
    }

    def configure(self) -> None:
        c = self.columns
        c.column("id", Integer, primary_key=True)
        c.column("instance_id", String, nullable=False)
        c.column("recipient", String, nullable=False)
        c.column("normalized_recipient", String, nullable=False)
        c.column("type", String, nullable=False)
        c.column("payload", String, nullable=False)
        c.column("reason", String, nullable=False, default=PendingReason.UNKNOWN.value)
        c.column("created_at", BigInt, nullable=False)

    async def add_pending(
        self,
        instance_id: str,
        recipient: str,
        normalized_recipient: str,
        type: JobType | str,
        payload: str,
        reason: PendingReason | str = PendingReason.UNKNOWN,
        *,
        now_ms: int,
        conn: Transaction | None = None,
    ) -> PendingEntry:
        """Append an entry to the group of ``(instance_id, normalized_recipient)``.

        Pass ``conn`` to insert inside an open transaction.
        """
        runner = conn if conn is not None else self.adapter
        rows = await runner.fetch_returning(
            f"""
            INSERT INTO pending_messages
                (instance_id, recipient, normalized_recipient, type, payload, reason, created_at)
            VALUES
                (:instance_id, :recipient, :normalized_recipient, :type, :payload, :reason, :now)
            RETURNING {_PENDING_COLUMNS}
            """,
            {
                "instance_id": instance_id,
                "recipient": recipient,
                "normalized_recipient": normalized_recipient,
                "type": JobType(type).value,
                "payload": payload,
                "reason": PendingReason(reason).value,
                "now": now_ms,
            },
        )
        entry = PendingEntry.from_row(rows[0])
        logger.info(
            "Pending message %s stored for %s/%s (type=%s, reason=%s)",
            entry.id,
            instance_id,
            normalized_recipient,
            entry.type.value,
            entry.reason.value,
        )
        return entry

    async def consume_pending(
        self, instance_id: str, normalized_recipient: str, *, conn: Transaction | None = None
    ) -> list[PendingEntry]:
        """Atomically remove and return the whole group for a key, oldest first.

        The read and the delete are one ``DELETE ... RETURNING`` statement:
        when two callers race on the same key, one receives every entry and
        the other receives an empty list.

        Inside ``conn`` the removal only becomes visible when that
        transaction commits, and is undone if it rolls back.
        """
        runner = conn if conn is not None else self.adapter
        rows = await runner.fetch_returning(
            f"""
            DELETE FROM pending_messages
            WHERE instance_id = :instance_id AND normalized_recipient = :normalized_recipient
            RETURNING {_PENDING_COLUMNS}
            """,
            {"instance_id": instance_id, "normalized_recipient": normalized_recipient},
        )
        entries = [PendingEntry.from_row(row) for row in rows]
        # RETURNING order is unspecified
        entries.sort(key=lambda entry: (entry.created_at, entry.id))
        if entries:
            logger.info(
                "Consumed %d pending messages for %s/%s",
                len(entries),
                instance_id,
                normalized_recipient,
            )
        return entries

    async def count_pending(self, instance_id: str, normalized_recipient: str) -> int:
        return await self.count({"instance_id": instance_id, "normalized_recipient": normalized_recipient})

    async def get_pending_summary(self) -> dict[str, object]:
        """Return ``{"total": n, "per_instance": {instance_id: n}}`` without mutating state."""
        rows = await self.adapter.fetch_all(
            """
            SELECT instance_id, COUNT(*) AS cnt
            FROM pending_messages
            GROUP BY instance_id
            ORDER BY instance_id
            """
        )
        per_instance = {row["instance_id"]: int(row["cnt"]) for row in rows}
        return {"total": sum(per_instance.values()), "per_instance": per_instance}


__all__ = ["PendingMessagesTable"]
