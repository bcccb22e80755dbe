# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Jobs table manager: the durable outbound delivery queue."""

from __future__ import annotations

from typing import Any

from ..backoff import BackoffPolicy
from ..logger import get_logger
from ..models import Job, JobStatus, JobType
from ..sql import BigInt, Integer, String, Table
from ..sql.adapters.base import Transaction

logger = get_logger("JobsTable")

DEFAULT_LEASE_MS = 5 * 60 * 1000

_JOB_COLUMNS = (
    "id, instance_id, type, recipient, payload, status, attempts, max_attempts, "
    "next_attempt_at, processing_deadline, last_error, created_at, updated_at"
)


class JobsTable(Table):
    """Outbound jobs with atomic claim semantics.

    Fields:
    - id: Autoincrement key, ordered by creation
    - instance_id: Tenant + channel scope key
    - type: text | media
    - recipient / payload: Destination and content (or content reference)
    - status: pending | processing | completed | failed
    - attempts / max_attempts: Failed attempts and fixed budget
    - next_attempt_at: Epoch ms from which a pending job is claimable
    - processing_deadline: Epoch ms after which a claim is considered stale
    - last_error: Diagnostic text of the last failure
    - created_at / updated_at: Epoch ms

    Every transition is a single guarded statement, so the table stays
    consistent when several dispatcher processes share it.
    """

    name = "outbound_jobs"
    indexes = {
        "idx_outbound_jobs_claim": "status, next_attempt_at, created_at",
        "idx_outbound_jobs_instance": "instance_id, status",
    }

    def configure(self) -> None:
        c = self.columns
        c.column("id", Integer, primary_key=True)
        c.column("instance_id", String, nullable=False)
        c.column("type", String, nullable=False)
        c.column("recipient", String, nullable=False)
        c.column("payload", String, nullable=False)
        c.column("status", String, nullable=False, default=JobStatus.PENDING.value)
        c.column("attempts", Integer, nullable=False, default=0)
        c.column("max_attempts", Integer, nullable=False)
        c.column("next_attempt_at", BigInt, nullable=False)
        c.column("processing_deadline", BigInt)
        c.column("last_error", String)
        c.column("created_at", BigInt, nullable=False)
        c.column("updated_at", BigInt, nullable=False)

    async def enqueue(
        self,
        instance_id: str,
        type: JobType | str,
        recipient: str,
        payload: str,
        max_attempts: int,
        *,
        now_ms: int,
        conn: Transaction | None = None,
    ) -> int:
        """Insert a pending job that is claimable immediately. Returns its id.

        Pass ``conn`` to insert inside an open transaction.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        runner = conn if conn is not None else self.adapter
        rows = await runner.fetch_returning(
            """
            INSERT INTO outbound_jobs
                (instance_id, type, recipient, payload, status, attempts, max_attempts,
                 next_attempt_at, created_at, updated_at)
            VALUES
                (:instance_id, :type, :recipient, :payload, :status, 0, :max_attempts,
                 :now, :now, :now)
            RETURNING id
            """,
            {
                "instance_id": instance_id,
                "type": JobType(type).value,
                "recipient": recipient,
                "payload": payload,
                "status": JobStatus.PENDING.value,
                "max_attempts": int(max_attempts),
                "now": now_ms,
            },
        )
        return int(rows[0]["id"])

    async def claim_batch(self, limit: int, *, now_ms: int, lease_ms: int = DEFAULT_LEASE_MS) -> list[Job]:
        """Atomically move up to ``limit`` due pending jobs to processing.

        Oldest jobs are claimed first. Rows locked by a concurrent claimer
        are skipped (PostgreSQL) or the whole statement waits for the write
        lock (SQLite); in both cases no job is returned to two callers.
        """
        if limit <= 0:
            return []
        rows = await self.adapter.fetch_returning(
            f"""
            UPDATE outbound_jobs
            SET status = :processing,
                processing_deadline = :deadline,
                updated_at = :now
            WHERE id IN (
                SELECT id FROM outbound_jobs
                WHERE status = :pending AND next_attempt_at <= :now
                ORDER BY created_at ASC, id ASC
                LIMIT :limit
                {self.adapter.skip_locked}
            )
            AND status = :pending
            RETURNING {_JOB_COLUMNS}
            """,
            {
                "processing": JobStatus.PROCESSING.value,
                "pending": JobStatus.PENDING.value,
                "deadline": now_ms + lease_ms,
                "now": now_ms,
                "limit": int(limit),
            },
        )
        jobs = [Job.from_row(row) for row in rows]
        # RETURNING order is unspecified
        jobs.sort(key=lambda job: (job.created_at, job.id))
        return jobs

    async def complete_job(self, job_id: int, *, now_ms: int) -> bool:
        """Mark a job completed. Returns False if it was already terminal."""
        rowcount = await self.execute(
            """
            UPDATE outbound_jobs
            SET status = :completed, processing_deadline = NULL, updated_at = :now
            WHERE id = :id AND status IN (:processing, :pending)
            """,
            {
                "completed": JobStatus.COMPLETED.value,
                "processing": JobStatus.PROCESSING.value,
                "pending": JobStatus.PENDING.value,
                "now": now_ms,
                "id": job_id,
            },
        )
        return rowcount > 0

    async def complete_claimed(self, job_id: int, *, now_ms: int, conn: Transaction | None = None) -> bool:
        """Complete a job only while it is still held by a claim.

        Returns False when the claim was lost (reclaimed, failed or already
        completed), in which case nothing changed.
        """
        runner = conn if conn is not None else self.adapter
        rows = await runner.fetch_returning(
            """
            UPDATE outbound_jobs
            SET status = :completed, processing_deadline = NULL, updated_at = :now
            WHERE id = :id AND status = :processing
            RETURNING id
            """,
            {
                "completed": JobStatus.COMPLETED.value,
                "processing": JobStatus.PROCESSING.value,
                "now": now_ms,
                "id": job_id,
            },
        )
        return bool(rows)

    async def fail_job(
        self,
        job_id: int,
        error: str,
        *,
        now_ms: int,
        policy: BackoffPolicy | None = None,
    ) -> Job | None:
        """Record a failed attempt and either reschedule or terminally fail.

        The update is guarded on the attempt count read just before, so a
        concurrent transition of the same job makes this call a no-op.

        Returns:
            The job after the transition, or None if the job is missing,
            terminal, or was changed concurrently.
        """
        policy = policy or BackoffPolicy()
        current = await self.get_job(job_id)
        if current is None or current.status.is_terminal:
            logger.warning("fail_job ignored for job %s (status=%s)", job_id, current and current.status.value)
            return None

        attempts = min(current.attempts + 1, current.max_attempts)
        if policy.is_exhausted(attempts, current.max_attempts):
            status = JobStatus.FAILED
            next_attempt_at = current.next_attempt_at
        else:
            status = JobStatus.PENDING
            next_attempt_at = now_ms + policy.delay_ms(attempts)

        rows = await self.adapter.fetch_returning(
            f"""
            UPDATE outbound_jobs
            SET status = :status,
                attempts = :attempts,
                next_attempt_at = :next_attempt_at,
                processing_deadline = NULL,
                last_error = :error,
                updated_at = :now
            WHERE id = :id AND attempts = :prev_attempts AND status IN (:processing, :pending)
            RETURNING {_JOB_COLUMNS}
            """,
            {
                "status": status.value,
                "attempts": attempts,
                "next_attempt_at": next_attempt_at,
                "error": error,
                "now": now_ms,
                "id": job_id,
                "prev_attempts": current.attempts,
                "processing": JobStatus.PROCESSING.value,
                "pending": JobStatus.PENDING.value,
            },
        )
        if not rows:
            logger.warning("fail_job lost a concurrent update for job %s", job_id)
            return None
        return Job.from_row(rows[0])

    async def reclaim_expired(self, *, now_ms: int, error: str = "processing lease expired") -> list[Job]:
        """Turn stale processing claims into failed attempts.

        A job whose ``processing_deadline`` has passed is treated like a send
        that failed: attempts are incremented, and the job is either failed
        terminally or made due immediately.
        """
        rows = await self.adapter.fetch_returning(
            f"""
            UPDATE outbound_jobs
            SET attempts = attempts + 1,
                status = CASE WHEN attempts + 1 >= max_attempts THEN :failed ELSE :pending END,
                next_attempt_at = :now,
                processing_deadline = NULL,
                last_error = :error,
                updated_at = :now
            WHERE status = :processing
              AND processing_deadline IS NOT NULL
              AND processing_deadline <= :now
            RETURNING {_JOB_COLUMNS}
            """,
            {
                "failed": JobStatus.FAILED.value,
                "pending": JobStatus.PENDING.value,
                "processing": JobStatus.PROCESSING.value,
                "now": now_ms,
                "error": error,
            },
        )
        return [Job.from_row(row) for row in rows]

    async def get_job(self, job_id: int) -> Job | None:
        row = await self.adapter.fetch_one(
            f"SELECT {_JOB_COLUMNS} FROM outbound_jobs WHERE id = :id",
            {"id": job_id},
        )
        return Job.from_row(row) if row else None

    async def list_jobs(
        self,
        *,
        status: JobStatus | str | None = None,
        instance_id: str | None = None,
        limit: int = 100,
    ) -> list[Job]:
        """Return jobs newest first, optionally filtered."""
        conditions: list[str] = []
        params: dict[str, Any] = {"limit": int(limit)}
        if status is not None:
            conditions.append("status = :status")
            params["status"] = JobStatus(status).value
        if instance_id:
            conditions.append("instance_id = :instance_id")
            params["instance_id"] = instance_id
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = await self.adapter.fetch_all(
            f"""
            SELECT {_JOB_COLUMNS} FROM outbound_jobs
            {where}
            ORDER BY created_at DESC, id DESC
            LIMIT :limit
            """,
            params,
        )
        return [Job.from_row(row) for row in rows]

    async def get_queue_stats(self, *, now_ms: int) -> dict[str, int]:
        """Count jobs by monitoring state.

        ``waiting`` is pending and due, ``delayed`` is pending with a future
        ``next_attempt_at``, ``active`` is processing.
        """
        rows = await self.adapter.fetch_all(
            """
            SELECT state, COUNT(*) AS cnt FROM (
                SELECT CASE
                    WHEN status = :pending AND next_attempt_at > :now THEN 'delayed'
                    WHEN status = :pending THEN 'waiting'
                    WHEN status = :processing THEN 'active'
                    ELSE status
                END AS state
                FROM outbound_jobs
            ) AS job_states
            GROUP BY state
            """,
            {
                "pending": JobStatus.PENDING.value,
                "processing": JobStatus.PROCESSING.value,
                "now": now_ms,
            },
        )
        stats = {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0}
        for row in rows:
            if row["state"] in stats:
                stats[row["state"]] += int(row["cnt"])
        stats["total"] = sum(stats.values())
        return stats


__all__ = ["DEFAULT_LEASE_MS", "JobsTable"]
