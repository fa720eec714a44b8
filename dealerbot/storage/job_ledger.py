"""Job ledger: one row per source run, with a monotonic status machine.

Status moves are restricted to::

    pending → running | failed
    running → completed | failed

Terminal states (``completed`` / ``failed``) are immutable; any other move
raises :class:`~dealerbot.core.exceptions.InvalidJobTransitionError`.
Timestamps are set by the ledger: ``started_at`` on ``running`` and
``completed_at`` on either terminal state.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import UTC, datetime
from typing import Any

import aiosqlite

from dealerbot.core.exceptions import InvalidJobTransitionError, StorageError
from dealerbot.core.models import Job, JobStatus

__all__ = ["JobLedger"]

logger = logging.getLogger(__name__)

_SELECT_COLUMNS = (
    "id, batch_id, source_id, job_type, status, payload, result, error_message, "
    "created_at, started_at, completed_at"
)


def _row_to_job(row: aiosqlite.Row) -> Job:
    return Job(
        id=row["id"],
        batch_id=row["batch_id"],
        source_id=row["source_id"],
        job_type=row["job_type"],
        status=JobStatus(row["status"]),
        payload=json.loads(row["payload"] or "{}"),
        result=json.loads(row["result"]) if row["result"] else None,
        error_message=row["error_message"],
        created_at=row["created_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )


class JobLedger:
    """Data-access object for the ``jobs`` table.

    Args:
        conn: Open :class:`aiosqlite.Connection` with the schema applied.
    """

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def create(
        self,
        batch_id: str,
        source_id: str,
        *,
        payload: dict[str, Any] | None = None,
        job_type: str = "source_run",
    ) -> Job:
        """Append a ``pending`` job and return it."""
        job = Job(
            id=uuid.uuid4().hex,
            batch_id=batch_id,
            source_id=source_id,
            job_type=job_type,
            status=JobStatus.PENDING,
            payload=payload or {},
            created_at=datetime.now(UTC),
        )
        try:
            await self._conn.execute(
                """
                INSERT INTO jobs
                    (id, batch_id, source_id, job_type, status, payload, created_at)
                VALUES
                    (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.id,
                    job.batch_id,
                    job.source_id,
                    job.job_type,
                    str(job.status),
                    json.dumps(job.payload, default=str),
                    job.created_at.isoformat(),
                ),
            )
            await self._conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot create job for source {source_id}: {exc}") from exc
        logger.debug("Job %s created for source %s (batch %s)", job.id, source_id, batch_id)
        return job

    async def transition(
        self,
        job_id: str,
        status: JobStatus,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> Job:
        """Move *job_id* to *status*.

        Raises:
            InvalidJobTransitionError: If the move is not allowed, or the job
                does not exist.
            StorageError: On SQLite failure.
        """
        current = await self.get(job_id)
        if current is None:
            raise InvalidJobTransitionError(job_id, "missing", str(status))
        if not current.status.can_transition_to(status):
            raise InvalidJobTransitionError(job_id, str(current.status), str(status))

        now = datetime.now(UTC)
        updates: dict[str, Any] = {"status": status}
        if status is JobStatus.RUNNING:
            updates["started_at"] = now
        if status.is_terminal:
            updates["completed_at"] = now
            updates["result"] = result
            updates["error_message"] = error

        try:
            # The status guard in WHERE keeps concurrent writers from
            # overwriting a move made since the read above.
            cursor = await self._conn.execute(
                """
                UPDATE jobs SET
                    status = ?,
                    started_at = COALESCE(?, started_at),
                    completed_at = COALESCE(?, completed_at),
                    result = COALESCE(?, result),
                    error_message = COALESCE(?, error_message)
                WHERE id = ? AND status = ?
                """,
                (
                    str(status),
                    updates["started_at"].isoformat() if "started_at" in updates else None,
                    updates["completed_at"].isoformat() if "completed_at" in updates else None,
                    json.dumps(result, default=str) if result is not None else None,
                    error,
                    job_id,
                    str(current.status),
                ),
            )
            await self._conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot update job {job_id}: {exc}") from exc
        if cursor.rowcount == 0:
            raise InvalidJobTransitionError(job_id, "changed concurrently", str(status))

        logger.debug("Job %s: %s → %s", job_id, current.status, status)
        return current.model_copy(update=updates)

    async def get(self, job_id: str) -> Job | None:
        try:
            cursor = await self._conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM jobs WHERE id = ?", (job_id,)
            )
            row = await cursor.fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot read job {job_id}: {exc}") from exc
        return _row_to_job(row) if row else None

    async def list_for_batch(self, batch_id: str) -> list[Job]:
        """Return the jobs of *batch_id* in creation order."""
        try:
            cursor = await self._conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM jobs WHERE batch_id = ? ORDER BY created_at, rowid",
                (batch_id,),
            )
            rows = await cursor.fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot read batch {batch_id}: {exc}") from exc
        return [_row_to_job(r) for r in rows]

    async def count(self, *, status: JobStatus | None = None) -> int:
        sql = "SELECT COUNT(*) FROM jobs"
        params: tuple[str, ...] = ()
        if status is not None:
            sql += " WHERE status = ?"
            params = (str(status),)
        cursor = await self._conn.execute(sql, params)
        row = await cursor.fetchone()
        return int(row[0]) if row else 0
