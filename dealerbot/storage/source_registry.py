"""Source registry: the dealership table and its rotation-rank maintenance.

Provides :class:`SourceRegistry`, the data-access object for the ``sources``
table.  Selection methods are read-only and return
:class:`~dealerbot.core.models.WorkUnit` objects ordered by staleness
(most stale first, never-processed sources ahead of everything else).

Rotation ranks spread the active sources over hour buckets.  With
``slot_count = min(rotation_slots, active_sources)`` the bucket for a given
wall-clock hour is ``hour % slot_count`` and a source belongs to it when
``(rank - 1) % slot_count == bucket``.  :meth:`SourceRegistry.reassign_rotation_ranks`
is the only writer of ranks; it holds a per-event-loop lock and a
``BEGIN IMMEDIATE`` transaction so concurrent maintenance calls serialise.

Every SQLite failure surfaces as
:class:`~dealerbot.core.exceptions.RegistryUnavailableError`.

Typical usage::

    registry = SourceRegistry(conn, rotation_slots=24)
    units = await registry.list_for_bucket(now.hour, now)
    for unit in units[:limit]:
        ...
        await registry.mark_processed(unit.source.id, datetime.now(UTC))
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import weakref
from datetime import UTC, datetime, timedelta
from typing import Any

import aiosqlite

from dealerbot.core import events
from dealerbot.core.exceptions import RegistryUnavailableError
from dealerbot.core.models import OVERDUE_THRESHOLD, Source, WorkUnit

__all__ = ["SourceRegistry", "DEFAULT_ROTATION_SLOTS"]

logger = logging.getLogger(__name__)

#: Hour buckets per day.
DEFAULT_ROTATION_SLOTS: int = 24

_SELECT_COLUMNS = (
    "id, name, entry_urls, rotation_rank, cadence, last_processed_at, active"
)

# Rank reassignment is serialised across coroutines of one event loop; the
# BEGIN IMMEDIATE transaction serialises across connections and processes.
_RANK_LOCKS: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock] = (
    weakref.WeakKeyDictionary()
)


def _rank_lock() -> asyncio.Lock:
    loop = asyncio.get_running_loop()
    lock = _RANK_LOCKS.get(loop)
    if lock is None:
        lock = _RANK_LOCKS[loop] = asyncio.Lock()
    return lock


def _row_to_source(row: aiosqlite.Row) -> Source:
    return Source(
        id=row["id"],
        name=row["name"],
        entry_urls=json.loads(row["entry_urls"] or "[]"),
        rotation_rank=row["rotation_rank"],
        cadence=row["cadence"],
        last_processed_at=row["last_processed_at"],
        active=bool(row["active"]),
    )


def _order_by_staleness(units: list[WorkUnit]) -> list[WorkUnit]:
    """Most stale first; ties broken by rank then id for determinism."""
    return sorted(
        units,
        key=lambda u: (
            -u.staleness_h,
            u.source.rotation_rank if u.source.rotation_rank is not None else 0,
            u.source.id,
        ),
    )


class SourceRegistry:
    """Data-access object for the ``sources`` table.

    Args:
        conn: Open :class:`aiosqlite.Connection` with the schema applied.
        rotation_slots: Number of hour buckets (24 for hourly rotation).
    """

    def __init__(
        self,
        conn: aiosqlite.Connection,
        *,
        rotation_slots: int = DEFAULT_ROTATION_SLOTS,
    ) -> None:
        self._conn = conn
        self._rotation_slots = rotation_slots

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _fetchall(self, sql: str, params: tuple[Any, ...] = ()) -> list[aiosqlite.Row]:
        try:
            cursor = await self._conn.execute(sql, params)
            return list(await cursor.fetchall())
        except sqlite3.Error as exc:
            raise RegistryUnavailableError(f"Source registry query failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Administrative writes
    # ------------------------------------------------------------------

    async def add(self, source: Source) -> Source:
        """Insert or replace *source*.

        Source creation is otherwise external; this is used by tooling and
        tests.  An inactive source is stored without a rank.
        """
        rank = source.rotation_rank if source.active else None
        try:
            await self._conn.execute(
                """
                INSERT INTO sources
                    (id, name, entry_urls, rotation_rank, cadence, last_processed_at, active, created_at)
                VALUES
                    (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    name = excluded.name,
                    entry_urls = excluded.entry_urls,
                    rotation_rank = excluded.rotation_rank,
                    cadence = excluded.cadence,
                    last_processed_at = excluded.last_processed_at,
                    active = excluded.active
                """,
                (
                    source.id,
                    source.name,
                    json.dumps(source.entry_urls),
                    rank,
                    str(source.cadence),
                    source.last_processed_at.isoformat() if source.last_processed_at else None,
                    int(source.active),
                    datetime.now(UTC).isoformat(),
                ),
            )
            await self._conn.commit()
        except sqlite3.Error as exc:
            await self._conn.rollback()
            raise RegistryUnavailableError(f"Cannot store source {source.id}: {exc}") from exc
        return source.model_copy(update={"rotation_rank": rank})

    async def mark_processed(self, source_id: str, at: datetime) -> None:
        """Set ``last_processed_at`` for *source_id*.

        Called exactly once per completed source run.
        """
        try:
            await self._conn.execute(
                "UPDATE sources SET last_processed_at = ? WHERE id = ?",
                (at.isoformat(), source_id),
            )
            await self._conn.commit()
        except sqlite3.Error as exc:
            raise RegistryUnavailableError(f"Cannot mark source {source_id} processed: {exc}") from exc
        logger.debug("Source %s marked processed at %s", source_id, at.isoformat())

    async def reassign_rotation_ranks(self) -> int:
        """Rewrite the ranks of all active sources as ``1..N``.

        Active sources are enumerated in a stable order (current rank with
        unranked last, then name, then id), so re-running on an already
        compact assignment changes nothing.  Inactive sources lose their
        rank.

        Returns:
            ``N``, the number of ranked sources.
        """
        async with _rank_lock():
            try:
                await self._conn.execute("BEGIN IMMEDIATE")
                cursor = await self._conn.execute(
                    """
                    SELECT id FROM sources
                    WHERE active = 1
                    ORDER BY rotation_rank IS NULL, rotation_rank, name, id
                    """
                )
                ids = [row["id"] for row in await cursor.fetchall()]
                await self._conn.execute("UPDATE sources SET rotation_rank = NULL")
                await self._conn.executemany(
                    "UPDATE sources SET rotation_rank = ? WHERE id = ?",
                    [(rank, source_id) for rank, source_id in enumerate(ids, start=1)],
                )
                await self._conn.commit()
            except sqlite3.Error as exc:
                await self._conn.rollback()
                raise RegistryUnavailableError(f"Rank reassignment failed: {exc}") from exc

        logger.info(
            "Rotation ranks reassigned for %d active source(s)",
            len(ids),
            extra={"event": events.RANKS_REASSIGNED},
        )
        return len(ids)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, source_id: str) -> Source | None:
        rows = await self._fetchall(f"SELECT {_SELECT_COLUMNS} FROM sources WHERE id = ?", (source_id,))
        return _row_to_source(rows[0]) if rows else None

    async def count_active(self) -> int:
        rows = await self._fetchall("SELECT COUNT(*) AS n FROM sources WHERE active = 1")
        return int(rows[0]["n"])

    async def list_by_rank(self, rank: int, now: datetime) -> list[WorkUnit]:
        """Return due sources holding exactly *rank*, most stale first."""
        rows = await self._fetchall(
            f"SELECT {_SELECT_COLUMNS} FROM sources WHERE active = 1 AND rotation_rank = ?",
            (rank,),
        )
        return self._due_units(rows, now)

    async def list_for_bucket(self, hour: int, now: datetime) -> list[WorkUnit]:
        """Return due sources in the bucket for wall-clock *hour*.

        Args:
            hour: Hour of day (0-23) the invocation was triggered for.
            now: Reference time for due/staleness computation.
        """
        active = await self.count_active()
        if active == 0:
            return []
        slot_count = min(self._rotation_slots, active)
        bucket = hour % slot_count

        rows = await self._fetchall(
            f"SELECT {_SELECT_COLUMNS} FROM sources WHERE active = 1 AND rotation_rank IS NOT NULL"
        )
        in_bucket = [r for r in rows if (r["rotation_rank"] - 1) % slot_count == bucket]
        logger.debug(
            "Hour %d maps to bucket %d of %d (%d ranked source(s) in bucket)",
            hour,
            bucket,
            slot_count,
            len(in_bucket),
        )
        return self._due_units(in_bucket, now)

    async def list_overdue(
        self,
        now: datetime,
        threshold: timedelta = OVERDUE_THRESHOLD,
    ) -> list[WorkUnit]:
        """Return overdue active sources, most stale first.

        Rank, bucket and cadence are ignored, so unranked sources are
        included.
        """
        rows = await self._fetchall(f"SELECT {_SELECT_COLUMNS} FROM sources WHERE active = 1")
        overdue = [
            WorkUnit.from_source(source, now)
            for source in map(_row_to_source, rows)
            if source.has_entry_url and source.is_overdue(now, threshold)
        ]
        logger.debug(
            "%d of %d active source(s) overdue by more than %s",
            len(overdue),
            len(rows),
            threshold,
        )
        return _order_by_staleness(overdue)

    async def stats(self, now: datetime) -> dict[str, Any]:
        """Summary counts for operators.

        Returns:
            ``total``, ``active``, ``with_urls``, ``never_processed`` and
            ``avg_hours_since_processed`` (``None`` when no active source has
            been processed).
        """
        rows = await self._fetchall(f"SELECT {_SELECT_COLUMNS} FROM sources")
        sources = [_row_to_source(r) for r in rows]
        active = [s for s in sources if s.active]
        processed_hours = [s.staleness_hours(now) for s in active if s.last_processed_at is not None]
        return {
            "total": len(sources),
            "active": len(active),
            "with_urls": sum(1 for s in active if s.has_entry_url),
            "never_processed": sum(1 for s in active if s.last_processed_at is None),
            "avg_hours_since_processed": (
                round(sum(processed_hours) / len(processed_hours), 2) if processed_hours else None
            ),
        }

    @staticmethod
    def _due_units(rows: list[aiosqlite.Row], now: datetime) -> list[WorkUnit]:
        units = [WorkUnit.from_source(_row_to_source(r), now) for r in rows]
        return _order_by_staleness([u for u in units if u.due_now and u.source.has_entry_url])
