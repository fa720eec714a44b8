"""Batch-level statistics and the metrics table writer.

Two pieces:

1. :class:`BatchResult` aggregates the :class:`~dealerbot.orchestrator.pipeline.SourceRunResult`
   of every source processed in one invocation, and renders the camelCase
   summary returned by the trigger endpoint (:meth:`BatchResult.to_summary`)
   plus a one-line log summary (:meth:`BatchResult.format_summary`).
2. :class:`MetricsRecorder` writes a handful of named values per batch to
   the ``metrics`` table.  Write errors are logged at WARNING level and
   never propagated; a metrics failure must not fail the batch.

Typical usage::

    batch = BatchResult(batch_id=batch_id, selector="hour-bucket:7")
    batch.add(source_result)
    batch.finish(duration_s)
    await MetricsRecorder(conn).record_batch(batch)
    logger.info("%s", batch.format_summary())
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import aiosqlite

from dealerbot.orchestrator.pipeline import SourceRunResult

__all__ = ["BatchResult", "MetricsRecorder"]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Batch aggregate
# ---------------------------------------------------------------------------


@dataclass
class BatchResult:
    """Aggregated statistics for one batch invocation.

    Attributes:
        batch_id: Identifier shared by every job of the batch.
        selector: Human-readable selector (``"rank:3"`` or
            ``"hour-bucket:7"``).
        sources_selected: Due sources returned by the registry, before the
            limit was applied.
        duration_s: Wall-clock duration of the batch.
        source_results: One entry per source attempted, in processing order.
    """

    batch_id: str
    selector: str = ""
    sources_selected: int = 0
    duration_s: float = 0.0
    source_results: list[SourceRunResult] = field(default_factory=list)

    def add(self, result: SourceRunResult) -> None:
        self.source_results.append(result)

    def finish(self, duration_s: float) -> None:
        self.duration_s = duration_s

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    @property
    def sources_attempted(self) -> int:
        return len(self.source_results)

    @property
    def sources_failed(self) -> int:
        return sum(1 for r in self.source_results if r.failed)

    @property
    def sources_succeeded(self) -> int:
        return self.sources_attempted - self.sources_failed

    @property
    def items_discovered(self) -> int:
        return sum(r.discovered for r in self.source_results)

    @property
    def items_extracted(self) -> int:
        return sum(r.extracted for r in self.source_results)

    @property
    def items_validated(self) -> int:
        return sum(r.validated for r in self.source_results)

    @property
    def items_persisted(self) -> int:
        return sum(r.persisted for r in self.source_results)

    @property
    def items_rejected(self) -> int:
        return sum(r.rejected for r in self.source_results)

    @property
    def items_duplicate(self) -> int:
        return sum(r.duplicates for r in self.source_results)

    @property
    def items_errored(self) -> int:
        return sum(r.errored for r in self.source_results)

    @property
    def stage_errors(self) -> dict[str, int]:
        """Failure counts per stage summed over all sources."""
        totals: dict[str, int] = {}
        for r in self.source_results:
            for stage, count in r.stage_errors.items():
                totals[stage] = totals.get(stage, 0) + count
        return dict(sorted(totals.items()))

    @property
    def duration_ms(self) -> int:
        return int(round(self.duration_s * 1000))

    # ------------------------------------------------------------------
    # Serialisation / formatting
    # ------------------------------------------------------------------

    def to_summary(self) -> dict[str, Any]:
        """Return the trigger endpoint's response body (camelCase keys)."""
        return {
            "success": True,
            "batchId": self.batch_id,
            "selector": self.selector,
            "sourcesProcessed": self.sources_attempted,
            "sourcesSucceeded": self.sources_succeeded,
            "sourcesFailed": self.sources_failed,
            "itemsDiscovered": self.items_discovered,
            "itemsExtracted": self.items_extracted,
            "itemsPersisted": self.items_persisted,
            "itemsRejected": self.items_rejected,
            "itemsDuplicate": self.items_duplicate,
            "itemsErrored": self.items_errored,
            "stageErrors": self.stage_errors,
            "durationMs": self.duration_ms,
            "sources": [
                {
                    "sourceId": r.source_id,
                    "discovered": r.discovered,
                    "extracted": r.extracted,
                    "persisted": r.persisted,
                    "rejected": r.rejected,
                    "error": r.error,
                }
                for r in self.source_results
            ],
        }

    def format_summary(self) -> str:
        """Return a single-line summary suitable for ``logger.info()``."""
        return (
            f"batch {self.batch_id} ({self.selector}): sources={self.sources_attempted} "
            f"ok={self.sources_succeeded} failed={self.sources_failed} | "
            f"discovered={self.items_discovered} extracted={self.items_extracted} "
            f"persisted={self.items_persisted} rejected={self.items_rejected} "
            f"dup={self.items_duplicate} errored={self.items_errored} | "
            f"stage_errors={self.stage_errors or 'none'} | {self.duration_ms} ms"
        )


# ---------------------------------------------------------------------------
# Metrics table writer
# ---------------------------------------------------------------------------


class MetricsRecorder:
    """Append per-batch metrics rows to the ``metrics`` table.

    Args:
        conn: Open :class:`aiosqlite.Connection` with the schema applied.
    """

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def record(self, batch_id: str, name: str, value: float, unit: str | None = None) -> None:
        """Write one metric.  Errors are logged, never raised."""
        await self._write(batch_id, [(name, value, unit)])

    async def record_batch(self, batch: BatchResult) -> None:
        """Write the standard set of metrics for *batch*."""
        rows: list[tuple[str, float, str | None]] = [
            ("sources_processed", batch.sources_attempted, "count"),
            ("sources_failed", batch.sources_failed, "count"),
            ("items_discovered", batch.items_discovered, "count"),
            ("items_extracted", batch.items_extracted, "count"),
            ("items_persisted", batch.items_persisted, "count"),
            ("items_rejected", batch.items_rejected, "count"),
            ("items_duplicate", batch.items_duplicate, "count"),
            ("items_errored", batch.items_errored, "count"),
            ("duration", batch.duration_ms, "ms"),
        ]
        rows.extend(
            (f"stage_errors.{stage}", count, "count") for stage, count in batch.stage_errors.items()
        )
        await self._write(batch.batch_id, rows)

    async def list_for_batch(self, batch_id: str) -> dict[str, float]:
        cursor = await self._conn.execute(
            "SELECT name, value FROM metrics WHERE batch_id = ? ORDER BY id",
            (batch_id,),
        )
        return {row["name"]: row["value"] for row in await cursor.fetchall()}

    async def _write(self, batch_id: str, rows: list[tuple[str, float, str | None]]) -> None:
        recorded_at = datetime.now(UTC).isoformat()
        try:
            await self._conn.executemany(
                "INSERT INTO metrics (batch_id, name, value, unit, recorded_at) "
                "VALUES (?, ?, ?, ?, ?)",
                [(batch_id, name, float(value), unit, recorded_at) for name, value, unit in rows],
            )
            await self._conn.commit()
        except sqlite3.Error:
            logger.warning(
                "Failed to record %d metric(s) for batch %s.",
                len(rows),
                batch_id,
                exc_info=True,
            )
