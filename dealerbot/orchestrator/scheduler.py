"""Batch scheduler: pick due sources, run them one by one, keep the ledger.

One call of :func:`run_batch` is one invocation of the external timer.  It:

1. Resolves the :class:`BatchSelector` to an ordered list of sources
   (due sources of an explicit rotation rank or of the current wall-clock
   hour bucket, or every overdue source), most stale first.
2. Truncates the list to ``limit``.
3. For each source, **sequentially**: appends a ``pending`` job, marks it
   ``running`` and calls :func:`~dealerbot.orchestrator.pipeline.run_one`
   under a per-source timeout.
4. After each source completes (success, stage failure or timeout), sets
   the source's ``last_processed_at`` and finalises the job as
   ``completed`` or ``failed``.
5. Returns a :class:`~dealerbot.orchestrator.metrics.BatchResult`.

A source failure never stops the batch.  A registry failure while
selecting sources aborts before any source work and propagates as
:class:`~dealerbot.core.exceptions.RegistryUnavailableError`.

Cancellation
~~~~~~~~~~~~
An externally imposed cancellation (``asyncio.CancelledError``) is not
handled: it propagates immediately, so the current job stays ``running``
and the source's ``last_processed_at`` is left untouched.  The per-source
timeout is different: it is converted into a failed job and the source
counts as processed.

Typical usage::

    deps = BatchDeps(registry=registry, ledger=ledger, pipeline=pipeline_deps)
    batch = await run_batch(BatchSelector(), limit=5, deps=deps)
    print(batch.to_summary())
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from dealerbot.core import events
from dealerbot.core.exceptions import DealerbotError, RegistryUnavailableError
from dealerbot.core.logging_config import BATCH_ID_CTX, SOURCE_ID_CTX
from dealerbot.core.models import OVERDUE_THRESHOLD, JobStatus, WorkUnit
from dealerbot.orchestrator.metrics import BatchResult, MetricsRecorder
from dealerbot.orchestrator.pipeline import PipelineDeps, SourceRunResult, run_one
from dealerbot.storage.job_ledger import JobLedger
from dealerbot.storage.source_registry import SourceRegistry

__all__ = [
    "BatchSelector",
    "BatchDeps",
    "run_batch",
    "reassign_rotation_ranks",
]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BatchSelector:
    """Which sources a batch considers.

    Attributes:
        rank: Explicit rotation rank.  ``None`` selects the bucket of the
            current wall-clock hour.
        overdue: Select every active source that is overdue (see
            :data:`~dealerbot.core.models.OVERDUE_THRESHOLD`) regardless of
            rank, bucket or cadence.  Cannot be combined with *rank*.
    """

    rank: int | None = None
    overdue: bool = False

    def __post_init__(self) -> None:
        if self.overdue and self.rank is not None:
            raise ValueError("BatchSelector: 'rank' and 'overdue' are mutually exclusive")

    def describe(self, now: datetime) -> str:
        if self.overdue:
            return f"overdue:{OVERDUE_THRESHOLD.total_seconds() / 3600:g}h"
        if self.rank is not None:
            return f"rank:{self.rank}"
        return f"hour-bucket:{now.hour}"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class BatchDeps:
    """Collaborators for one batch invocation."""

    registry: SourceRegistry
    ledger: JobLedger
    pipeline: PipelineDeps
    metrics: MetricsRecorder | None = None
    clock: Callable[[], datetime] = _utcnow


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


async def _select(
    selector: BatchSelector,
    registry: SourceRegistry,
    now: datetime,
) -> list[WorkUnit]:
    if selector.overdue:
        return await registry.list_overdue(now)
    if selector.rank is not None:
        return await registry.list_by_rank(selector.rank, now)
    return await registry.list_for_bucket(now.hour, now)


def _job_payload(
    unit: WorkUnit,
    batch: BatchResult,
    position: int,
    limit: int,
    deps: BatchDeps,
) -> dict[str, Any]:
    """Snapshot of the inputs a job ran with."""
    settings = deps.pipeline.settings
    return {
        "source": unit.source.model_dump(mode="json"),
        "staleness_h": round(unit.staleness_h, 2),
        "batch": {
            "id": batch.batch_id,
            "selector": batch.selector,
            "position": position,
            "limit": limit,
        },
        "config": {
            "quality_threshold": settings.quality_threshold,
            "max_candidates_per_source": settings.max_candidates_per_source,
            "source_timeout_s": settings.source_timeout_s,
        },
    }


# ---------------------------------------------------------------------------
# Per-source run
# ---------------------------------------------------------------------------


async def _run_source(
    unit: WorkUnit,
    batch: BatchResult,
    position: int,
    limit: int,
    deps: BatchDeps,
) -> SourceRunResult:
    """Run one source with its job bookkeeping.

    ``asyncio.CancelledError`` is deliberately not caught.
    """
    source = unit.source
    settings = deps.pipeline.settings
    ledger = deps.ledger

    job = await ledger.create(
        batch.batch_id,
        source.id,
        payload=_job_payload(unit, batch, position, limit, deps),
    )
    await ledger.transition(job.id, JobStatus.RUNNING)
    logger.info(
        "Source %s (%s): starting, staleness=%.1fh job=%s",
        source.id,
        source.name,
        unit.staleness_h,
        job.id,
        extra={"event": events.SOURCE_START},
    )

    result = SourceRunResult(source_id=source.id)
    try:
        async with asyncio.timeout(settings.source_timeout_s):
            await run_one(source, deps.pipeline, result)
    except TimeoutError:
        result.record_stage_error("timeout")
        result.error = f"source run timed out after {settings.source_timeout_s:g}s"
        logger.warning(
            "Source %s: %s",
            source.id,
            result.error,
            extra={"event": events.SOURCE_TIMEOUT},
        )
    except Exception as exc:  # noqa: BLE001
        result.error = f"{type(exc).__name__}: {exc}"
        logger.error(
            "Source %s: run raised unexpectedly: %s",
            source.id,
            exc,
            exc_info=True,
            extra={"event": events.SOURCE_FAILED},
        )

    await deps.registry.mark_processed(source.id, deps.clock())
    status = JobStatus.FAILED if result.failed else JobStatus.COMPLETED
    await ledger.transition(job.id, status, result=result.as_dict(), error=result.error)

    if result.failed:
        logger.warning(
            "Source %s: job %s failed: %s",
            source.id,
            job.id,
            result.error,
            extra={"event": events.SOURCE_FAILED},
        )
    else:
        logger.info(
            "Source %s: job %s completed",
            source.id,
            job.id,
            extra={"event": events.SOURCE_DONE},
        )
    return result


# ---------------------------------------------------------------------------
# Public entry-points
# ---------------------------------------------------------------------------


async def run_batch(
    selector: BatchSelector,
    limit: int | None,
    deps: BatchDeps,
    *,
    batch_id: str | None = None,
) -> BatchResult:
    """Run one batch invocation.

    Args:
        selector: Explicit rank, current hour bucket or overdue sources.
        limit: Maximum sources to process; clamped by
            :meth:`~dealerbot.core.settings.Settings.resolve_limit`.
        deps: Registry, ledger, pipeline collaborators and clock.
        batch_id: Identifier to use; a random one is generated if omitted.

    Returns:
        The aggregated :class:`BatchResult`.

    Raises:
        RegistryUnavailableError: If sources cannot be selected.  No job is
            written in that case.
    """
    batch_id = batch_id or uuid.uuid4().hex
    token = BATCH_ID_CTX.set(batch_id)
    started = time.monotonic()
    try:
        now = deps.clock()
        resolved_limit = deps.pipeline.settings.resolve_limit(limit)
        batch = BatchResult(batch_id=batch_id, selector=selector.describe(now))

        try:
            units = await _select(selector, deps.registry, now)
        except RegistryUnavailableError as exc:
            logger.error(
                "Batch %s aborted before any source work: %s",
                batch_id,
                exc,
                extra={"event": events.BATCH_ABORT},
            )
            raise

        batch.sources_selected = len(units)
        selected = units[:resolved_limit]
        logger.info(
            "Batch %s (%s): %d due source(s), processing %d (limit=%d)",
            batch_id,
            batch.selector,
            len(units),
            len(selected),
            resolved_limit,
            extra={"event": events.BATCH_START},
        )

        for position, unit in enumerate(selected, start=1):
            source_token = SOURCE_ID_CTX.set(unit.source.id)
            try:
                result = await _run_source(unit, batch, position, resolved_limit, deps)
            except DealerbotError as exc:
                # Ledger or registry bookkeeping failed for this source only.
                result = SourceRunResult(source_id=unit.source.id, error=str(exc))
                logger.error(
                    "Source %s: bookkeeping failed, continuing with next source: %s",
                    unit.source.id,
                    exc,
                    extra={"event": events.SOURCE_FAILED},
                )
            finally:
                SOURCE_ID_CTX.reset(source_token)
            batch.add(result)

        batch.finish(time.monotonic() - started)
        if deps.metrics is not None:
            await deps.metrics.record_batch(batch)
        logger.info("%s", batch.format_summary(), extra={"event": events.BATCH_COMPLETE})
        return batch
    finally:
        BATCH_ID_CTX.reset(token)


async def reassign_rotation_ranks(registry: SourceRegistry) -> int:
    """Rewrite rotation ranks as ``1..N`` over the active sources.

    Returns:
        The number of ranked sources.
    """
    ranked = await registry.reassign_rotation_ranks()
    logger.info("Rotation maintenance complete: %d source(s) ranked", ranked)
    return ranked
