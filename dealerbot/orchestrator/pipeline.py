"""Single-source pipeline: explore → extract → validate → gate → persist.

This module implements :func:`run_one`, the processing of one
:class:`~dealerbot.core.models.Source` within a batch.  Each candidate item
discovered by the explore stage moves through::

    DISCOVERED → EXTRACTED → VALIDATED → PERSISTED | REJECTED | DUPLICATE
                                     ↘ ERRORED (at any stage)

Rules:

1. **Explore** runs once.  A failed explore ends the run with zero
   candidates and a run-level error.
2. Candidates are processed in discovery order, at most
   ``max_candidates_per_source`` of them; the rest are counted as
   ``skipped``.
3. **Extract** failure marks the item ``ERRORED`` and the run continues.
4. **Validate** call failure marks the item ``ERRORED``.  A malformed
   validate response is not a failure (the stage falls back to rules).
5. **Quality gate** failure marks the item ``REJECTED``.  It is a normal
   outcome, not an error, and is never retried within the run.
6. **Persist** returns ``created`` / ``duplicate`` / ``error``.
7. An unexpected exception while processing one item is caught and that
   item alone is marked ``ERRORED``.

Stages are awaited strictly one after another; no two items overlap.

Typical usage::

    deps = PipelineDeps(fetcher=fetcher, inference=inference, repo=repo, settings=settings)
    result = await run_one(source, deps)
    print(result.persisted, result.stage_errors)
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from dealerbot.clients.fetcher import PageFetcher
from dealerbot.clients.inference import InferenceClient
from dealerbot.core import events
from dealerbot.core.models import CandidateItem, PersistStatus, Provenance, Source
from dealerbot.core.settings import Settings
from dealerbot.stages.explore import explore
from dealerbot.stages.extract import extract
from dealerbot.stages.validate import passes_quality_gate, validate
from dealerbot.storage.item_repository import ItemRepository

__all__ = [
    "ItemState",
    "ItemOutcome",
    "SourceRunResult",
    "PipelineDeps",
    "process_candidate",
    "run_one",
]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


class ItemState(StrEnum):
    DISCOVERED = "discovered"
    EXTRACTED = "extracted"
    VALIDATED = "validated"
    PERSISTED = "persisted"
    REJECTED = "rejected"
    DUPLICATE = "duplicate"
    ERRORED = "errored"


@dataclass(slots=True)
class ItemOutcome:
    """Final state of one candidate item.

    Attributes:
        url: Candidate detail URL.
        state: Terminal :class:`ItemState`.
        detail: Failure message, rejection reason or persisted item id.
    """

    url: str
    state: ItemState
    detail: str | None = None


@dataclass
class SourceRunResult:
    """Counters and per-item outcomes for one source run.

    Attributes:
        source_id: Registry id of the source.
        discovered: Candidates returned by explore (before the cap).
        extracted: Items that produced an ExtractedRecord.
        validated: Items that produced a ValidationOutcome.
        persisted: Items newly stored.
        rejected: Items that failed the quality gate.
        duplicates: Items whose fingerprint already existed.
        errored: Items that failed at any stage.
        skipped: Candidates beyond the per-source cap.
        validation_fallbacks: Items judged by the rule-based validator.
        stage_errors: Failure counts keyed by stage name.
        items: Per-item outcomes in processing order.
        explore_error: Explore failure message, if explore failed.
        error: Run-level error; set when the run as a whole failed.
    """

    source_id: str
    discovered: int = 0
    extracted: int = 0
    validated: int = 0
    persisted: int = 0
    rejected: int = 0
    duplicates: int = 0
    errored: int = 0
    skipped: int = 0
    validation_fallbacks: int = 0
    stage_errors: dict[str, int] = field(default_factory=dict)
    items: list[ItemOutcome] = field(default_factory=list)
    explore_error: str | None = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def record_stage_error(self, stage: str) -> None:
        self.stage_errors[stage] = self.stage_errors.get(stage, 0) + 1

    def finish_item(self, url: str, state: ItemState, detail: str | None = None) -> ItemState:
        counter = {
            ItemState.PERSISTED: "persisted",
            ItemState.REJECTED: "rejected",
            ItemState.DUPLICATE: "duplicates",
            ItemState.ERRORED: "errored",
        }.get(state)
        if counter is not None:
            setattr(self, counter, getattr(self, counter) + 1)
        self.items.append(ItemOutcome(url=url, state=state, detail=detail))
        return state

    def as_dict(self) -> dict[str, Any]:
        """JSON-serialisable summary, stored as the job result."""
        return {
            "source_id": self.source_id,
            "discovered": self.discovered,
            "extracted": self.extracted,
            "validated": self.validated,
            "persisted": self.persisted,
            "rejected": self.rejected,
            "duplicates": self.duplicates,
            "errored": self.errored,
            "skipped": self.skipped,
            "validation_fallbacks": self.validation_fallbacks,
            "stage_errors": dict(self.stage_errors),
            "explore_error": self.explore_error,
            "error": self.error,
            "items": [
                {"url": i.url, "state": str(i.state), "detail": i.detail} for i in self.items
            ],
        }


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class PipelineDeps:
    """Collaborators shared by every source run in a batch."""

    fetcher: PageFetcher
    inference: InferenceClient
    repo: ItemRepository
    settings: Settings
    clock: Callable[[], datetime] = _utcnow


# ---------------------------------------------------------------------------
# Per-item processing
# ---------------------------------------------------------------------------


async def process_candidate(
    candidate: CandidateItem,
    source: Source,
    deps: PipelineDeps,
    result: SourceRunResult,
) -> ItemState:
    """Run one candidate through extract → validate → gate → persist.

    Expected failures are recorded in *result*; unexpected exceptions
    propagate to :func:`run_one`, which counts the item as errored.

    Returns:
        The item's terminal :class:`ItemState`.
    """
    settings = deps.settings

    # ------------------------------------------------------------------
    # Extract
    # ------------------------------------------------------------------
    extracted = await extract(
        candidate,
        deps.fetcher,
        deps.inference,
        year_min=settings.year_min,
        year_max=settings.year_max,
    )
    if not extracted.ok or extracted.value is None:
        result.record_stage_error("extract")
        logger.warning(
            "Source %s: extract failed for %s: %s",
            source.id,
            candidate.url,
            extracted.failure,
            extra={"event": events.ITEM_EXTRACT_FAILED},
        )
        return result.finish_item(candidate.url, ItemState.ERRORED, str(extracted.failure))
    result.extracted += 1
    extraction = extracted.value

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------
    validated = await validate(
        extraction.record,
        deps.inference,
        year_min=settings.year_min,
        year_max=settings.year_max,
        context={"source": source.name, "url": extraction.source_url},
        fallback_score=settings.quality_threshold,
    )
    if not validated.ok or validated.value is None:
        result.record_stage_error("validate")
        logger.warning(
            "Source %s: validate failed for %s: %s",
            source.id,
            candidate.url,
            validated.failure,
            extra={"event": events.ITEM_VALIDATE_FAILED},
        )
        return result.finish_item(candidate.url, ItemState.ERRORED, str(validated.failure))
    result.validated += 1
    outcome = validated.value
    if outcome.fallback:
        result.validation_fallbacks += 1

    # ------------------------------------------------------------------
    # Quality gate
    # ------------------------------------------------------------------
    if not passes_quality_gate(
        outcome,
        settings.quality_threshold,
        honor_duplicate_flag=settings.honor_model_duplicate_flag,
    ):
        reason = (
            f"valid={outcome.is_valid} score={outcome.quality_score} "
            f"duplicate={outcome.is_duplicate}"
        )
        logger.info(
            "Source %s: rejected %s (%s)",
            source.id,
            candidate.url,
            reason,
            extra={"event": events.ITEM_REJECTED},
        )
        return result.finish_item(candidate.url, ItemState.REJECTED, reason)

    # ------------------------------------------------------------------
    # Persist
    # ------------------------------------------------------------------
    provenance = Provenance(
        source_id=source.id,
        source_url=extraction.source_url,
        discovered_at=deps.clock(),
    )
    persisted = await deps.repo.persist(extraction.record, provenance, validation=outcome)

    if persisted.status is PersistStatus.DUPLICATE:
        logger.info(
            "Source %s: duplicate %s (%s)",
            source.id,
            candidate.url,
            persisted.fingerprint[:12],
            extra={"event": events.ITEM_DUPLICATE},
        )
        return result.finish_item(candidate.url, ItemState.DUPLICATE, persisted.fingerprint)

    if persisted.status is PersistStatus.ERROR:
        result.record_stage_error("persist")
        logger.error(
            "Source %s: persist failed for %s: %s",
            source.id,
            candidate.url,
            persisted.message,
            extra={"event": events.ITEM_PERSIST_ERROR},
        )
        return result.finish_item(candidate.url, ItemState.ERRORED, persisted.message)

    logger.info(
        "Source %s: persisted %r as item %s (score=%d)",
        source.id,
        extraction.record.title,
        persisted.item_id,
        outcome.quality_score,
        extra={"event": events.ITEM_PERSISTED},
    )
    return result.finish_item(candidate.url, ItemState.PERSISTED, str(persisted.item_id))


# ---------------------------------------------------------------------------
# Per-source runner
# ---------------------------------------------------------------------------


async def run_one(
    source: Source,
    deps: PipelineDeps,
    result: SourceRunResult | None = None,
) -> SourceRunResult:
    """Process one source end to end.

    Never raises for stage or item failures; they are reflected in the
    returned :class:`SourceRunResult`.

    Args:
        source: Source selected by the scheduler.
        deps: Shared collaborators.
        result: Optional result object to fill in place; the scheduler
            passes one so counters survive a per-source timeout.

    Returns:
        Counters and per-item outcomes for this run.
    """
    if result is None:
        result = SourceRunResult(source_id=source.id)

    # ------------------------------------------------------------------
    # Explore
    # ------------------------------------------------------------------
    explored = await explore(
        source,
        deps.fetcher,
        deps.inference,
        max_candidates=deps.settings.explore_max_candidates,
    )
    if not explored.ok or explored.value is None:
        result.record_stage_error("explore")
        result.explore_error = str(explored.failure)
        result.error = f"explore failed: {explored.failure}"
        logger.warning(
            "Source %s: explore failed, ending run with zero candidates: %s",
            source.id,
            explored.failure,
            extra={"event": events.SOURCE_EXPLORE_FAILED},
        )
        return result

    candidates = list(explored.value.candidates)
    cap = deps.settings.max_candidates_per_source
    result.discovered = len(candidates)
    result.skipped = max(0, len(candidates) - cap)

    # ------------------------------------------------------------------
    # Items, strictly in discovery order
    # ------------------------------------------------------------------
    for candidate in candidates[:cap]:
        try:
            await process_candidate(candidate, source, deps, result)
        except Exception as exc:  # noqa: BLE001
            result.record_stage_error("item")
            result.finish_item(candidate.url, ItemState.ERRORED, f"{type(exc).__name__}: {exc}")
            logger.error(
                "Source %s: unexpected error processing %s, item skipped: %s",
                source.id,
                candidate.url,
                exc,
                exc_info=True,
                extra={"event": events.ITEM_ERRORED},
            )

    logger.info(
        "Source %s: done, discovered=%d extracted=%d validated=%d persisted=%d "
        "rejected=%d dup=%d errored=%d skipped=%d",
        source.id,
        result.discovered,
        result.extracted,
        result.validated,
        result.persisted,
        result.rejected,
        result.duplicates,
        result.errored,
        result.skipped,
    )
    return result
