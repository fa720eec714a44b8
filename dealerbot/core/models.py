"""Dealerbot core domain models.

This module defines the types shared by the registry, the stage functions,
the orchestrator and the storage layer:

* :class:`Source` / :class:`WorkUnit`: a dealership listing origin and its
  derived "due now" view.
* :class:`CandidateItem`: a detail URL discovered by the explore stage.
* :class:`ExtractedRecord`: the structured vehicle record produced by the
  extract stage.
* :class:`ValidationOutcome`: the validate stage's judgement.
* :class:`Job` / :class:`JobStatus`: the job ledger entry and its
  monotonic status machine.
* :class:`Provenance` / :class:`PersistOutcome`: persistence input and
  result.

Typical usage::

    from dealerbot.core.models import RefreshCadence, Source

    source = Source(
        id="d1",
        name="Autos del Sur",
        entry_urls=["https://autosdelsur.example/usados"],
        cadence=RefreshCadence.DAILY,
    )
    source.is_due(datetime.now(UTC))   # True: never processed
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any, Final

from pydantic import BaseModel, Field, computed_field, field_validator

__all__ = [
    "RefreshCadence",
    "CADENCE_THRESHOLDS",
    "NEVER_PROCESSED_STALENESS_H",
    "OVERDUE_THRESHOLD",
    "Source",
    "WorkUnit",
    "OpportunityLevel",
    "CandidateItem",
    "VehicleCondition",
    "ExtractedRecord",
    "REQUIRED_RECORD_FIELDS",
    "ValidationOutcome",
    "JobStatus",
    "JOB_TRANSITIONS",
    "Job",
    "Provenance",
    "PersistStatus",
    "PersistOutcome",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Sources and scheduling
# ---------------------------------------------------------------------------


class RefreshCadence(StrEnum):
    """How often a source should be re-processed."""

    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


#: Minimum age of ``last_processed_at`` before a source is due again.
CADENCE_THRESHOLDS: Final[dict[RefreshCadence, timedelta]] = {
    RefreshCadence.HOURLY: timedelta(hours=1),
    RefreshCadence.DAILY: timedelta(hours=24),
    RefreshCadence.WEEKLY: timedelta(hours=168),
}

#: Staleness reported for sources that have never been processed.
NEVER_PROCESSED_STALENESS_H: Final[float] = 999.0

#: Age beyond which a source is overdue and eligible for a high-priority batch.
OVERDUE_THRESHOLD: Final[timedelta] = timedelta(hours=48)


class Source(BaseModel):
    """A dealership listing origin.

    ``entry_urls`` is ordered by priority (used-vehicles page first, then
    the base listing URL, then the website root).  A source with no entry
    URL is never selected by the scheduler.

    Attributes:
        id: Opaque registry identifier.
        name: Display name.
        entry_urls: Candidate entry URLs, highest priority first.
        rotation_rank: Round-robin rank, unique among active sources.
            ``None`` until the maintenance operation assigns one.
        cadence: Refresh cadence.
        last_processed_at: UTC timestamp of the last completed run, or
            ``None`` if the source was never processed.
        active: Inactive sources are never selected and carry no rank.
    """

    model_config = {"frozen": True}

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    entry_urls: list[str] = Field(default_factory=list)
    rotation_rank: int | None = Field(None, ge=1)
    cadence: RefreshCadence = RefreshCadence.DAILY
    last_processed_at: datetime | None = None
    active: bool = True

    @field_validator("entry_urls", mode="before")
    @classmethod
    def _drop_blank_urls(cls, v: object) -> object:
        """Discard blank / ``None`` URLs while keeping priority order."""
        if isinstance(v, (list, tuple)):
            return [u.strip() for u in v if isinstance(u, str) and u.strip()]
        return v

    @field_validator("last_processed_at")
    @classmethod
    def _as_utc(cls, v: datetime | None) -> datetime | None:
        """Naive timestamps (e.g. SQLite ``CURRENT_TIMESTAMP``) are UTC."""
        if v is None:
            return None
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v.astimezone(UTC)

    @property
    def has_entry_url(self) -> bool:
        return bool(self.entry_urls)

    def staleness(self, now: datetime) -> timedelta | None:
        """Time since the last completed run, or ``None`` if never processed."""
        if self.last_processed_at is None:
            return None
        return now - self.last_processed_at

    def staleness_hours(self, now: datetime) -> float:
        """Staleness in hours; never-processed sources report 999."""
        age = self.staleness(now)
        if age is None:
            return NEVER_PROCESSED_STALENESS_H
        return age.total_seconds() / 3600.0

    def is_due(self, now: datetime) -> bool:
        """Return ``True`` if the cadence threshold has elapsed (inclusive).

        A source that was never processed is always due.
        """
        age = self.staleness(now)
        if age is None:
            return True
        return age >= CADENCE_THRESHOLDS[self.cadence]

    def is_overdue(self, now: datetime, threshold: timedelta = OVERDUE_THRESHOLD) -> bool:
        """Never processed, or last processed more than *threshold* ago.

        Independent of cadence.
        """
        age = self.staleness(now)
        return age is None or age > threshold


@dataclass(frozen=True, slots=True)
class WorkUnit:
    """One source's opportunity to run in the current invocation (derived).

    Attributes:
        source: The registry row.
        due_now: Whether the cadence threshold has elapsed.
        staleness_h: Hours since last processed (999 when never processed).
    """

    source: Source
    due_now: bool
    staleness_h: float

    @classmethod
    def from_source(cls, source: Source, now: datetime) -> WorkUnit:
        return cls(
            source=source,
            due_now=source.is_due(now),
            staleness_h=source.staleness_hours(now),
        )


# ---------------------------------------------------------------------------
# Stage payloads
# ---------------------------------------------------------------------------


class OpportunityLevel(StrEnum):
    """Explore-stage classification of a candidate's commercial interest."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class CandidateItem(BaseModel):
    """A discovered vehicle detail URL, prior to extraction.

    Ephemeral: lives only for one source run.
    """

    model_config = {"frozen": True}

    url: str = Field(..., min_length=1)
    title: str | None = None
    price: float | None = Field(None, ge=0)
    opportunity: OpportunityLevel = OpportunityLevel.MEDIUM


class VehicleCondition(StrEnum):
    NEW = "new"
    USED = "used"
    CERTIFIED = "certified"


class ExtractedRecord(BaseModel):
    """Structured vehicle record produced by the extract stage.

    Absent fields are ``None`` (or an empty list); nothing is inferred.
    Numeric fields are non-negative.  The year range is enforced by the
    extract stage against ``YEAR_MIN`` / ``YEAR_MAX``.
    """

    model_config = {"frozen": True}

    brand: str | None = None
    model: str | None = None
    condition: VehicleCondition | None = None
    year: int | None = Field(None, ge=0)
    price: float | None = Field(None, ge=0)
    mileage: int | None = Field(None, ge=0)
    description: str | None = None
    location: str | None = None
    features: list[str] = Field(default_factory=list)
    image_urls: list[str] = Field(default_factory=list)

    @field_validator("brand", "model", "description", "location", mode="before")
    @classmethod
    def _blank_to_none(cls, v: object) -> object:
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @property
    def missing_required(self) -> list[str]:
        """Names of required fields (brand, model, year, price) that are absent."""
        return [name for name in REQUIRED_RECORD_FIELDS if getattr(self, name) is None]

    @property
    def title(self) -> str:
        """Display title ``"<brand> <model> <year>"`` built from present parts."""
        parts = [self.brand, self.model, str(self.year) if self.year is not None else None]
        return " ".join(p for p in parts if p)


#: Fields without which a record can never be valid.
REQUIRED_RECORD_FIELDS: Final[tuple[str, ...]] = ("brand", "model", "year", "price")


class ValidationOutcome(BaseModel):
    """The validate stage's judgement on one :class:`ExtractedRecord`.

    ``quality_score`` is derived from the three sub-scores with equal
    weights, so a backend cannot report a score that disagrees with them.
    Only the rule-based validator sets ``score_floor``, which lifts the
    derived score to a fixed minimum.

    Attributes:
        is_valid: Validity flag.  Forced to ``False`` by the validate stage
            whenever a required field is missing.
        completeness: Share of expected fields present, in ``[0, 1]``.
        accuracy: Plausibility of field values, in ``[0, 1]``.
        consistency: Internal agreement between fields, in ``[0, 1]``.
        is_duplicate: Advisory duplicate signal from the backend.
        issues: Free-text problems found.
        fallback: ``True`` when produced by the rule-based validator.
        score_floor: Minimum ``quality_score``; ``None`` for backend outcomes.
    """

    model_config = {"frozen": True}

    is_valid: bool
    completeness: float = Field(..., ge=0.0, le=1.0)
    accuracy: float = Field(..., ge=0.0, le=1.0)
    consistency: float = Field(..., ge=0.0, le=1.0)
    is_duplicate: bool = False
    issues: list[str] = Field(default_factory=list)
    fallback: bool = False
    score_floor: int | None = Field(None, ge=0, le=100)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def quality_score(self) -> int:
        mean = (self.completeness + self.accuracy + self.consistency) / 3.0
        score = round(mean * 100)
        if self.score_floor is not None:
            return max(score, self.score_floor)
        return score


# ---------------------------------------------------------------------------
# Job ledger
# ---------------------------------------------------------------------------


class JobStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    def can_transition_to(self, target: JobStatus) -> bool:
        return target in JOB_TRANSITIONS[self]


#: Legal status moves.  Terminal states have no outgoing edges.
JOB_TRANSITIONS: Final[dict[JobStatus, frozenset[JobStatus]]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class Job(BaseModel):
    """One tracked unit of orchestration work (one source in one batch)."""

    model_config = {"frozen": True}

    id: str
    batch_id: str
    source_id: str
    job_type: str = "source_run"
    status: JobStatus = JobStatus.PENDING
    payload: dict[str, Any] = Field(default_factory=dict)
    result: dict[str, Any] | None = None
    error_message: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class Provenance(BaseModel):
    """Where and when a persisted record was discovered."""

    model_config = {"frozen": True}

    source_id: str
    source_url: str
    discovered_at: datetime


class PersistStatus(StrEnum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class PersistOutcome:
    """Result of one persistence attempt.

    Attributes:
        status: ``created`` / ``duplicate`` / ``error``.
        fingerprint: Content fingerprint of the record.
        item_id: Row id of the created (or pre-existing) item, if known.
        message: Error detail when ``status`` is ``error``.
    """

    status: PersistStatus
    fingerprint: str
    item_id: int | None = None
    message: str | None = None
