"""Two-case result type returned by every stage function.

Stage functions never raise for expected failures.  They return a
:class:`StageResult` that holds either a value or a :class:`StageFailure`,
and the orchestrator branches on :attr:`StageResult.ok`.

Typical usage::

    result = await extract(candidate, fetcher, inference, year_min=1900, year_max=2027)
    if not result.ok:
        logger.warning("extract failed: %s", result.failure)
        return
    record = result.value.record
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Generic, TypeVar

from dealerbot.core.exceptions import MalformedUpstreamError, TransientExternalError

__all__ = ["ErrorKind", "StageFailure", "StageResult", "failure_from_exception"]

T = TypeVar("T")


class ErrorKind(StrEnum):
    TRANSIENT_EXTERNAL = "transient_external"
    MALFORMED_UPSTREAM = "malformed_upstream"
    UNEXPECTED = "unexpected"


@dataclass(frozen=True, slots=True)
class StageFailure:
    """Why a stage did not produce a value.

    Attributes:
        stage: ``"explore"`` / ``"extract"`` / ``"validate"``.
        kind: Failure class.
        message: Human-readable detail.
    """

    stage: str
    kind: ErrorKind
    message: str

    def __str__(self) -> str:
        return f"{self.stage}/{self.kind}: {self.message}"


@dataclass(frozen=True, slots=True)
class StageResult(Generic[T]):
    """Exactly one of ``value`` / ``failure`` is set."""

    value: T | None = None
    failure: StageFailure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, value: T) -> StageResult[T]:
        return cls(value=value)

    @classmethod
    def fail(cls, stage: str, kind: ErrorKind, message: str) -> StageResult[T]:
        return cls(failure=StageFailure(stage=stage, kind=kind, message=message))


def failure_from_exception(stage: str, exc: BaseException) -> StageResult[T]:
    """Classify *exc* into a failed :class:`StageResult`."""
    if isinstance(exc, TransientExternalError):
        kind = ErrorKind.TRANSIENT_EXTERNAL
    elif isinstance(exc, MalformedUpstreamError):
        kind = ErrorKind.MALFORMED_UPSTREAM
    else:
        kind = ErrorKind.UNEXPECTED
    return StageResult.fail(stage, kind, str(exc) or type(exc).__name__)
