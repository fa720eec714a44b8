"""Validate stage: score an ExtractedRecord and decide whether it may be stored.

The inference backend is asked for a validity flag, three sub-scores in
``[0, 1]``, a duplicate hint and a list of issues.  Two rules override the
backend:

* a record missing any of brand, model, year or price is never valid;
* the quality score is always recomputed from the sub-scores.

When the backend answers with something that cannot be parsed, the
rule-based :func:`fallback_validation` is used instead and the outcome is
marked ``fallback=True``.  A failed *call* (timeout, rate limit, 5xx) is not
covered by the fallback; it surfaces as a transient failure.

Typical usage::

    result = await validate(record, inference, year_min=1900, year_max=2027)
    if result.ok and passes_quality_gate(result.value, 70):
        ...
"""

from __future__ import annotations

import logging
import math
from typing import Any, Final

from pydantic import ValidationError

from dealerbot.clients.inference import InferenceClient
from dealerbot.core import events
from dealerbot.core.exceptions import (
    InferenceResponseError,
    MalformedUpstreamError,
    TransientExternalError,
)
from dealerbot.core.models import ExtractedRecord, ValidationOutcome
from dealerbot.stages import prompts
from dealerbot.stages.normalizers import normalise_string_list, pick
from dealerbot.stages.results import StageResult, failure_from_exception

__all__ = [
    "FALLBACK_QUALITY_SCORE",
    "FALLBACK_SUBSCORE",
    "enforce_required_fields",
    "fallback_validation",
    "parse_validation_outcome",
    "passes_quality_gate",
    "validate",
]

logger = logging.getLogger(__name__)

STAGE = "validate"

#: Accuracy and consistency reported by the rule-based validator.
FALLBACK_SUBSCORE: Final[float] = 0.7

#: Default minimum quality score of a rule-based outcome.
FALLBACK_QUALITY_SCORE: Final[int] = 70

#: Fields counted towards fallback completeness.
_COMPLETENESS_FIELDS: Final[tuple[str, ...]] = (
    "brand",
    "model",
    "condition",
    "year",
    "price",
    "mileage",
    "description",
    "features",
    "image_urls",
)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _score(value: Any, name: str) -> float:
    """Coerce a sub-score to ``[0, 1]``; percentages (1, 100] are rescaled."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InferenceResponseError(STAGE, f"{name} is not a number: {value!r}")
    number = float(value)
    if not math.isfinite(number) or number < 0 or number > 100:
        raise InferenceResponseError(STAGE, f"{name} out of range: {value!r}")
    return number / 100.0 if number > 1 else number


def _flag(value: Any, name: str, *, default: bool | None = None) -> bool:
    if value is None and default is not None:
        return default
    if not isinstance(value, bool):
        raise InferenceResponseError(STAGE, f"{name} is not a boolean: {value!r}")
    return value


def parse_validation_outcome(data: dict[str, Any]) -> ValidationOutcome:
    """Parse a validate response object into a :class:`ValidationOutcome`.

    Spanish keys (``esValido``, ``completitud``, ``precision``,
    ``consistencia``, ``esDuplicado``, ``problemas``) are accepted.  Any
    reported overall score is ignored.

    Raises:
        InferenceResponseError: If a required key is missing or mistyped.
    """
    try:
        return ValidationOutcome(
            is_valid=_flag(pick(data, "is_valid", "isValid", "esValido"), "is_valid"),
            completeness=_score(pick(data, "completeness", "completitud"), "completeness"),
            accuracy=_score(pick(data, "accuracy", "precision"), "accuracy"),
            consistency=_score(pick(data, "consistency", "consistencia"), "consistency"),
            is_duplicate=_flag(
                pick(data, "is_duplicate", "isDuplicate", "esDuplicado"),
                "is_duplicate",
                default=False,
            ),
            issues=normalise_string_list(pick(data, "issues", "problemas")),
        )
    except ValidationError as exc:
        raise InferenceResponseError(STAGE, f"Invalid validation outcome: {exc}") from exc


def enforce_required_fields(outcome: ValidationOutcome, record: ExtractedRecord) -> ValidationOutcome:
    """Force ``is_valid=False`` when *record* lacks a required field."""
    missing = record.missing_required
    if not missing:
        return outcome
    issue = f"missing required field(s): {', '.join(missing)}"
    issues = outcome.issues if issue in outcome.issues else [*outcome.issues, issue]
    return outcome.model_copy(update={"is_valid": False, "issues": issues})


# ---------------------------------------------------------------------------
# Rule-based fallback
# ---------------------------------------------------------------------------


def _present(value: Any) -> bool:
    if isinstance(value, list):
        return bool(value)
    return value is not None


def fallback_validation(
    record: ExtractedRecord,
    *,
    year_min: int,
    year_max: int,
    score_floor: int = FALLBACK_QUALITY_SCORE,
) -> ValidationOutcome:
    """Judge *record* with fixed rules.

    Valid only when brand, model, year and price are present, the price is
    positive and the year lies in ``[year_min, year_max]``.  Completeness is
    the share of the nine expected fields present; accuracy and consistency
    are fixed at :data:`FALLBACK_SUBSCORE`.  The quality score never drops
    below *score_floor*, so a sparse but valid record is not rejected only
    because the backend's answer was unreadable.
    """
    issues: list[str] = []
    missing = record.missing_required
    if missing:
        issues.append(f"missing required field(s): {', '.join(missing)}")
    if record.price is not None and record.price <= 0:
        issues.append("price must be positive")
    if record.year is not None and not year_min <= record.year <= year_max:
        issues.append(f"year {record.year} outside [{year_min}, {year_max}]")

    present = sum(1 for name in _COMPLETENESS_FIELDS if _present(getattr(record, name)))
    return ValidationOutcome(
        is_valid=not issues,
        completeness=present / len(_COMPLETENESS_FIELDS),
        accuracy=FALLBACK_SUBSCORE,
        consistency=FALLBACK_SUBSCORE,
        issues=issues,
        fallback=True,
        score_floor=score_floor,
    )


# ---------------------------------------------------------------------------
# Stage entry point and gate
# ---------------------------------------------------------------------------


async def validate(
    record: ExtractedRecord,
    inference: InferenceClient,
    *,
    year_min: int,
    year_max: int,
    context: dict[str, Any] | None = None,
    fallback_score: int = FALLBACK_QUALITY_SCORE,
) -> StageResult[ValidationOutcome]:
    """Run the validate stage for one record.

    Args:
        record: Record produced by the extract stage.
        inference: Inference client.
        year_min: Oldest plausible year, used by the fallback.
        year_max: Newest plausible year, used by the fallback.
        context: Optional hints (source name, detail URL) passed to the
            backend.
        fallback_score: Minimum quality score of a rule-based outcome.

    Returns:
        A successful result (model or fallback outcome), or a transient
        failure when the call itself failed.
    """
    try:
        data = await inference.generate(
            prompts.validate_prompt(record, context), prompts.VALIDATE_SCHEMA
        )
        outcome = parse_validation_outcome(data)
    except TransientExternalError as exc:
        return failure_from_exception(STAGE, exc)
    except MalformedUpstreamError as exc:
        logger.warning(
            "validate: malformed response for %r, using rule-based validation: %s",
            record.title,
            exc,
            extra={"event": events.ITEM_VALIDATE_FALLBACK},
        )
        outcome = fallback_validation(
            record, year_min=year_min, year_max=year_max, score_floor=fallback_score
        )

    return StageResult.success(enforce_required_fields(outcome, record))


def passes_quality_gate(
    outcome: ValidationOutcome,
    threshold: int,
    *,
    honor_duplicate_flag: bool = True,
) -> bool:
    """Return ``True`` if *outcome* may be persisted.

    The gate is inclusive: a score equal to *threshold* passes.
    """
    if not outcome.is_valid or outcome.quality_score < threshold:
        return False
    return not (honor_duplicate_flag and outcome.is_duplicate)
