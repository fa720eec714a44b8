"""Stage functions of the per-source pipeline: explore, extract, validate."""

from dealerbot.stages.explore import ExploreResult, explore, parse_explore_response
from dealerbot.stages.extract import ExtractionResult, extract, parse_extracted_record
from dealerbot.stages.results import ErrorKind, StageFailure, StageResult
from dealerbot.stages.validate import (
    fallback_validation,
    parse_validation_outcome,
    passes_quality_gate,
    validate,
)

__all__ = [
    "ErrorKind",
    "StageFailure",
    "StageResult",
    "ExploreResult",
    "explore",
    "parse_explore_response",
    "ExtractionResult",
    "extract",
    "parse_extracted_record",
    "fallback_validation",
    "parse_validation_outcome",
    "passes_quality_gate",
    "validate",
]
