"""Task prompts and response schemas for the three inference stages.

Prompts are deliberately thin: a task statement, the page text or record,
and the JSON schema the backend must follow.  The backend's own system
instructions are out of this project's hands.
"""

from __future__ import annotations

import json
from typing import Any, Final

from dealerbot.core.models import CandidateItem, ExtractedRecord, Source

__all__ = [
    "EXPLORE_SCHEMA",
    "EXTRACT_SCHEMA",
    "VALIDATE_SCHEMA",
    "explore_prompt",
    "extract_prompt",
    "validate_prompt",
]

EXPLORE_SCHEMA: Final[dict[str, Any]] = {
    "type": "object",
    "required": ["vehicle_urls"],
    "properties": {
        "vehicle_urls": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["url"],
                "properties": {
                    "url": {"type": "string"},
                    "title": {"type": "string"},
                    "price": {"type": "number"},
                    "opportunity": {"enum": ["high", "medium", "low"]},
                },
            },
        },
        "pagination_urls": {"type": "array", "items": {"type": "string"}},
        "challenges": {"type": "array", "items": {"type": "string"}},
    },
}

EXTRACT_SCHEMA: Final[dict[str, Any]] = {
    "type": "object",
    "properties": {
        "brand": {"type": "string"},
        "model": {"type": "string"},
        "condition": {"enum": ["new", "used", "certified"]},
        "year": {"type": "integer"},
        "price": {"type": "number"},
        "mileage": {"type": "integer"},
        "description": {"type": "string"},
        "location": {"type": "string"},
        "features": {"type": "array", "items": {"type": "string"}},
        "image_urls": {"type": "array", "items": {"type": "string"}},
    },
}

VALIDATE_SCHEMA: Final[dict[str, Any]] = {
    "type": "object",
    "required": ["is_valid", "completeness", "accuracy", "consistency"],
    "properties": {
        "is_valid": {"type": "boolean"},
        "completeness": {"type": "number", "minimum": 0, "maximum": 1},
        "accuracy": {"type": "number", "minimum": 0, "maximum": 1},
        "consistency": {"type": "number", "minimum": 0, "maximum": 1},
        "is_duplicate": {"type": "boolean"},
        "issues": {"type": "array", "items": {"type": "string"}},
    },
}


def explore_prompt(source: Source, page_url: str, page_text: str) -> str:
    return (
        f"List the individual vehicle detail pages linked from this listing page of "
        f"dealership {source.name!r}. Classify each as high, medium or low opportunity "
        f"and report pagination links and scraping challenges.\n"
        f"Page URL: {page_url}\n"
        f"Page content:\n{page_text}"
    )


def extract_prompt(candidate: CandidateItem, page_url: str, page_text: str) -> str:
    hint = f"Listing title: {candidate.title}\n" if candidate.title else ""
    return (
        "Extract the vehicle offered on this page. Leave a field out when the page does "
        "not state it; never guess.\n"
        f"{hint}"
        f"Page URL: {page_url}\n"
        f"Page content:\n{page_text}"
    )


def validate_prompt(record: ExtractedRecord, context: dict[str, Any] | None = None) -> str:
    payload = record.model_dump(mode="json")
    ctx = f"Context: {json.dumps(context, default=str)}\n" if context else ""
    return (
        "Judge the quality of this extracted vehicle record. Score completeness, "
        "accuracy and consistency between 0 and 1, list concrete issues and flag "
        "obvious duplicates.\n"
        f"{ctx}"
        f"Record: {json.dumps(payload, ensure_ascii=False)}"
    )
