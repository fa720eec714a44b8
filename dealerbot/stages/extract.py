"""Extract stage: turn one candidate detail page into an ExtractedRecord.

The stage fetches the candidate's detail page, asks the inference backend for
the vehicle fields and parses the answer leniently: a field with the wrong
type or an out-of-range value is dropped to ``None`` and named in
:attr:`ExtractionResult.dropped_fields`, so one bad field never costs the
whole record.  Spanish keys (``marca``, ``modelo``, ``año``, ``precio``...)
are accepted as aliases.

Failure classes:

* detail fetch failure or inference call failure → transient failure;
* response without a JSON object → malformed failure.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Final

from dealerbot.clients.fetcher import PageFetcher
from dealerbot.clients.inference import InferenceClient
from dealerbot.core.exceptions import MalformedUpstreamError, TransientExternalError
from dealerbot.core.models import CandidateItem, ExtractedRecord
from dealerbot.stages import prompts
from dealerbot.stages.normalizers import (
    normalise_condition,
    normalise_int,
    normalise_number,
    normalise_string_list,
    normalise_text,
    normalise_url_list,
    pick,
)
from dealerbot.stages.results import StageResult, failure_from_exception

__all__ = ["ExtractionResult", "extract", "parse_extracted_record"]

logger = logging.getLogger(__name__)

STAGE = "extract"

#: Accepted keys per record field, preferred key first.
_FIELD_KEYS: Final[dict[str, tuple[str, ...]]] = {
    "brand": ("brand", "make", "marca"),
    "model": ("model", "modelo"),
    "condition": ("condition", "condicion"),
    "year": ("year", "año", "anio"),
    "price": ("price", "precio"),
    "mileage": ("mileage", "kilometraje", "km"),
    "description": ("description", "descripcion"),
    "location": ("location", "ubicacion"),
    "features": ("features", "caracteristicas"),
    "image_urls": ("image_urls", "images", "imagenes"),
}


@dataclass(frozen=True, slots=True)
class ExtractionResult:
    """Output of the extract stage for one candidate.

    Attributes:
        record: The parsed record.
        source_url: Final URL of the fetched detail page.
        dropped_fields: Fields present in the response but discarded as
            invalid.
    """

    record: ExtractedRecord
    source_url: str
    dropped_fields: tuple[str, ...] = ()


def parse_extracted_record(
    data: dict[str, Any],
    *,
    base_url: str,
    year_min: int,
    year_max: int,
) -> tuple[ExtractedRecord, list[str]]:
    """Build an :class:`ExtractedRecord` from a loosely-typed response.

    Args:
        data: Decoded response object.
        base_url: Page URL used to resolve relative image URLs.
        year_min: Oldest accepted model year.
        year_max: Newest accepted model year.

    Returns:
        ``(record, dropped_fields)``.
    """
    raw = {name: pick(data, *keys) for name, keys in _FIELD_KEYS.items()}
    values: dict[str, Any] = {
        "brand": normalise_text(raw["brand"]),
        "model": normalise_text(raw["model"]),
        "condition": normalise_condition(raw["condition"]),
        "year": normalise_int(raw["year"]),
        "price": normalise_number(raw["price"]),
        "mileage": normalise_int(raw["mileage"]),
        "description": normalise_text(raw["description"]),
        "location": normalise_text(raw["location"]),
    }
    if values["year"] is not None and not year_min <= values["year"] <= year_max:
        values["year"] = None

    dropped = [name for name, value in values.items() if value is None and raw[name] is not None]

    record = ExtractedRecord(
        **values,
        features=normalise_string_list(raw["features"]),
        image_urls=normalise_url_list(raw["image_urls"], base_url=base_url),
    )
    return record, dropped


async def extract(
    candidate: CandidateItem,
    fetcher: PageFetcher,
    inference: InferenceClient,
    *,
    year_min: int,
    year_max: int,
) -> StageResult[ExtractionResult]:
    """Run the extract stage for one candidate.

    Returns:
        A successful result holding an :class:`ExtractionResult`, or a
        failure classified as transient or malformed.
    """
    try:
        page = await fetcher.fetch(candidate.url)
        data = await inference.generate(
            prompts.extract_prompt(candidate, page.url, page.text),
            prompts.EXTRACT_SCHEMA,
        )
    except (TransientExternalError, MalformedUpstreamError) as exc:
        return failure_from_exception(STAGE, exc)

    record, dropped = parse_extracted_record(
        data, base_url=page.url, year_min=year_min, year_max=year_max
    )
    if dropped:
        logger.info("extract: %s dropped invalid field(s) %s", candidate.url, ", ".join(dropped))
    return StageResult.success(
        ExtractionResult(record=record, source_url=page.url, dropped_fields=tuple(dropped))
    )
