"""Explore stage: find candidate vehicle pages on a dealership site.

Given a :class:`~dealerbot.core.models.Source`, the stage:

1. Fetches the first entry URL that responds (entry URLs are tried in
   priority order: used-vehicles page, base URL, website root).
2. Calls the inference backend once with the page text.
3. Parses the response into an :class:`ExploreResult`: candidate detail
   URLs (resolved against the entry URL, deduplicated, order preserved,
   bounded) plus pagination URLs and reported scraping challenges.

A source whose entry URLs all fail to fetch, or whose explore response is
malformed, yields a failed :class:`~dealerbot.stages.results.StageResult`;
the orchestrator then ends that source run with zero candidates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from dealerbot.clients.fetcher import FetchedPage, PageFetcher
from dealerbot.clients.inference import InferenceClient
from dealerbot.core.exceptions import (
    InferenceResponseError,
    MalformedUpstreamError,
    TransientExternalError,
)
from dealerbot.core.models import CandidateItem, Source
from dealerbot.stages import prompts
from dealerbot.stages.normalizers import (
    normalise_number,
    normalise_opportunity,
    normalise_string_list,
    normalise_text,
    normalise_url,
    normalise_url_list,
    pick,
)
from dealerbot.stages.results import ErrorKind, StageResult, failure_from_exception

__all__ = ["ExploreResult", "explore", "parse_explore_response"]

logger = logging.getLogger(__name__)

STAGE = "explore"


@dataclass(frozen=True, slots=True)
class ExploreResult:
    """Output of the explore stage for one source.

    Attributes:
        entry_url: The entry URL that was fetched successfully.
        candidates: Candidate items in discovery order.
        pagination_urls: Further listing pages reported by the backend.
        challenges: Scraping obstacles reported by the backend.
    """

    entry_url: str
    candidates: tuple[CandidateItem, ...] = ()
    pagination_urls: tuple[str, ...] = ()
    challenges: tuple[str, ...] = ()


def parse_explore_response(
    data: dict[str, Any],
    *,
    base_url: str,
    max_candidates: int,
) -> ExploreResult:
    """Turn an explore response object into an :class:`ExploreResult`.

    Entries may be objects with a ``url`` key or bare URL strings.  Entries
    whose URL cannot be resolved to http(s) are skipped.

    Raises:
        InferenceResponseError: If the candidate list is missing or not a list.
    """
    raw = pick(data, "vehicle_urls", "vehicleUrls", "candidates")
    if not isinstance(raw, list):
        raise InferenceResponseError(STAGE, "Response has no 'vehicle_urls' list")

    seen: set[str] = set()
    candidates: list[CandidateItem] = []
    for entry in raw:
        if len(candidates) >= max_candidates:
            break
        fields = entry if isinstance(entry, dict) else {"url": entry}
        url = normalise_url(fields.get("url"), base_url=base_url)
        if url is None or url in seen:
            continue
        seen.add(url)
        candidates.append(
            CandidateItem(
                url=url,
                title=normalise_text(fields.get("title")),
                price=normalise_number(fields.get("price")),
                opportunity=normalise_opportunity(
                    pick(fields, "opportunity", "opportunityLevel", "opportunity_level")
                ),
            )
        )

    skipped = len(raw) - len(candidates)
    if skipped:
        logger.debug("explore: kept %d of %d entries for %s", len(candidates), len(raw), base_url)

    return ExploreResult(
        entry_url=base_url,
        candidates=tuple(candidates),
        pagination_urls=tuple(
            normalise_url_list(
                pick(data, "pagination_urls", "paginationUrls"), base_url=base_url
            )
        ),
        challenges=tuple(
            normalise_string_list(pick(data, "challenges", "challengesDetected"))
        ),
    )


async def _fetch_first_entry(source: Source, fetcher: PageFetcher) -> FetchedPage:
    """Fetch the first entry URL that responds.

    Raises:
        TransientExternalError: The last fetch error if every URL failed.
    """
    last_exc: TransientExternalError | None = None
    for url in source.entry_urls:
        try:
            return await fetcher.fetch(url)
        except TransientExternalError as exc:
            logger.info("explore: entry URL %s failed for source %s: %s", url, source.id, exc)
            last_exc = exc
    assert last_exc is not None, "source without entry URLs reached explore"
    raise last_exc


async def explore(
    source: Source,
    fetcher: PageFetcher,
    inference: InferenceClient,
    *,
    max_candidates: int = 50,
) -> StageResult[ExploreResult]:
    """Run the explore stage for *source*.

    Args:
        source: Source to explore; must have at least one entry URL.
        fetcher: Page fetcher.
        inference: Inference client.
        max_candidates: Upper bound on candidates kept from the response.

    Returns:
        A successful result holding an :class:`ExploreResult`, or a failure
        classified as transient (fetch / call failure) or malformed.
    """
    if not source.has_entry_url:
        return StageResult.fail(STAGE, ErrorKind.UNEXPECTED, f"source {source.id} has no entry URL")

    try:
        page = await _fetch_first_entry(source, fetcher)
        data = await inference.generate(
            prompts.explore_prompt(source, page.url, page.text),
            prompts.EXPLORE_SCHEMA,
        )
        result = parse_explore_response(data, base_url=page.url, max_candidates=max_candidates)
    except (TransientExternalError, MalformedUpstreamError) as exc:
        return failure_from_exception(STAGE, exc)

    logger.info(
        "explore: source %s → %d candidate(s), %d pagination URL(s)",
        source.id,
        len(result.candidates),
        len(result.pagination_urls),
    )
    return StageResult.success(result)
