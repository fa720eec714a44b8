"""Page fetch collaborator.

A thin GET wrapper over :class:`~dealerbot.clients.http_client.RateLimitedClient`
that sends the fixed identifying User-Agent and hands stage code plain text
already truncated to ``PAGE_CONTENT_MAX_CHARS``.  No HTML parsing happens
here; the page text goes to the inference backend as-is.

Typical usage::

    fetcher = PageFetcher(client, max_chars=12_000)
    page = await fetcher.fetch("https://dealer.example/usados")
    page.text[:100]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from dealerbot.clients.http_client import RateLimitedClient
from dealerbot.clients.rate_limit import RateLimiterRegistry
from dealerbot.core.exceptions import FetchError
from dealerbot.core.settings import Settings

__all__ = ["FetchedPage", "PageFetcher", "build_fetch_client"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FetchedPage:
    """Text of one fetched page.

    Attributes:
        url: Final URL after redirects.
        status_code: HTTP status of the final response.
        text: Body text, truncated to the configured maximum.
        truncated: ``True`` if the body was longer than the maximum.
    """

    url: str
    status_code: int
    text: str
    truncated: bool = False


class PageFetcher:
    """GET pages through a rate-limited client.

    Args:
        client: Client configured with ``error_cls=FetchError``.
        max_chars: Body text is cut to this many characters.
    """

    def __init__(self, client: RateLimitedClient, *, max_chars: int) -> None:
        self._client = client
        self._max_chars = max_chars

    async def fetch(self, url: str) -> FetchedPage:
        """Fetch *url* and return its (truncated) text.

        Raises:
            FetchError: Non-2xx status, network error or timeout.
            RateLimitExceededError: The fetch budget is exhausted.
        """
        response = await self._client.get(url)
        text = response.text
        truncated = len(text) > self._max_chars
        if truncated:
            logger.debug("Page %s truncated from %d to %d chars", url, len(text), self._max_chars)
            text = text[: self._max_chars]
        if not text.strip():
            raise FetchError(url, "Empty response body")
        return FetchedPage(
            url=str(response.url),
            status_code=response.status_code,
            text=text,
            truncated=truncated,
        )


def build_fetch_client(
    settings: Settings,
    limiters: RateLimiterRegistry,
    **kwargs: object,
) -> RateLimitedClient:
    """Build the page-fetch client from settings.

    Extra keyword arguments (e.g. ``transport``) are forwarded to
    :class:`RateLimitedClient`.
    """
    return RateLimitedClient(
        "fetch",
        limiters.get(RateLimiterRegistry.FETCH),
        error_cls=FetchError,
        headers={
            "User-Agent": settings.user_agent,
            "Accept": "text/html,application/xhtml+xml,*/*;q=0.8",
        },
        max_concurrency=settings.max_concurrency,
        timeout_s=settings.fetch_timeout_s,
        max_attempts=settings.fetch_max_attempts,
        **kwargs,  # type: ignore[arg-type]
    )
