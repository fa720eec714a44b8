"""Bounded-concurrency, rate-limited async HTTP client.

Wraps :class:`httpx.AsyncClient` with:

* **Sliding-window budget**: every attempt first takes a slot from a
  :class:`~dealerbot.clients.rate_limit.SlidingWindowRateLimiter`.  An
  exhausted budget raises
  :class:`~dealerbot.core.exceptions.RateLimitExceededError` at once; the
  client never waits for a slot.
* **Bounded concurrency**: an :class:`asyncio.Semaphore` caps in-flight
  requests per client.
* **In-call retries**: transport errors, timeouts and 5xx responses are
  retried with exponential back-off and jitter via :mod:`tenacity`, up to
  ``max_attempts`` per call.  Nothing is retried across calls.
* **Structured error mapping**: HTTP 429 maps to
  :class:`~dealerbot.core.exceptions.RateLimitExceededError`; every other
  failure maps to the client's ``error_cls`` (``FetchError`` for pages,
  ``InferenceError`` for the inference backend).

One client is created per endpoint class per batch: the page fetcher and the
inference client each own one, sharing the process-wide limiter registry.

Typical usage::

    from dealerbot.clients.http_client import RateLimitedClient
    from dealerbot.clients.rate_limit import SlidingWindowRateLimiter
    from dealerbot.core.exceptions import FetchError

    limiter = SlidingWindowRateLimiter("fetch", 60, 60.0)
    async with RateLimitedClient("fetch", limiter, error_cls=FetchError) as client:
        response = await client.get("https://dealer.example/usados")
"""

from __future__ import annotations

import asyncio
import logging
import random
from types import TracebackType
from typing import Any, Final

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
)

from dealerbot.clients.rate_limit import SlidingWindowRateLimiter
from dealerbot.core.exceptions import (
    FetchError,
    RateLimitExceededError,
    TransientExternalError,
)

__all__ = ["RateLimitedClient"]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: HTTP status codes that signal a transient server-side fault (safe to retry).
_RETRYABLE_STATUS: Final[frozenset[int]] = frozenset({500, 502, 503, 504})

#: Default per-request timeout in seconds.
_DEFAULT_TIMEOUT_S: Final[float] = 20.0

#: Upper bound on TCP connect time, whatever the overall timeout.
_MAX_CONNECT_TIMEOUT_S: Final[float] = 10.0

#: Hard cap on exponential back-off base before adding jitter (seconds).
_MAX_BACKOFF_BASE: Final[float] = 5.0

#: Upper bound on jitter added on top of the exponential base (seconds).
_MAX_BACKOFF_JITTER: Final[float] = 1.0


# ---------------------------------------------------------------------------
# Internal sentinel exception
# ---------------------------------------------------------------------------


class _RetryableServerError(TransientExternalError):
    """Internal: signals a 5xx status for tenacity to retry.

    Never escapes :meth:`RateLimitedClient._request_with_retry`.
    """

    def __init__(self, target: str, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(target, f"Transient HTTP {status_code}")


# ---------------------------------------------------------------------------
# Public client
# ---------------------------------------------------------------------------


class RateLimitedClient:
    """Async HTTP client shared by the page fetcher and the inference client.

    Each public request method returns the :class:`httpx.Response` on HTTP
    2xx and raises on every other outcome.

    Args:
        name: Short label used in logs and error messages.
        limiter: Sliding-window budget checked before every attempt.
        error_cls: Exception raised for non-rate-limit failures.
        base_url: Optional base URL prepended to relative request paths.
        headers: Default headers merged into every request.
        max_concurrency: Maximum in-flight requests for this client.
        timeout_s: Per-request timeout in seconds.
        max_attempts: Total attempts per call including the first (≥ 1).
        backoff_base_s: First back-off delay; doubles per retry.
        transport: Optional httpx transport (tests use
            :class:`httpx.MockTransport`).

    Raises:
        ValueError: If ``max_attempts`` or ``max_concurrency`` is below 1.
    """

    def __init__(
        self,
        name: str,
        limiter: SlidingWindowRateLimiter,
        *,
        error_cls: type[TransientExternalError] = FetchError,
        base_url: str = "",
        headers: dict[str, str] | None = None,
        max_concurrency: int = 4,
        timeout_s: float = _DEFAULT_TIMEOUT_S,
        max_attempts: int = 1,
        backoff_base_s: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be ≥ 1, got {max_attempts!r}.")
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be ≥ 1, got {max_concurrency!r}.")

        self.name = name
        self._limiter = limiter
        self._error_cls = error_cls
        self._base_url = base_url
        self._default_headers: dict[str, str] = headers or {}
        self._max_attempts = max_attempts
        self._backoff_base_s = backoff_base_s
        self._timeout = httpx.Timeout(timeout_s, connect=min(timeout_s, _MAX_CONNECT_TIMEOUT_S))
        self._timeout_s = timeout_s
        self._transport = transport
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._http: httpx.AsyncClient | None = None

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    async def __aenter__(self) -> RateLimitedClient:
        await self._ensure_client()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Public request methods
    # ------------------------------------------------------------------

    async def get(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Perform an HTTP GET.

        Raises:
            RateLimitExceededError: Budget exhausted or upstream HTTP 429.
            TransientExternalError: ``error_cls`` for every other failure.
        """
        return await self._request_with_retry("GET", url, params=params, extra_headers=headers)

    async def post(
        self,
        url: str,
        *,
        json: Any | None = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Perform an HTTP POST with a JSON body.

        Raises:
            RateLimitExceededError: Budget exhausted or upstream HTTP 429.
            TransientExternalError: ``error_cls`` for every other failure.
        """
        return await self._request_with_retry(
            "POST", url, params=params, json=json, extra_headers=headers
        )

    async def close(self) -> None:
        """Close the underlying HTTP client.  Safe to call more than once."""
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
            logger.debug("RateLimitedClient %r session closed.", self.name)
        self._http = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                follow_redirects=True,
                headers=self._default_headers,
                transport=self._transport,
            )
            logger.debug(
                "RateLimitedClient %r session opened (base_url=%r).",
                self.name,
                self._base_url or "(none)",
            )
        return self._http

    def _wait(self, retry_state: RetryCallState) -> float:
        """Exponential back-off with jitter, capped at :data:`_MAX_BACKOFF_BASE`."""
        if self._backoff_base_s <= 0:
            return 0.0
        attempt = max(retry_state.attempt_number, 1)
        base = min(self._backoff_base_s * 2.0 ** (attempt - 1), _MAX_BACKOFF_BASE)
        return base + random.uniform(0.0, min(base, _MAX_BACKOFF_JITTER))

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Execute one logical request with tenacity-managed retries.

        Rate-limit rejections and 4xx responses are never retried.
        """

        def _before_sleep(rs: RetryCallState) -> None:
            exc = rs.outcome.exception() if rs.outcome else None
            logger.warning(
                "HTTP %s %s: attempt %d/%d failed (%s). Retrying.",
                method,
                url,
                rs.attempt_number,
                self._max_attempts,
                type(exc).__name__ if exc else "?",
            )

        response: httpx.Response | None = None
        try:
            async for attempt in AsyncRetrying(
                wait=self._wait,
                stop=stop_after_attempt(self._max_attempts),
                retry=retry_if_exception_type((_RetryableServerError, httpx.TransportError)),
                reraise=True,
                before_sleep=_before_sleep,
            ):
                with attempt:
                    response = await self._single_request(
                        method, url, params=params, json=json, extra_headers=extra_headers
                    )
        except _RetryableServerError as exc:
            raise self._error_cls(
                url, f"HTTP {exc.status_code} after {self._max_attempts} attempt(s)"
            ) from exc
        except httpx.TimeoutException as exc:
            raise self._error_cls(url, f"Timed out after {self._timeout_s:.0f}s") from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise self._error_cls(url, f"{type(exc).__name__}: {exc}") from exc

        assert response is not None, "tenacity exited without a response or exception"
        return response

    async def _single_request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None,
        json: Any | None,
        extra_headers: dict[str, str] | None,
    ) -> httpx.Response:
        """Perform exactly one HTTP request under the budget and semaphore.

        Raises:
            RateLimitExceededError: Budget exhausted, or HTTP 429.
            _RetryableServerError: On HTTP 5xx (internal sentinel).
            TransientExternalError: ``error_cls`` on other non-2xx statuses.
            httpx.TransportError: Network-level failures (propagated for retry).
        """
        self._limiter.acquire()
        client = await self._ensure_client()

        async with self._semaphore:
            logger.debug("HTTP %s %s", method, url)
            response = await client.request(
                method=method,
                url=url,
                params=params,
                json=json,
                headers=extra_headers,
            )

        logger.debug(
            "HTTP %s %s → %d (%d bytes)",
            method,
            url,
            response.status_code,
            len(response.content),
        )

        if response.is_success:
            return response

        if response.status_code == 429:
            retry_after = _parse_retry_after(response)
            logger.warning("Upstream rate limit (%s) HTTP 429, retry_after=%s", url, retry_after)
            raise RateLimitExceededError(url, retry_after=retry_after)

        if response.status_code in _RETRYABLE_STATUS:
            raise _RetryableServerError(url, response.status_code)

        raise self._error_cls(url, f"HTTP {response.status_code}: {response.text[:200]}")


# ---------------------------------------------------------------------------
# Response parsing helpers
# ---------------------------------------------------------------------------


def _parse_retry_after(response: httpx.Response) -> float | None:
    """Return the ``Retry-After`` header in seconds, if it is numeric."""
    header = response.headers.get("retry-after", "")
    if not header:
        return None
    try:
        return max(float(header), 0.0)
    except ValueError:
        logger.debug("Could not parse Retry-After header %r.", header)
        return None
