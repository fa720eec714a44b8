"""Sliding-window request budgets for outbound calls.

Each external endpoint class (page fetches, inference calls) gets its own
:class:`SlidingWindowRateLimiter`.  A limiter remembers the timestamps of the
requests admitted in the last ``window_s`` seconds and refuses a new one once
``max_requests`` are in the window.

Refusal is immediate: :meth:`SlidingWindowRateLimiter.acquire` raises
:class:`~dealerbot.core.exceptions.RateLimitExceededError` instead of
sleeping, and the orchestrator treats that as a transient stage failure.

The timestamp deque is guarded by one :class:`threading.Lock`, so a limiter
can be shared by every coroutine in the process (and by worker threads, if
the FastAPI app runs sync handlers).  Stage code never sees a limiter; it is
owned by :class:`~dealerbot.clients.http_client.RateLimitedClient`.

Typical usage::

    from dealerbot.clients.rate_limit import SlidingWindowRateLimiter

    limiter = SlidingWindowRateLimiter("fetch", max_requests=6, window_s=60)
    limiter.acquire()           # raises RateLimitExceededError when exhausted
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable

from dealerbot.core.exceptions import RateLimitExceededError
from dealerbot.core.settings import Settings

__all__ = ["SlidingWindowRateLimiter", "RateLimiterRegistry"]

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """Admit at most ``max_requests`` per rolling ``window_s`` seconds.

    Args:
        name: Budget label used in errors and logs.
        max_requests: Requests admitted per window (≥ 1).
        window_s: Window length in seconds (> 0).
        clock: Monotonic time source.  Injectable for deterministic tests.

    Raises:
        ValueError: If ``max_requests`` or ``window_s`` is out of range.
    """

    def __init__(
        self,
        name: str,
        max_requests: int,
        window_s: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 1:
            raise ValueError(f"max_requests must be ≥ 1, got {max_requests!r}.")
        if window_s <= 0:
            raise ValueError(f"window_s must be > 0, got {window_s!r}.")
        self.name = name
        self._max_requests = max_requests
        self._window_s = window_s
        self._clock = clock
        self._hits: deque[float] = deque()
        self._lock = threading.Lock()

    @property
    def max_requests(self) -> int:
        return self._max_requests

    @property
    def window_s(self) -> float:
        return self._window_s

    def _evict(self, now: float) -> None:
        # Caller holds the lock.
        cutoff = now - self._window_s
        while self._hits and self._hits[0] <= cutoff:
            self._hits.popleft()

    def try_acquire(self) -> bool:
        """Record one request if the budget allows it.

        Returns:
            ``True`` if the request was admitted, ``False`` otherwise.
        """
        with self._lock:
            now = self._clock()
            self._evict(now)
            if len(self._hits) >= self._max_requests:
                return False
            self._hits.append(now)
            return True

    def acquire(self) -> None:
        """Record one request or raise immediately.

        Raises:
            RateLimitExceededError: If the window is full.  ``retry_after``
                is the time until the oldest admitted request expires.
        """
        with self._lock:
            now = self._clock()
            self._evict(now)
            if len(self._hits) < self._max_requests:
                self._hits.append(now)
                return
            retry_after = max(self._hits[0] + self._window_s - now, 0.0)

        logger.warning(
            "Rate limit %r exhausted (%d/%.0fs); rejecting request, retry in %.1fs",
            self.name,
            self._max_requests,
            self._window_s,
            retry_after,
        )
        raise RateLimitExceededError(self.name, retry_after=retry_after)

    def remaining(self) -> int:
        """Requests still admissible in the current window."""
        with self._lock:
            self._evict(self._clock())
            return self._max_requests - len(self._hits)


class RateLimiterRegistry:
    """Process-wide map of budget name → limiter.

    One registry is built per process from :class:`Settings`; every client
    created for the same budget name shares the same limiter instance.
    """

    FETCH = "fetch"
    INFERENCE = "inference"

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._limiters: dict[str, SlidingWindowRateLimiter] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> RateLimiterRegistry:
        registry = cls(clock=clock)
        registry.register(cls.FETCH, settings.fetch_rate_limit, settings.fetch_rate_window_s)
        registry.register(
            cls.INFERENCE,
            settings.inference_rate_limit,
            settings.inference_rate_window_s,
        )
        return registry

    def register(self, name: str, max_requests: int, window_s: float) -> SlidingWindowRateLimiter:
        """Create (or return the existing) limiter for *name*."""
        with self._lock:
            limiter = self._limiters.get(name)
            if limiter is None:
                limiter = SlidingWindowRateLimiter(
                    name, max_requests, window_s, clock=self._clock
                )
                self._limiters[name] = limiter
            return limiter

    def get(self, name: str) -> SlidingWindowRateLimiter:
        """Return the limiter registered for *name*.

        Raises:
            KeyError: If no limiter was registered under that name.
        """
        with self._lock:
            return self._limiters[name]
