"""Dealerbot exception taxonomy.

Every custom exception inherits from :class:`DealerbotError`.  Exceptions are
organised by failure class so callers can catch at the right granularity:

    Layer hierarchy
    ---------------
    DealerbotError
    ├── ConfigError
    ├── AuthorizationError
    ├── StorageError
    │   ├── RegistryUnavailableError
    │   ├── UniqueConstraintError
    │   └── InvalidJobTransitionError
    ├── TransientExternalError
    │   ├── FetchError
    │   ├── RateLimitExceededError
    │   └── InferenceError
    ├── MalformedUpstreamError
    │   └── InferenceResponseError
    └── OrchestratorError

Only :class:`ConfigError` and :class:`RegistryUnavailableError` are allowed to
abort a whole batch.  Transient and malformed-upstream errors are contained
at the stage boundary and turned into stage failures.

Usage:

    from dealerbot.core.exceptions import FetchError

    raise FetchError(url, "HTTP 503") from exc
"""

from __future__ import annotations

import logging

__all__ = [
    "DealerbotError",
    # Config / auth
    "ConfigError",
    "AuthorizationError",
    # Storage
    "StorageError",
    "RegistryUnavailableError",
    "UniqueConstraintError",
    "InvalidJobTransitionError",
    # External collaborators
    "TransientExternalError",
    "FetchError",
    "RateLimitExceededError",
    "InferenceError",
    "MalformedUpstreamError",
    "InferenceResponseError",
    # Orchestrator
    "OrchestratorError",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class DealerbotError(Exception):
    """Root exception for all Dealerbot errors."""


# ---------------------------------------------------------------------------
# Config / auth
# ---------------------------------------------------------------------------


class ConfigError(DealerbotError):
    """Raised when the application configuration is invalid or incomplete.

    This is the *fatal-configuration* class: a batch that hits it aborts
    before any source work begins.
    """


class AuthorizationError(DealerbotError):
    """Raised when a trigger request carries a missing or wrong credential."""


# ---------------------------------------------------------------------------
# Storage layer
# ---------------------------------------------------------------------------


class StorageError(DealerbotError):
    """Raised when a database or persistence operation fails."""


class RegistryUnavailableError(StorageError):
    """Raised when the source registry cannot be opened or queried.

    Fatal for the batch: nothing can be selected without the registry.
    """


class UniqueConstraintError(StorageError):
    """Raised when an insert collides with a unique key.

    Kept distinct from :class:`StorageError` so find-or-create callers can
    resolve the race by re-reading instead of failing.

    Args:
        table: Table the insert targeted.
        key: The conflicting key value.
    """

    def __init__(self, table: str, key: str) -> None:
        self.table = table
        self.key = key
        super().__init__(f"Unique constraint violated on {table}: {key!r}")


class InvalidJobTransitionError(StorageError):
    """Raised when a job status change would regress or leave a terminal state.

    Args:
        job_id: Identifier of the job.
        current: Status currently stored.
        requested: Status the caller tried to write.
    """

    def __init__(self, job_id: str, current: str, requested: str) -> None:
        self.job_id = job_id
        self.current = current
        self.requested = requested
        super().__init__(f"Job {job_id}: illegal transition {current} -> {requested}")


# ---------------------------------------------------------------------------
# External collaborators
# ---------------------------------------------------------------------------


class TransientExternalError(DealerbotError):
    """Base class for failures that may succeed at the next scheduled run.

    Args:
        target: Short label of the endpoint or URL involved.
        message: Human-readable error description.
    """

    def __init__(self, target: str, message: str) -> None:
        self.target = target
        super().__init__(f"[{target}] {message}")


class FetchError(TransientExternalError):
    """Raised when a page fetch fails (network error, timeout, non-2xx)."""


class RateLimitExceededError(TransientExternalError):
    """Raised when a request would exceed a sliding-window budget.

    Also raised for an upstream HTTP 429.  Never waits: the caller gets the
    rejection immediately and treats it as a transient stage failure.

    Args:
        target: Name of the budget (``"fetch"`` / ``"inference"``) or URL.
        retry_after: Seconds until a slot frees up, if known.
    """

    def __init__(self, target: str, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        detail = f"retry after {retry_after:.1f}s" if retry_after is not None else "no retry hint"
        super().__init__(target, f"Rate limit exceeded ({detail})")


class InferenceError(TransientExternalError):
    """Raised when the inference backend call fails or times out."""


class MalformedUpstreamError(DealerbotError):
    """Base class for upstream responses that cannot be parsed.

    Args:
        target: Short label of the endpoint involved.
        message: Human-readable error description.
    """

    def __init__(self, target: str, message: str) -> None:
        self.target = target
        super().__init__(f"[{target}] {message}")


class InferenceResponseError(MalformedUpstreamError):
    """Raised when the inference response holds no usable JSON object."""


# ---------------------------------------------------------------------------
# Orchestrator layer
# ---------------------------------------------------------------------------


class OrchestratorError(DealerbotError):
    """Raised for errors originating in the scheduling or orchestration layer."""
