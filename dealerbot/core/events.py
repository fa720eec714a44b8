"""Structured log event name constants for the Dealerbot pipeline.

Every key transition in the scheduler and orchestrator emits a log record
with an ``event`` field (passed via ``extra={"event": events.X}``).  In
``LOG_FORMAT=json`` mode the value is a top-level ``event`` field.

Usage example::

    import logging
    from dealerbot.core import events

    logger = logging.getLogger(__name__)

    logger.info("Batch started", extra={"event": events.BATCH_START})
"""

from __future__ import annotations

__all__ = [
    # Batch lifecycle
    "BATCH_START",
    "BATCH_COMPLETE",
    "BATCH_ABORT",
    "RANKS_REASSIGNED",
    # Source lifecycle
    "SOURCE_START",
    "SOURCE_DONE",
    "SOURCE_FAILED",
    "SOURCE_TIMEOUT",
    "SOURCE_EXPLORE_FAILED",
    # Item pipeline stages
    "ITEM_EXTRACT_FAILED",
    "ITEM_VALIDATE_FAILED",
    "ITEM_VALIDATE_FALLBACK",
    "ITEM_REJECTED",
    "ITEM_DUPLICATE",
    "ITEM_PERSISTED",
    "ITEM_PERSIST_ERROR",
    "ITEM_ERRORED",
    # Trigger surface
    "TRIGGER_UNAUTHORIZED",
]

# ---------------------------------------------------------------------------
# Batch lifecycle
# ---------------------------------------------------------------------------

#: Emitted once when :func:`~dealerbot.orchestrator.scheduler.run_batch` starts.
BATCH_START: str = "BATCH_START"

#: Emitted once with the batch summary when every selected source has run.
BATCH_COMPLETE: str = "BATCH_COMPLETE"

#: Emitted when a batch aborts before any source work (registry unavailable).
BATCH_ABORT: str = "BATCH_ABORT"

#: Rotation ranks were rewritten by the maintenance operation.
RANKS_REASSIGNED: str = "RANKS_REASSIGNED"

# ---------------------------------------------------------------------------
# Source lifecycle
# ---------------------------------------------------------------------------

SOURCE_START: str = "SOURCE_START"

#: Source run finished; job marked ``completed``.
SOURCE_DONE: str = "SOURCE_DONE"

#: Source run ended with a run-level error; job marked ``failed``.
SOURCE_FAILED: str = "SOURCE_FAILED"

#: Source run exceeded ``SOURCE_TIMEOUT_S``; job marked ``failed``.
SOURCE_TIMEOUT: str = "SOURCE_TIMEOUT"

#: Explore stage failed; the source run ends with zero candidates.
SOURCE_EXPLORE_FAILED: str = "SOURCE_EXPLORE_FAILED"

# ---------------------------------------------------------------------------
# Item pipeline stages
# ---------------------------------------------------------------------------

ITEM_EXTRACT_FAILED: str = "ITEM_EXTRACT_FAILED"

ITEM_VALIDATE_FAILED: str = "ITEM_VALIDATE_FAILED"

#: Validator response was malformed; the rule-based outcome was used.
ITEM_VALIDATE_FALLBACK: str = "ITEM_VALIDATE_FALLBACK"

#: Item failed the quality gate (a normal outcome, not an error).
ITEM_REJECTED: str = "ITEM_REJECTED"

#: Fingerprint already stored; nothing written.
ITEM_DUPLICATE: str = "ITEM_DUPLICATE"

ITEM_PERSISTED: str = "ITEM_PERSISTED"

ITEM_PERSIST_ERROR: str = "ITEM_PERSIST_ERROR"

#: Unexpected exception while processing one item; item skipped.
ITEM_ERRORED: str = "ITEM_ERRORED"

# ---------------------------------------------------------------------------
# Trigger surface
# ---------------------------------------------------------------------------

#: Trigger request rejected for a missing or wrong bearer credential.
TRIGGER_UNAUTHORIZED: str = "TRIGGER_UNAUTHORIZED"
