"""Process-wide logging for dealerbot.

:func:`configure_logging` installs one stderr handler on the root logger.
The CLI calls it before anything else, including ``serve``, which hands
uvicorn ``log_config=None`` so its loggers propagate here.  Modules only
ever do ``logger = logging.getLogger(__name__)``.

Every record is tagged with the batch and the source being processed,
taken from two context variables the scheduler sets around its work::

    2026-03-10 07:30:02 INFO     [3f9a0c1e/norte] dealerbot.orchestrator.pipeline: ...

In ``json`` mode the ``event`` passed as ``extra={"event": ...}`` (see
:mod:`dealerbot.core.events`) is promoted to a top-level field next to the
batch and source ids, so a log query can filter on it directly.

``LOG_LEVEL`` / ``LOG_FORMAT`` are read from the environment at call time
when no explicit value is given.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any, Final

__all__ = [
    "configure_logging",
    "JsonFormatter",
    "RunContextFilter",
    "BATCH_ID_CTX",
    "SOURCE_ID_CTX",
]

#: Id of the batch being run; ``"-"`` outside :func:`run_batch`.
BATCH_ID_CTX: ContextVar[str] = ContextVar("batch_id", default="-")

#: Id of the source being processed within the batch; ``"-"`` between sources.
SOURCE_ID_CTX: ContextVar[str] = ContextVar("source_id", default="-")

LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
FORMATS: Final[tuple[str, ...]] = ("text", "json")

_TEXT_FORMAT: Final[str] = (
    "%(asctime)s %(levelname)-8s [%(batch_id)s/%(source_id)s] %(name)s: %(message)s"
)
_DATE_FORMAT: Final[str] = "%Y-%m-%d %H:%M:%S"

# Chatty below WARNING; left alone when DEBUG is requested.
_QUIET_LOGGERS: Final[tuple[str, ...]] = (
    "httpx",
    "httpcore",
    "asyncio",
    "aiosqlite",
    "uvicorn.access",
)


def _checked(value: str, env_var: str, allowed: tuple[str, ...]) -> str:
    if value not in allowed:
        raise ValueError(f"Unknown {env_var} {value!r}; expected one of {', '.join(allowed)}")
    return value


class RunContextFilter(logging.Filter):
    """Stamp ``batch_id`` and ``source_id`` on each record.

    Attached to the handler rather than a logger, so records from third-party
    loggers are stamped too.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.batch_id = BATCH_ID_CTX.get()
        record.source_id = SOURCE_ID_CTX.get()
        return True


def configure_logging(
    level: str | None = None,
    fmt: str | None = None,
    *,
    force: bool = False,
) -> None:
    """Install the dealerbot handler on the root logger.

    Args:
        level: One of :data:`LEVELS`; defaults to ``$LOG_LEVEL`` then INFO.
        fmt: ``text`` or ``json``; defaults to ``$LOG_FORMAT`` then text.
        force: Replace existing root handlers.  Without it, an already
            configured root logger (pytest's, say) only has its level set.

    Raises:
        ValueError: *level* or *fmt* (or their env fallbacks) is unknown.
    """
    resolved_level = _checked(
        (level or os.environ.get("LOG_LEVEL") or "INFO").upper(), "LOG_LEVEL", LEVELS
    )
    resolved_fmt = _checked(
        (fmt or os.environ.get("LOG_FORMAT") or "text").lower(), "LOG_FORMAT", FORMATS
    )

    root = logging.getLogger()
    root.setLevel(resolved_level)
    if root.handlers and not force:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(RunContextFilter())
    handler.setFormatter(
        JsonFormatter()
        if resolved_fmt == "json"
        else logging.Formatter(_TEXT_FORMAT, datefmt=_DATE_FORMAT)
    )
    root.handlers[:] = [handler]

    quiet_level = logging.NOTSET if resolved_level == "DEBUG" else logging.WARNING
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)


class JsonFormatter(logging.Formatter):
    """One JSON object per line.

    Example::

        {"ts": "2026-03-10T07:30:02.114Z", "level": "INFO",
         "logger": "dealerbot.orchestrator.pipeline",
         "message": "Source norte: persisted 'Toyota Corolla 2019' as item 4 (score=83)",
         "event": "ITEM_PERSISTED", "batch_id": "3f9a0c1e", "source_id": "norte",
         "extra": {}}

    ``event`` is ``null`` when the call passed none.  Any other ``extra``
    keys land under ``"extra"``; ``exc_info`` is added for exceptions.
    """

    _PROMOTED: Final[tuple[str, ...]] = ("event", "batch_id", "source_id")

    # Attributes every LogRecord has; anything else came from ``extra``.
    _STANDARD: Final[frozenset[str]] = frozenset(
        vars(logging.makeLogRecord({}))
    ) | {"message", "asctime", "taskName"}

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        stamp = datetime.fromtimestamp(record.created, tz=UTC).isoformat(timespec="milliseconds")
        payload: dict[str, Any] = {
            "ts": stamp.replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in self._PROMOTED:
            payload[key] = getattr(record, key, None)
        payload["extra"] = {
            key: value
            for key, value in vars(record).items()
            if key not in self._STANDARD and key not in self._PROMOTED
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        elif record.exc_text:
            payload["exc_info"] = record.exc_text

        try:
            return json.dumps(payload, default=str, ensure_ascii=False)
        except ValueError as exc:
            # Circular structure in ``extra``.
            payload["extra"] = {"unserialisable": str(exc)}
            return json.dumps(payload, default=str, ensure_ascii=False)
