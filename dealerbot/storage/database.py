"""SQLite database initialisation for Dealerbot.

This module is responsible for:

* Opening (or creating) the SQLite file.
* Configuring low-level PRAGMA settings (WAL journal mode, foreign keys).
* Bootstrapping the schema via ``CREATE TABLE IF NOT EXISTS``, which is
  idempotent and safe to run on every startup.

Consumers call :func:`open_db` once per invocation and share the returned
connection with the registry, the item repository and the job ledger.  The
connection must be closed explicitly (``await conn.close()``); the runner
does this through an :class:`~contextlib.AsyncExitStack`.

Typical usage::

    from dealerbot.storage.database import open_db

    async def main() -> None:
        conn = await open_db(Path("data/dealerbot.db"))
        # ... pass conn to SourceRegistry / ItemRepository / JobLedger ...
        await conn.close()
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

import aiosqlite

from dealerbot.core.exceptions import RegistryUnavailableError

__all__ = [
    "DEFAULT_DB_PATH",
    "open_db",
    "create_schema",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

#: Fallback database path when no explicit path is passed to :func:`open_db`.
DEFAULT_DB_PATH: Path = Path("data/dealerbot.db")

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

#: ``sources`` is the dealership registry.
#:
#: Column notes
#: ------------
#: entry_urls         JSON array, highest-priority URL first.
#: rotation_rank      NULL until the rotation maintenance assigns one.
#: last_processed_at  ISO-8601 UTC timestamp; NULL means never processed.
#: active             0/1.  Inactive rows never carry a rank.
_DDL_SOURCES = """\
CREATE TABLE IF NOT EXISTS sources (
    id                TEXT     NOT NULL PRIMARY KEY,
    name              TEXT     NOT NULL,
    entry_urls        TEXT     NOT NULL DEFAULT '[]',
    rotation_rank     INTEGER,
    cadence           TEXT     NOT NULL DEFAULT 'daily',
    last_processed_at TEXT,
    active            INTEGER  NOT NULL DEFAULT 1,
    created_at        TEXT     NOT NULL
)"""

#: Ranks are unique among active sources only.
_DDL_SOURCES_RANK_INDEX = """\
CREATE UNIQUE INDEX IF NOT EXISTS ux_sources_active_rank
    ON sources (rotation_rank)
    WHERE active = 1 AND rotation_rank IS NOT NULL"""

_DDL_BRANDS = """\
CREATE TABLE IF NOT EXISTS brands (
    id              INTEGER  PRIMARY KEY AUTOINCREMENT,
    name            TEXT     NOT NULL,
    normalized_name TEXT     NOT NULL UNIQUE,
    created_at      TEXT     NOT NULL
)"""

_DDL_MODELS = """\
CREATE TABLE IF NOT EXISTS models (
    id              INTEGER  PRIMARY KEY AUTOINCREMENT,
    brand_id        INTEGER  NOT NULL REFERENCES brands (id),
    name            TEXT     NOT NULL,
    normalized_name TEXT     NOT NULL,
    created_at      TEXT     NOT NULL,
    UNIQUE (brand_id, normalized_name)
)"""

#: ``items`` holds persisted vehicle records.
#:
#: Column notes
#: ------------
#: fingerprint    SHA-256 content fingerprint; UNIQUE is the dedup guard.
#: source_portal  Hostname of ``source_url``, kept for reporting.
#: features       JSON array of strings.
#: validation     JSON snapshot of the ValidationOutcome that admitted it.
_DDL_ITEMS = """\
CREATE TABLE IF NOT EXISTS items (
    id             INTEGER  PRIMARY KEY AUTOINCREMENT,
    fingerprint    TEXT     NOT NULL UNIQUE,
    brand_id       INTEGER  REFERENCES brands (id),
    model_id       INTEGER  REFERENCES models (id),
    title          TEXT     NOT NULL DEFAULT '',
    condition      TEXT,
    year           INTEGER,
    price          REAL,
    mileage        INTEGER,
    description    TEXT,
    location       TEXT,
    features       TEXT     NOT NULL DEFAULT '[]',
    quality_score  INTEGER,
    validation     TEXT,
    source_id      TEXT     NOT NULL,
    source_url     TEXT     NOT NULL,
    source_portal  TEXT,
    discovered_at  TEXT     NOT NULL,
    created_at     TEXT     NOT NULL
)"""

_DDL_ITEM_IMAGES = """\
CREATE TABLE IF NOT EXISTS item_images (
    id          INTEGER  PRIMARY KEY AUTOINCREMENT,
    item_id     INTEGER  NOT NULL REFERENCES items (id) ON DELETE CASCADE,
    url         TEXT     NOT NULL,
    position    INTEGER  NOT NULL,
    is_primary  INTEGER  NOT NULL DEFAULT 0
)"""

#: ``jobs`` is the job ledger; ``payload`` and ``result`` are JSON.
_DDL_JOBS = """\
CREATE TABLE IF NOT EXISTS jobs (
    id             TEXT     NOT NULL PRIMARY KEY,
    batch_id       TEXT     NOT NULL,
    source_id      TEXT     NOT NULL,
    job_type       TEXT     NOT NULL DEFAULT 'source_run',
    status         TEXT     NOT NULL,
    payload        TEXT     NOT NULL DEFAULT '{}',
    result         TEXT,
    error_message  TEXT,
    created_at     TEXT     NOT NULL,
    started_at     TEXT,
    completed_at   TEXT
)"""

_DDL_JOBS_BATCH_INDEX = """\
CREATE INDEX IF NOT EXISTS ix_jobs_batch ON jobs (batch_id)"""

_DDL_METRICS = """\
CREATE TABLE IF NOT EXISTS metrics (
    id           INTEGER  PRIMARY KEY AUTOINCREMENT,
    batch_id     TEXT     NOT NULL,
    name         TEXT     NOT NULL,
    value        REAL     NOT NULL,
    unit         TEXT,
    recorded_at  TEXT     NOT NULL
)"""

_SCHEMA: tuple[str, ...] = (
    _DDL_SOURCES,
    _DDL_SOURCES_RANK_INDEX,
    _DDL_BRANDS,
    _DDL_MODELS,
    _DDL_ITEMS,
    _DDL_ITEM_IMAGES,
    _DDL_JOBS,
    _DDL_JOBS_BATCH_INDEX,
    _DDL_METRICS,
)

# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def open_db(path: Path | str | None = None) -> aiosqlite.Connection:
    """Open (or create) the SQLite database and configure it.

    Steps performed on every call:

    1. Create parent directories for the DB file if they do not exist.
    2. Open the ``aiosqlite`` connection.
    3. Set ``row_factory = aiosqlite.Row`` so columns can be accessed by name.
    4. Enable WAL journal mode and foreign-key enforcement.
    5. Call :func:`create_schema` (idempotent).

    Args:
        path: Filesystem path for the SQLite file, or ``":memory:"``.
            Defaults to :data:`DEFAULT_DB_PATH`.

    Returns:
        An open, configured :class:`aiosqlite.Connection`.  The caller is
        responsible for closing it.

    Raises:
        RegistryUnavailableError: If the database cannot be opened or the
            schema cannot be created.
    """
    db_path = str(path or DEFAULT_DB_PATH)
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    logger.debug("Opening SQLite database at %s", db_path)

    try:
        conn: aiosqlite.Connection = await aiosqlite.connect(db_path)
    except (sqlite3.Error, OSError) as exc:
        raise RegistryUnavailableError(f"Cannot open database at {db_path}: {exc}") from exc

    conn.row_factory = aiosqlite.Row
    try:
        await _configure_pragmas(conn)
        await create_schema(conn)
    except sqlite3.Error as exc:
        await conn.close()
        raise RegistryUnavailableError(f"Cannot initialise database at {db_path}: {exc}") from exc

    logger.info("SQLite database ready at %s", db_path)
    return conn


async def create_schema(conn: aiosqlite.Connection) -> None:
    """Create all required tables and indexes if they do not already exist.

    Idempotent.  No destructive migrations are performed.

    Args:
        conn: An open :class:`aiosqlite.Connection`.
    """
    for statement in _SCHEMA:
        await conn.execute(statement)
    await conn.commit()
    logger.debug("Schema bootstrap complete (%d statements)", len(_SCHEMA))


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------


async def _configure_pragmas(conn: aiosqlite.Connection) -> None:
    """Apply PRAGMA settings that must be set immediately after opening.

    * ``journal_mode=WAL``: concurrent readers alongside the single writer.
    * ``foreign_keys=ON``: SQLite disables FK enforcement by default.
    """
    result = await conn.execute("PRAGMA journal_mode=WAL")
    row = await result.fetchone()
    mode = row[0] if row else "unknown"
    if mode != "wal":
        logger.debug("SQLite journal_mode is %r (expected for ':memory:')", mode)

    await conn.execute("PRAGMA foreign_keys=ON")
