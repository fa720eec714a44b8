"""Item repository: persistence and deduplication of vehicle records.

Provides :class:`ItemRepository`, the single write path for the ``items``,
``item_images``, ``brands`` and ``models`` tables.

The content fingerprint (see :mod:`dealerbot.core.fingerprint`) is the
authoritative duplicate check: a record whose fingerprint is already stored
yields ``duplicate`` and nothing is written, whatever the validate stage
said.  Brand and model rows are find-or-create keyed by normalised display
name; a unique-constraint conflict on insert means a concurrent run created
the row first, so the repository re-reads it instead of failing.

:meth:`ItemRepository.persist` never raises to the orchestrator: storage
failures come back as a ``PersistOutcome`` with status ``error``.  A
cancellation (the per-source timeout) rolls back the open transaction and
propagates, so an item is never stored without its images.

Typical usage::

    repo = ItemRepository(conn)
    outcome = await repo.persist(record, provenance, validation=outcome)
    if outcome.status is PersistStatus.CREATED:
        ...
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import UTC, datetime
from urllib.parse import urlsplit

import aiosqlite

from dealerbot.core.exceptions import StorageError, UniqueConstraintError
from dealerbot.core.fingerprint import normalize_name, record_fingerprint
from dealerbot.core.models import (
    ExtractedRecord,
    PersistOutcome,
    PersistStatus,
    Provenance,
    ValidationOutcome,
)

__all__ = ["ItemRepository"]

logger = logging.getLogger(__name__)


class ItemRepository:
    """Data-access object for persisted vehicle items.

    Args:
        conn: Open :class:`aiosqlite.Connection` with the schema applied.
    """

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def exists(self, fingerprint: str) -> bool:
        """Return ``True`` if an item with *fingerprint* is stored."""
        cursor = await self._conn.execute(
            "SELECT 1 FROM items WHERE fingerprint = ? LIMIT 1",
            (fingerprint,),
        )
        return await cursor.fetchone() is not None

    async def count(self) -> int:
        cursor = await self._conn.execute("SELECT COUNT(*) FROM items")
        row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def image_urls(self, item_id: int) -> list[tuple[str, bool]]:
        """Return ``(url, is_primary)`` pairs for *item_id* in stored order."""
        cursor = await self._conn.execute(
            "SELECT url, is_primary FROM item_images WHERE item_id = ? ORDER BY position",
            (item_id,),
        )
        return [(row["url"], bool(row["is_primary"])) for row in await cursor.fetchall()]

    # ------------------------------------------------------------------
    # Reference entities
    # ------------------------------------------------------------------

    async def _insert_reference(self, table: str, sql: str, params: tuple[object, ...]) -> int:
        """Run an INSERT and map a unique-constraint conflict distinctly.

        Raises:
            UniqueConstraintError: The row already exists.
            StorageError: Any other SQLite failure.
        """
        try:
            cursor = await self._conn.execute(sql, params)
        except sqlite3.IntegrityError as exc:
            raise UniqueConstraintError(table, str(params[-2])) from exc
        except sqlite3.Error as exc:
            raise StorageError(f"Insert into {table} failed: {exc}") from exc
        assert cursor.lastrowid is not None
        return cursor.lastrowid

    async def find_or_create_brand(self, name: str) -> int:
        """Return the id of the brand called *name*, creating it if needed."""
        key = normalize_name(name)
        select = "SELECT id FROM brands WHERE normalized_name = ?"
        cursor = await self._conn.execute(select, (key,))
        row = await cursor.fetchone()
        if row is not None:
            return int(row["id"])
        try:
            return await self._insert_reference(
                "brands",
                "INSERT INTO brands (name, normalized_name, created_at) VALUES (?, ?, ?)",
                (name, key, datetime.now(UTC).isoformat()),
            )
        except UniqueConstraintError:
            logger.debug("Brand %r created concurrently; re-reading", name)
            cursor = await self._conn.execute(select, (key,))
            row = await cursor.fetchone()
            if row is None:
                raise StorageError(f"Brand {name!r} vanished after unique conflict") from None
            return int(row["id"])

    async def find_or_create_model(self, brand_id: int, name: str) -> int:
        """Return the id of model *name* under *brand_id*, creating it if needed."""
        key = normalize_name(name)
        select = "SELECT id FROM models WHERE brand_id = ? AND normalized_name = ?"
        cursor = await self._conn.execute(select, (brand_id, key))
        row = await cursor.fetchone()
        if row is not None:
            return int(row["id"])
        try:
            return await self._insert_reference(
                "models",
                "INSERT INTO models (brand_id, name, normalized_name, created_at) VALUES (?, ?, ?, ?)",
                (brand_id, name, key, datetime.now(UTC).isoformat()),
            )
        except UniqueConstraintError:
            logger.debug("Model %r created concurrently; re-reading", name)
            cursor = await self._conn.execute(select, (brand_id, key))
            row = await cursor.fetchone()
            if row is None:
                raise StorageError(f"Model {name!r} vanished after unique conflict") from None
            return int(row["id"])

    # ------------------------------------------------------------------
    # Persist
    # ------------------------------------------------------------------

    async def persist(
        self,
        record: ExtractedRecord,
        provenance: Provenance,
        *,
        validation: ValidationOutcome | None = None,
    ) -> PersistOutcome:
        """Store *record* unless its fingerprint is already known.

        Args:
            record: Record that passed the quality gate.
            provenance: Source id, detail URL and discovery time.
            validation: Outcome that admitted the record, stored as a JSON
                snapshot.

        Returns:
            ``created`` with the new item id, ``duplicate`` with the existing
            id, or ``error`` with a message.
        """
        fp = record_fingerprint(record)
        try:
            existing = await self._find_item_id(fp)
            if existing is not None:
                return PersistOutcome(PersistStatus.DUPLICATE, fp, item_id=existing)
            item_id = await self._insert_item(record, provenance, fp, validation)
        except sqlite3.IntegrityError as exc:
            await self._conn.rollback()
            existing = await self._safe_find_item_id(fp)
            if existing is None:
                logger.error("Persisting %r violated a constraint: %s", record.title, exc)
                return PersistOutcome(PersistStatus.ERROR, fp, message=str(exc))
            # Another run stored the same fingerprint between lookup and insert.
            return PersistOutcome(PersistStatus.DUPLICATE, fp, item_id=existing)
        except (sqlite3.Error, StorageError) as exc:
            await self._conn.rollback()
            logger.error("Persisting %r failed: %s", record.title, exc)
            return PersistOutcome(PersistStatus.ERROR, fp, message=str(exc))
        except BaseException:
            # Cancelled (source timeout) or crashed mid-transaction: the item
            # row must not be committed later without its images.
            await self._conn.rollback()
            raise

        logger.debug("Persisted item %d (%s) fingerprint=%s", item_id, record.title, fp[:12])
        return PersistOutcome(PersistStatus.CREATED, fp, item_id=item_id)

    async def _find_item_id(self, fp: str) -> int | None:
        cursor = await self._conn.execute("SELECT id FROM items WHERE fingerprint = ?", (fp,))
        row = await cursor.fetchone()
        return int(row["id"]) if row else None

    async def _safe_find_item_id(self, fp: str) -> int | None:
        try:
            return await self._find_item_id(fp)
        except sqlite3.Error:
            return None

    async def _insert_item(
        self,
        record: ExtractedRecord,
        provenance: Provenance,
        fp: str,
        validation: ValidationOutcome | None,
    ) -> int:
        brand_id = await self.find_or_create_brand(record.brand) if record.brand else None
        model_id = (
            await self.find_or_create_model(brand_id, record.model)
            if brand_id is not None and record.model
            else None
        )

        cursor = await self._conn.execute(
            """
            INSERT INTO items
                (fingerprint, brand_id, model_id, title, condition, year, price, mileage,
                 description, location, features, quality_score, validation,
                 source_id, source_url, source_portal, discovered_at, created_at)
            VALUES
                (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                fp,
                brand_id,
                model_id,
                record.title,
                str(record.condition) if record.condition else None,
                record.year,
                record.price,
                record.mileage,
                record.description,
                record.location,
                json.dumps(record.features, ensure_ascii=False),
                validation.quality_score if validation else None,
                validation.model_dump_json() if validation else None,
                provenance.source_id,
                provenance.source_url,
                urlsplit(provenance.source_url).hostname,
                provenance.discovered_at.isoformat(),
                datetime.now(UTC).isoformat(),
            ),
        )
        item_id = cursor.lastrowid
        assert item_id is not None

        await self._conn.executemany(
            "INSERT INTO item_images (item_id, url, position, is_primary) VALUES (?, ?, ?, ?)",
            [
                (item_id, url, position, int(position == 0))
                for position, url in enumerate(record.image_urls)
            ],
        )
        await self._conn.commit()
        return item_id
