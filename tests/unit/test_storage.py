"""Unit tests for the SQLite storage layer.

Covers:
- ``open_db``: schema bootstrap, ``:memory:`` handling, failure mapping.
- ``SourceRegistry``: hour-bucket and explicit-rank selection, staleness
  ordering, due filtering, overdue selection, rank reassignment
  (including from successive event loops), stats, timestamps without offset.
- ``ItemRepository``: created-then-duplicate, brand/model reuse and the
  concurrent-creation re-read, image ordering, error outcomes.
- ``JobLedger``: creation, legal and illegal transitions, batch listing.
"""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, patch

import aiosqlite
import pytest

from dealerbot.core.exceptions import (
    InvalidJobTransitionError,
    RegistryUnavailableError,
    StorageError,
    UniqueConstraintError,
)
from dealerbot.core.models import (
    ExtractedRecord,
    JobStatus,
    PersistStatus,
    Provenance,
    RefreshCadence,
    Source,
    ValidationOutcome,
)
from dealerbot.storage.database import open_db
from dealerbot.storage.item_repository import ItemRepository
from dealerbot.storage.job_ledger import JobLedger
from dealerbot.storage.source_registry import SourceRegistry

_NOW = datetime(2026, 3, 10, 7, 30, tzinfo=UTC)


def _make_source(source_id: str, rank: int | None, **overrides: Any) -> Source:
    values: dict[str, Any] = {
        "id": source_id,
        "name": f"Dealer {source_id}",
        "entry_urls": [f"https://{source_id}.example/usados"],
        "rotation_rank": rank,
    }
    values.update(overrides)
    return Source(**values)


def _make_record(**overrides: Any) -> ExtractedRecord:
    values: dict[str, Any] = {
        "brand": "Toyota",
        "model": "Corolla",
        "year": 2019,
        "price": 15000,
        "mileage": 42000,
        "image_urls": ["https://cdn.example/1.jpg", "https://cdn.example/2.jpg"],
    }
    values.update(overrides)
    return ExtractedRecord(**values)


def _provenance(url: str = "https://norte.example/auto/1") -> Provenance:
    return Provenance(source_id="norte", source_url=url, discovered_at=_NOW)


def _ids(units: list[Any]) -> list[str]:
    return [u.source.id for u in units]


# ===========================================================================
# open_db
# ===========================================================================


class TestOpenDb:
    async def test_file_database_created_with_parent_dirs(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "dealerbot.db"
        conn = await open_db(path)
        try:
            cursor = await conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
            tables = {row["name"] for row in await cursor.fetchall()}
        finally:
            await conn.close()
        assert path.exists()
        assert {"sources", "brands", "models", "items", "item_images", "jobs", "metrics"} <= tables

    async def test_memory_database(self) -> None:
        conn = await open_db(":memory:")
        try:
            assert await ItemRepository(conn).count() == 0
        finally:
            await conn.close()

    async def test_schema_is_idempotent(self, tmp_path: Path) -> None:
        path = tmp_path / "db.sqlite"
        for _ in range(2):
            conn = await open_db(path)
            await conn.close()

    async def test_connect_failure_maps_to_registry_unavailable(self, tmp_path: Path) -> None:
        with patch(
            "dealerbot.storage.database.aiosqlite.connect",
            side_effect=sqlite3.OperationalError("unable to open database file"),
        ):
            with pytest.raises(RegistryUnavailableError, match="Cannot open database"):
                await open_db(tmp_path / "x.db")


# ===========================================================================
# SourceRegistry
# ===========================================================================


class TestSourceRegistrySelection:
    async def test_hour_bucket_with_fewer_sources_than_slots(self, db: aiosqlite.Connection) -> None:
        registry = SourceRegistry(db, rotation_slots=24)
        for rank in range(1, 6):
            await registry.add(_make_source(f"s{rank}", rank))

        # 5 active sources → 5 slots; hour 7 → bucket 2 → rank 3.
        units = await registry.list_for_bucket(7, _NOW)
        assert _ids(units) == ["s3"]

    async def test_hour_bucket_with_more_sources_than_slots(self, db: aiosqlite.Connection) -> None:
        registry = SourceRegistry(db, rotation_slots=4)
        for rank in range(1, 10):
            await registry.add(_make_source(f"s{rank}", rank))

        # 9 sources over 4 slots; hour 5 → bucket 1 → ranks 2, 6.
        units = await registry.list_for_bucket(5, _NOW)
        assert sorted(_ids(units)) == ["s2", "s6"]

    async def test_every_ranked_source_has_exactly_one_bucket(self, db: aiosqlite.Connection) -> None:
        registry = SourceRegistry(db, rotation_slots=24)
        for rank in range(1, 31):
            await registry.add(_make_source(f"s{rank:02d}", rank))

        seen: list[str] = []
        for hour in range(24):
            seen.extend(_ids(await registry.list_for_bucket(hour, _NOW)))
        assert sorted(seen) == sorted(f"s{r:02d}" for r in range(1, 31))

    async def test_no_active_sources(self, db: aiosqlite.Connection) -> None:
        registry = SourceRegistry(db)
        await registry.add(_make_source("off", 1, active=False))
        assert await registry.list_for_bucket(3, _NOW) == []

    async def test_explicit_rank(self, db: aiosqlite.Connection) -> None:
        registry = SourceRegistry(db)
        await registry.add(_make_source("a", 1))
        await registry.add(_make_source("b", 2))
        assert _ids(await registry.list_by_rank(2, _NOW)) == ["b"]
        assert await registry.list_by_rank(9, _NOW) == []

    async def test_filters_not_due_and_urlless_sources(self, db: aiosqlite.Connection) -> None:
        registry = SourceRegistry(db, rotation_slots=1)
        await registry.add(_make_source("fresh", 1, last_processed_at=_NOW - timedelta(hours=2)))
        await registry.add(_make_source("stale", 2, last_processed_at=_NOW - timedelta(hours=30)))
        await registry.add(_make_source("never", 3))
        await registry.add(_make_source("nourl", 4, entry_urls=[]))
        await registry.add(
            _make_source(
                "hourly",
                5,
                cadence=RefreshCadence.HOURLY,
                last_processed_at=_NOW - timedelta(hours=2),
            )
        )

        units = await registry.list_for_bucket(0, _NOW)
        # Never-processed first, then most stale.
        assert _ids(units) == ["never", "stale", "hourly"]
        assert units[0].staleness_h == 999.0
        assert units[1].staleness_h == pytest.approx(30.0)

    async def test_staleness_ties_break_by_rank(self, db: aiosqlite.Connection) -> None:
        registry = SourceRegistry(db, rotation_slots=1)
        await registry.add(_make_source("b", 2))
        await registry.add(_make_source("a", 1))
        assert _ids(await registry.list_for_bucket(0, _NOW)) == ["a", "b"]

    async def test_overdue_ignores_rank_bucket_and_cadence(self, db: aiosqlite.Connection) -> None:
        registry = SourceRegistry(db, rotation_slots=24)
        await registry.add(_make_source("recent", 1, last_processed_at=_NOW - timedelta(hours=30)))
        await registry.add(_make_source("edge", 2, last_processed_at=_NOW - timedelta(hours=48)))
        await registry.add(_make_source("late", 3, last_processed_at=_NOW - timedelta(hours=49)))
        await registry.add(
            _make_source(
                "weekly",
                4,
                cadence=RefreshCadence.WEEKLY,
                last_processed_at=_NOW - timedelta(hours=100),
            )
        )
        await registry.add(_make_source("unranked", None))
        await registry.add(_make_source("nourl", 5, entry_urls=[]))
        await registry.add(_make_source("off", None, active=False))

        units = await registry.list_overdue(_NOW)

        # Strictly older than 48h; never-processed first.
        assert _ids(units) == ["unranked", "weekly", "late"]
        assert units[1].due_now is False

    async def test_overdue_custom_threshold(self, db: aiosqlite.Connection) -> None:
        registry = SourceRegistry(db)
        await registry.add(_make_source("recent", 1, last_processed_at=_NOW - timedelta(hours=30)))
        assert _ids(await registry.list_overdue(_NOW, timedelta(hours=24))) == ["recent"]

    async def test_query_failure_maps_to_registry_unavailable(self) -> None:
        conn = await aiosqlite.connect(":memory:")
        conn.row_factory = aiosqlite.Row
        try:
            with pytest.raises(RegistryUnavailableError):
                await SourceRegistry(conn).list_by_rank(1, _NOW)
        finally:
            await conn.close()


class TestSourceRegistryWrites:
    async def test_add_roundtrip(self, db: aiosqlite.Connection) -> None:
        registry = SourceRegistry(db)
        src = _make_source("x", 3, cadence=RefreshCadence.WEEKLY, last_processed_at=_NOW)
        await registry.add(src)
        stored = await registry.get("x")
        assert stored == src

    async def test_inactive_source_stored_without_rank(self, db: aiosqlite.Connection) -> None:
        registry = SourceRegistry(db)
        stored = await registry.add(_make_source("off", 4, active=False))
        assert stored.rotation_rank is None
        fetched = await registry.get("off")
        assert fetched is not None
        assert fetched.rotation_rank is None

    async def test_mark_processed(self, db: aiosqlite.Connection) -> None:
        registry = SourceRegistry(db)
        await registry.add(_make_source("x", 1))
        await registry.mark_processed("x", _NOW)
        stored = await registry.get("x")
        assert stored is not None
        assert stored.last_processed_at == _NOW

    async def test_timestamp_without_offset_is_read_as_utc(self, db: aiosqlite.Connection) -> None:
        # Rows written by other tools carry SQLite's CURRENT_TIMESTAMP format.
        await db.execute(
            """
            INSERT INTO sources (id, name, entry_urls, rotation_rank, last_processed_at, created_at)
            VALUES ('legacy', 'Legacy Motors', '["https://legacy.example"]', 1,
                    '2026-03-09 07:30:00', CURRENT_TIMESTAMP)
            """
        )
        await db.commit()
        registry = SourceRegistry(db)

        units = await registry.list_by_rank(1, _NOW)

        assert _ids(units) == ["legacy"]
        assert units[0].staleness_h == pytest.approx(24.0)
        stored = await registry.get("legacy")
        assert stored is not None
        assert stored.last_processed_at == datetime(2026, 3, 9, 7, 30, tzinfo=UTC)

    async def test_reassign_produces_dense_permutation(self, db: aiosqlite.Connection) -> None:
        registry = SourceRegistry(db)
        await registry.add(_make_source("a", 7))
        await registry.add(_make_source("b", 3))
        await registry.add(_make_source("c", None))
        await registry.add(_make_source("d", None, name="Aardvark Motors"))
        await registry.add(_make_source("off", None, active=False))

        ranked = await registry.reassign_rotation_ranks()

        assert ranked == 4
        ranks = {sid: (await registry.get(sid)).rotation_rank for sid in ("a", "b", "c", "d", "off")}  # type: ignore[union-attr]
        # Existing order kept (b before a), then unranked by name.
        assert ranks == {"b": 1, "a": 2, "d": 3, "c": 4, "off": None}

    async def test_reassign_is_stable_when_already_compact(self, db: aiosqlite.Connection) -> None:
        registry = SourceRegistry(db)
        for rank in range(1, 4):
            await registry.add(_make_source(f"s{rank}", rank))
        await registry.reassign_rotation_ranks()
        ranks = [(await registry.get(f"s{r}")).rotation_rank for r in range(1, 4)]  # type: ignore[union-attr]
        assert ranks == [1, 2, 3]

    async def test_concurrent_reassign_serialises(self, tmp_path: Path) -> None:
        path = tmp_path / "ranks.db"
        setup = await open_db(path)
        try:
            registry = SourceRegistry(setup)
            for i in range(6):
                await registry.add(_make_source(f"s{i}", None))
        finally:
            await setup.close()

        first, second = await open_db(path), await open_db(path)
        try:
            results = await asyncio.gather(
                SourceRegistry(first).reassign_rotation_ranks(),
                SourceRegistry(second).reassign_rotation_ranks(),
            )
            cursor = await first.execute(
                "SELECT rotation_rank FROM sources WHERE active = 1 ORDER BY rotation_rank"
            )
            ranks = [row["rotation_rank"] for row in await cursor.fetchall()]
        finally:
            await first.close()
            await second.close()

        assert results == [6, 6]
        assert ranks == [1, 2, 3, 4, 5, 6]

    def test_contended_reassign_works_from_successive_event_loops(self, tmp_path: Path) -> None:
        path = tmp_path / "loops.db"

        async def contended() -> list[int]:
            first, second = await open_db(path), await open_db(path)
            try:
                await SourceRegistry(first).add(_make_source("a", None))
                await SourceRegistry(first).add(_make_source("b", None))
                return list(
                    await asyncio.gather(
                        SourceRegistry(first).reassign_rotation_ranks(),
                        SourceRegistry(second).reassign_rotation_ranks(),
                    )
                )
            finally:
                await first.close()
                await second.close()

        # Each asyncio.run is a fresh loop, as in repeated CLI invocations.
        assert asyncio.run(contended()) == [2, 2]
        assert asyncio.run(contended()) == [2, 2]

    async def test_stats(self, db: aiosqlite.Connection) -> None:
        registry = SourceRegistry(db)
        await registry.add(_make_source("a", 1, last_processed_at=_NOW - timedelta(hours=10)))
        await registry.add(_make_source("b", 2, last_processed_at=_NOW - timedelta(hours=20)))
        await registry.add(_make_source("c", 3, entry_urls=[]))
        await registry.add(_make_source("off", None, active=False))

        stats = await registry.stats(_NOW)

        assert stats == {
            "total": 4,
            "active": 3,
            "with_urls": 2,
            "never_processed": 1,
            "avg_hours_since_processed": 15.0,
        }


# ===========================================================================
# ItemRepository
# ===========================================================================


class TestItemRepository:
    async def test_created_then_duplicate(self, db: aiosqlite.Connection) -> None:
        repo = ItemRepository(db)
        first = await repo.persist(_make_record(), _provenance())
        second = await repo.persist(_make_record(price=15040, mileage=41800), _provenance("https://other/2"))

        assert first.status is PersistStatus.CREATED
        assert first.item_id is not None
        assert second.status is PersistStatus.DUPLICATE
        assert second.item_id == first.item_id
        assert second.fingerprint == first.fingerprint
        assert await repo.count() == 1
        assert await repo.exists(first.fingerprint)

    async def test_brand_and_model_reused_case_insensitively(self, db: aiosqlite.Connection) -> None:
        repo = ItemRepository(db)
        await repo.persist(_make_record(year=2019), _provenance())
        await repo.persist(_make_record(brand="TOYOTA", model="corolla ", year=2020), _provenance())

        cursor = await db.execute("SELECT COUNT(*) AS n FROM brands")
        assert (await cursor.fetchone())["n"] == 1
        cursor = await db.execute("SELECT COUNT(*) AS n FROM models")
        assert (await cursor.fetchone())["n"] == 1
        assert await repo.count() == 2

    async def test_same_model_name_under_different_brands(self, db: aiosqlite.Connection) -> None:
        repo = ItemRepository(db)
        toyota = await repo.find_or_create_brand("Toyota")
        kia = await repo.find_or_create_brand("Kia")
        assert await repo.find_or_create_model(toyota, "Sport") != await repo.find_or_create_model(kia, "Sport")
        assert await repo.find_or_create_brand(" toyota ") == toyota

    async def test_brand_and_model_created_concurrently_are_reread(
        self, db: aiosqlite.Connection
    ) -> None:
        repo = ItemRepository(db)
        toyota = await repo.find_or_create_brand("Toyota")
        original = repo._insert_reference
        rival_ids: dict[str, int] = {}

        async def rival_wins(table: str, sql: str, params: tuple[object, ...]) -> int:
            # Another run inserts the same row after our SELECT missed it.
            rival_ids[table] = await original(table, sql, params)
            return await original(table, sql, params)

        with patch.object(repo, "_insert_reference", rival_wins):
            brand_id = await repo.find_or_create_brand("Mazda")
            model_id = await repo.find_or_create_model(toyota, "Hilux")

        assert brand_id == rival_ids["brands"]
        assert model_id == rival_ids["models"]
        cursor = await db.execute("SELECT COUNT(*) AS n FROM brands WHERE normalized_name = 'mazda'")
        assert (await cursor.fetchone())["n"] == 1

    async def test_unique_conflict_without_row_is_a_storage_error(
        self, db: aiosqlite.Connection
    ) -> None:
        repo = ItemRepository(db)
        conflict = UniqueConstraintError("brands", "Mazda")
        with patch.object(repo, "_insert_reference", AsyncMock(side_effect=conflict)):
            with pytest.raises(StorageError, match="vanished"):
                await repo.find_or_create_brand("Mazda")

    async def test_images_keep_order_and_first_is_primary(self, db: aiosqlite.Connection) -> None:
        repo = ItemRepository(db)
        outcome = await repo.persist(_make_record(), _provenance())
        assert outcome.item_id is not None
        assert await repo.image_urls(outcome.item_id) == [
            ("https://cdn.example/1.jpg", True),
            ("https://cdn.example/2.jpg", False),
        ]

    async def test_stores_provenance_and_validation_snapshot(self, db: aiosqlite.Connection) -> None:
        repo = ItemRepository(db)
        validation = ValidationOutcome(is_valid=True, completeness=0.9, accuracy=0.9, consistency=0.9)
        outcome = await repo.persist(_make_record(), _provenance(), validation=validation)
        cursor = await db.execute(
            "SELECT title, source_portal, quality_score, validation FROM items WHERE id = ?",
            (outcome.item_id,),
        )
        row = await cursor.fetchone()
        assert row["title"] == "Toyota Corolla 2019"
        assert row["source_portal"] == "norte.example"
        assert row["quality_score"] == 90
        assert '"is_valid":true' in row["validation"]

    async def test_record_without_brand_is_still_stored(self, db: aiosqlite.Connection) -> None:
        outcome = await ItemRepository(db).persist(_make_record(brand=None, model=None), _provenance())
        assert outcome.status is PersistStatus.CREATED

    async def test_storage_failure_is_error_outcome(self, db: aiosqlite.Connection) -> None:
        repo = ItemRepository(db)
        await db.execute("DROP TABLE item_images")
        await db.commit()
        outcome = await repo.persist(_make_record(), _provenance())
        assert outcome.status is PersistStatus.ERROR
        assert outcome.message
        assert await repo.count() == 0


# ===========================================================================
# JobLedger
# ===========================================================================


class TestJobLedger:
    async def test_create_and_complete(self, db: aiosqlite.Connection) -> None:
        ledger = JobLedger(db)
        job = await ledger.create("batch-1", "norte", payload={"k": 1})
        assert job.status is JobStatus.PENDING

        running = await ledger.transition(job.id, JobStatus.RUNNING)
        assert running.started_at is not None

        done = await ledger.transition(job.id, JobStatus.COMPLETED, result={"persisted": 2})
        assert done.status is JobStatus.COMPLETED

        stored = await ledger.get(job.id)
        assert stored is not None
        assert stored.status is JobStatus.COMPLETED
        assert stored.payload == {"k": 1}
        assert stored.result == {"persisted": 2}
        assert stored.started_at is not None
        assert stored.completed_at is not None

    async def test_failure_records_error(self, db: aiosqlite.Connection) -> None:
        ledger = JobLedger(db)
        job = await ledger.create("b", "s")
        await ledger.transition(job.id, JobStatus.RUNNING)
        await ledger.transition(job.id, JobStatus.FAILED, error="explore failed")
        stored = await ledger.get(job.id)
        assert stored is not None
        assert stored.error_message == "explore failed"

    async def test_terminal_job_cannot_move(self, db: aiosqlite.Connection) -> None:
        ledger = JobLedger(db)
        job = await ledger.create("b", "s")
        await ledger.transition(job.id, JobStatus.RUNNING)
        await ledger.transition(job.id, JobStatus.COMPLETED)
        with pytest.raises(InvalidJobTransitionError):
            await ledger.transition(job.id, JobStatus.FAILED)
        with pytest.raises(InvalidJobTransitionError):
            await ledger.transition(job.id, JobStatus.RUNNING)

    async def test_pending_cannot_complete_directly(self, db: aiosqlite.Connection) -> None:
        ledger = JobLedger(db)
        job = await ledger.create("b", "s")
        with pytest.raises(InvalidJobTransitionError):
            await ledger.transition(job.id, JobStatus.COMPLETED)

    async def test_unknown_job(self, db: aiosqlite.Connection) -> None:
        ledger = JobLedger(db)
        assert await ledger.get("nope") is None
        with pytest.raises(InvalidJobTransitionError):
            await ledger.transition("nope", JobStatus.RUNNING)

    async def test_list_for_batch_and_count(self, db: aiosqlite.Connection) -> None:
        ledger = JobLedger(db)
        first = await ledger.create("b1", "s1")
        second = await ledger.create("b1", "s2")
        await ledger.create("b2", "s3")
        await ledger.transition(first.id, JobStatus.RUNNING)

        assert [j.id for j in await ledger.list_for_batch("b1")] == [first.id, second.id]
        assert await ledger.list_for_batch("missing") == []
        assert await ledger.count() == 3
        assert await ledger.count(status=JobStatus.PENDING) == 2
