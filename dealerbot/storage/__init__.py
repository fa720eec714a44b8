"""SQLite-backed source registry, item store, job ledger and metrics table."""

from dealerbot.storage.database import DEFAULT_DB_PATH, create_schema, open_db
from dealerbot.storage.item_repository import ItemRepository
from dealerbot.storage.job_ledger import JobLedger
from dealerbot.storage.source_registry import DEFAULT_ROTATION_SLOTS, SourceRegistry

__all__ = [
    "DEFAULT_DB_PATH",
    "DEFAULT_ROTATION_SLOTS",
    "open_db",
    "create_schema",
    "SourceRegistry",
    "ItemRepository",
    "JobLedger",
]
