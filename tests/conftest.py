"""Shared pytest fixtures and configuration for the Dealerbot test suite.

This file is loaded automatically by pytest before any test module.
It provides project-wide fixtures used across unit and integration tests.
Plain helpers (settings factory, scripted HTTP world) live in
``tests/helpers.py``.
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncGenerator

import aiosqlite
import pytest
from pydantic_settings import SettingsConfigDict

from dealerbot.core import configure_logging
from dealerbot.core.settings import Settings
from tests.helpers import FakeWeb, make_settings, open_memory_db

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _configure_test_logging() -> None:
    """Force DEBUG logging in text format for every test.

    Using ``force=True`` ensures the configuration is applied even when
    pytest's own ``log_cli`` handler is already present.
    """
    configure_logging(level="DEBUG", fmt="text", force=True)


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove all Dealerbot-related env vars for the duration of a test.

    Also disables pydantic-settings `.env` file loading so that values
    present in a local `.env` file do not leak into Settings isolation tests.
    """
    sensitive_prefixes = (
        "INFERENCE_",
        "CRON_",
        "FETCH_",
        "DATABASE_",
        "BATCH_",
        "QUALITY_",
        "YEAR_",
        "ROTATION_",
        "SOURCE_",
        "MAX_",
        "EXPLORE_",
        "PAGE_",
        "HONOR_",
        "USER_AGENT",
        "LOG_LEVEL",
        "LOG_FORMAT",
    )
    for key in list(os.environ):
        if any(key.startswith(prefix) for prefix in sensitive_prefixes):
            monkeypatch.delenv(key, raising=False)

    # pydantic-settings reads the file directly rather than via os.environ.
    monkeypatch.setattr(
        Settings,
        "model_config",
        SettingsConfigDict(
            env_file=None,
            env_file_encoding="utf-8",
            extra="ignore",
        ),
    )


@pytest.fixture()
def settings(clean_env: None) -> Settings:
    return make_settings()


# ---------------------------------------------------------------------------
# Database and scripted HTTP
# ---------------------------------------------------------------------------


@pytest.fixture()
async def db() -> AsyncGenerator[aiosqlite.Connection, None]:
    """In-memory database with the schema applied, closed after the test."""
    conn = await open_memory_db()
    try:
        yield conn
    finally:
        await conn.close()


@pytest.fixture()
def web() -> FakeWeb:
    return FakeWeb()


# ---------------------------------------------------------------------------
# Misc helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def logger() -> logging.Logger:
    """Return a ``logging.Logger`` scoped to the running test."""
    return logging.getLogger("tests")
