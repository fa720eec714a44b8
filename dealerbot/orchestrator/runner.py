"""Orchestrator entry-points: assemble the components for one invocation.

This module provides the top-level async functions called by the HTTP
surface (:mod:`dealerbot.api.app`) and the CLI (:mod:`dealerbot.__main__`):

* :func:`run_batch_once`: one batch-scheduler invocation.
* :func:`reassign_ranks_once`: the rotation maintenance operation.
* :func:`lookup_job` / :func:`lookup_batch`: Job Ledger reads.

Component wiring
----------------
Each call to :func:`run_batch_once`:

1. Loads :class:`~dealerbot.core.settings.Settings` (or uses the supplied
   instance) and checks the pipeline configuration.  A missing inference
   endpoint raises :exc:`~dealerbot.core.exceptions.ConfigError` before any
   I/O is attempted.
2. Opens the SQLite connection via
   :func:`~dealerbot.storage.database.open_db`.  Failure surfaces as
   :exc:`~dealerbot.core.exceptions.RegistryUnavailableError`.
3. Builds the registry, item repository, job ledger and metrics recorder.
4. Enters the fetch and inference HTTP clients through an
   :class:`contextlib.AsyncExitStack`.
5. Calls :func:`~dealerbot.orchestrator.scheduler.run_batch`.
6. Tears every resource down on exit, including on exceptions.

Rate limiting
-------------
Budgets are enforced by the :class:`~dealerbot.clients.rate_limit.RateLimiterRegistry`
passed in.  Long-lived callers (the API app) pass the same registry to
every invocation so the sliding windows span invocations; when omitted, a
fresh registry is built from settings.

Typical usage::

    import asyncio
    from dealerbot.orchestrator.runner import run_batch_once
    from dealerbot.orchestrator.scheduler import BatchSelector

    batch = asyncio.run(run_batch_once(BatchSelector(), limit=5))
    print(batch.to_summary())
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import AsyncExitStack
from datetime import UTC, datetime
from typing import Any

import httpx

from dealerbot.clients.fetcher import PageFetcher, build_fetch_client
from dealerbot.clients.inference import InferenceClient, build_inference_client
from dealerbot.clients.rate_limit import RateLimiterRegistry
from dealerbot.core.models import Job
from dealerbot.core.settings import Settings
from dealerbot.orchestrator.metrics import BatchResult, MetricsRecorder
from dealerbot.orchestrator.pipeline import PipelineDeps
from dealerbot.orchestrator.scheduler import (
    BatchDeps,
    BatchSelector,
    reassign_rotation_ranks,
    run_batch,
)
from dealerbot.storage.database import open_db
from dealerbot.storage.item_repository import ItemRepository
from dealerbot.storage.job_ledger import JobLedger
from dealerbot.storage.source_registry import SourceRegistry

__all__ = [
    "run_batch_once",
    "reassign_ranks_once",
    "lookup_job",
    "lookup_batch",
]

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Batch invocation
# ---------------------------------------------------------------------------


async def run_batch_once(
    selector: BatchSelector,
    limit: int | None = None,
    settings: Settings | None = None,
    *,
    limiters: RateLimiterRegistry | None = None,
    fetch_transport: httpx.AsyncBaseTransport | None = None,
    inference_transport: httpx.AsyncBaseTransport | None = None,
    clock: Callable[[], datetime] = _utcnow,
) -> BatchResult:
    """Execute one batch-scheduler invocation.

    Args:
        selector: Explicit rank or current hour bucket.
        limit: Requested number of sources; ``None`` uses the default.
        settings: Pre-loaded settings.  Loaded from the environment if
            ``None``.
        limiters: Shared rate-limiter registry.
        fetch_transport: Optional ``httpx`` transport for page fetches
            (tests inject :class:`httpx.MockTransport`).
        inference_transport: Optional ``httpx`` transport for inference
            calls.
        clock: Wall-clock source for selection and timestamps.

    Returns:
        The aggregated :class:`~dealerbot.orchestrator.metrics.BatchResult`.

    Raises:
        ConfigError: If the pipeline configuration is incomplete.
        RegistryUnavailableError: If the database cannot be opened or the
            sources cannot be selected.
    """
    if settings is None:
        settings = Settings()
    settings.require_pipeline_config()
    if limiters is None:
        limiters = RateLimiterRegistry.from_settings(settings)

    logger.info(
        "run_batch_once starting: db=%s inference=%s",
        settings.database_path,
        settings.inference_base_url,
    )

    async with AsyncExitStack() as stack:
        conn = await open_db(settings.database_path_resolved)
        stack.push_async_callback(conn.close)

        fetch_client = await stack.enter_async_context(
            build_fetch_client(settings, limiters, transport=fetch_transport)
        )
        inference_http = await stack.enter_async_context(
            build_inference_client(settings, limiters, transport=inference_transport)
        )

        pipeline = PipelineDeps(
            fetcher=PageFetcher(fetch_client, max_chars=settings.page_content_max_chars),
            inference=InferenceClient(
                inference_http,
                model=settings.inference_model,
                api_key=settings.inference_api_key,
                response_max_chars=settings.inference_response_max_chars,
            ),
            repo=ItemRepository(conn),
            settings=settings,
            clock=clock,
        )
        deps = BatchDeps(
            registry=SourceRegistry(conn, rotation_slots=settings.rotation_slots),
            ledger=JobLedger(conn),
            pipeline=pipeline,
            metrics=MetricsRecorder(conn),
            clock=clock,
        )
        return await run_batch(selector, limit, deps)


# ---------------------------------------------------------------------------
# Maintenance and reads
# ---------------------------------------------------------------------------


async def reassign_ranks_once(settings: Settings | None = None) -> int:
    """Run the rotation maintenance operation.

    Returns:
        The number of ranked sources.

    Raises:
        RegistryUnavailableError: If the database cannot be reached.
    """
    if settings is None:
        settings = Settings()
    conn = await open_db(settings.database_path_resolved)
    try:
        registry = SourceRegistry(conn, rotation_slots=settings.rotation_slots)
        return await reassign_rotation_ranks(registry)
    finally:
        await conn.close()


async def lookup_job(job_id: str, settings: Settings | None = None) -> Job | None:
    """Return the job with *job_id*, or ``None`` if it does not exist."""
    if settings is None:
        settings = Settings()
    conn = await open_db(settings.database_path_resolved)
    try:
        return await JobLedger(conn).get(job_id)
    finally:
        await conn.close()


async def lookup_batch(
    batch_id: str,
    settings: Settings | None = None,
) -> tuple[list[Job], dict[str, Any]]:
    """Return the jobs and recorded metrics of *batch_id*.

    Both are empty when the batch is unknown.
    """
    if settings is None:
        settings = Settings()
    conn = await open_db(settings.database_path_resolved)
    try:
        jobs = await JobLedger(conn).list_for_batch(batch_id)
        metrics = await MetricsRecorder(conn).list_for_batch(batch_id)
        return jobs, metrics
    finally:
        await conn.close()
