"""HTTP routes: the batch trigger, rotation maintenance and job reads."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from dealerbot.api.auth import require_cron_secret
from dealerbot.core.models import Job
from dealerbot.orchestrator.runner import (
    lookup_batch,
    lookup_job,
    reassign_ranks_once,
    run_batch_once,
)
from dealerbot.orchestrator.scheduler import BatchSelector

__all__ = ["cron_router", "jobs_router", "health_router"]

logger = logging.getLogger(__name__)

cron_router = APIRouter(
    prefix="/api/cron",
    tags=["Cron"],
    dependencies=[Depends(require_cron_secret)],
)
jobs_router = APIRouter(prefix="/api", tags=["Jobs"])
health_router = APIRouter(prefix="/api", tags=["Health"])


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class RotationResponse(BaseModel):
    success: bool = True
    ranked: int


class JobResponse(BaseModel):
    found: bool
    job: Job | None = None


class BatchResponse(BaseModel):
    found: bool
    batch_id: str = Field(serialization_alias="batchId")
    jobs: list[Job] = Field(default_factory=list)
    metrics: dict[str, float] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    status: str = "ok"
    inference_configured: bool = Field(serialization_alias="inferenceConfigured")
    cron_secret_configured: bool = Field(serialization_alias="cronSecretConfigured")


# ---------------------------------------------------------------------------
# Cron
# ---------------------------------------------------------------------------


@cron_router.get("/batch-scheduler")
async def trigger_batch(
    request: Request,
    order: int | None = Query(default=None, ge=1, description="Explicit rotation rank."),
    limit: int | None = Query(default=None, ge=1, description="Sources to process."),
) -> dict[str, Any]:
    """Run one batch and return its summary.

    Without ``order`` the current UTC hour bucket is processed.
    """
    state = request.app.state
    batch = await run_batch_once(
        BatchSelector(rank=order),
        limit,
        state.settings,
        limiters=state.limiters,
        fetch_transport=state.fetch_transport,
        inference_transport=state.inference_transport,
        clock=state.clock,
    )
    return batch.to_summary()


@cron_router.get("/high-priority-scheduler")
async def trigger_high_priority(
    request: Request,
    limit: int | None = Query(default=None, ge=1, description="Sources to process."),
) -> dict[str, Any]:
    """Run one batch over overdue sources (never processed or older than 48h)."""
    state = request.app.state
    batch = await run_batch_once(
        BatchSelector(overdue=True),
        limit,
        state.settings,
        limiters=state.limiters,
        fetch_transport=state.fetch_transport,
        inference_transport=state.inference_transport,
        clock=state.clock,
    )
    return batch.to_summary()


@cron_router.post("/batch-scheduler/rotation", response_model=RotationResponse)
async def trigger_rotation(request: Request) -> RotationResponse:
    ranked = await reassign_ranks_once(request.app.state.settings)
    return RotationResponse(ranked=ranked)


# ---------------------------------------------------------------------------
# Job ledger reads
# ---------------------------------------------------------------------------


@jobs_router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, request: Request) -> JobResponse:
    job = await lookup_job(job_id, request.app.state.settings)
    return JobResponse(found=job is not None, job=job)


@jobs_router.get(
    "/batches/{batch_id}",
    response_model=BatchResponse,
    response_model_by_alias=True,
)
async def get_batch(batch_id: str, request: Request) -> BatchResponse:
    jobs, metrics = await lookup_batch(batch_id, request.app.state.settings)
    return BatchResponse(found=bool(jobs), batch_id=batch_id, jobs=jobs, metrics=metrics)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@health_router.get("/health", response_model=HealthResponse, response_model_by_alias=True)
async def health(request: Request) -> HealthResponse:
    settings = request.app.state.settings
    return HealthResponse(
        inference_configured=settings.inference_configured,
        cron_secret_configured=bool(settings.cron_secret),
    )
