"""FastAPI application factory for the trigger surface.

Typical usage::

    import uvicorn
    from dealerbot.api.app import create_app

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)

The rate-limiter registry lives on ``app.state`` so the sliding windows
span every invocation served by one process.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from dealerbot.api.errors import error_response
from dealerbot.api.routes import cron_router, health_router, jobs_router
from dealerbot.clients.rate_limit import RateLimiterRegistry
from dealerbot.core.exceptions import DealerbotError
from dealerbot.core.settings import Settings

__all__ = ["create_app"]

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def create_app(
    settings: Settings | None = None,
    *,
    limiters: RateLimiterRegistry | None = None,
    fetch_transport: httpx.AsyncBaseTransport | None = None,
    inference_transport: httpx.AsyncBaseTransport | None = None,
    clock: Callable[[], datetime] = _utcnow,
) -> FastAPI:
    """Build the application.

    Args:
        settings: Pre-loaded settings.  Loaded from the environment if
            ``None``.
        limiters: Shared rate-limiter registry; built from *settings* when
            omitted.
        fetch_transport: Optional ``httpx`` transport for page fetches.
        inference_transport: Optional ``httpx`` transport for inference.
        clock: Wall-clock source used for selection.
    """
    if settings is None:
        settings = Settings()

    app = FastAPI(title="Dealerbot", version="0.1.0")
    app.state.settings = settings
    app.state.limiters = limiters or RateLimiterRegistry.from_settings(settings)
    app.state.fetch_transport = fetch_transport
    app.state.inference_transport = inference_transport
    app.state.clock = clock

    app.include_router(cron_router)
    app.include_router(jobs_router)
    app.include_router(health_router)

    @app.exception_handler(DealerbotError)
    async def dealerbot_error_handler(request: Request, exc: DealerbotError) -> JSONResponse:
        response = error_response(exc)
        if response.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return response

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal server error"},
        )

    return app
