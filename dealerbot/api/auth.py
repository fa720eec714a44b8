"""Shared-secret bearer check for the trigger endpoints."""

from __future__ import annotations

import hmac
import logging

from fastapi import Header, Request

from dealerbot.core import events
from dealerbot.core.exceptions import AuthorizationError
from dealerbot.core.settings import Settings

__all__ = ["require_cron_secret", "bearer_token"]

logger = logging.getLogger(__name__)

_BEARER_PREFIX = "bearer "


def bearer_token(authorization: str | None) -> str | None:
    """Return the token of an ``Authorization: Bearer <token>`` header."""
    if not authorization or not authorization.lower().startswith(_BEARER_PREFIX):
        return None
    token = authorization[len(_BEARER_PREFIX):].strip()
    return token or None


async def require_cron_secret(
    request: Request,
    authorization: str | None = Header(default=None),
) -> None:
    """FastAPI dependency guarding the trigger endpoints.

    Raises:
        ConfigError: If ``CRON_SECRET`` is not configured.
        AuthorizationError: If the credential is missing or wrong.
    """
    settings: Settings = request.app.state.settings
    secret = settings.require_cron_secret()
    token = bearer_token(authorization)
    if token is None or not hmac.compare_digest(token.encode(), secret.encode()):
        logger.warning(
            "Rejected %s %s: %s bearer credential",
            request.method,
            request.url.path,
            "missing" if token is None else "invalid",
            extra={"event": events.TRIGGER_UNAUTHORIZED},
        )
        raise AuthorizationError("Unauthorized")
