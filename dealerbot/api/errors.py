"""Map Dealerbot exceptions to HTTP responses.

Only the fatal classes are expected to reach a route: configuration errors
(500), an unreachable registry (503) and authorization failures (401).
Every body has the shape ``{"success": false, "error": "..."}``.
"""

from __future__ import annotations

from fastapi.responses import JSONResponse

from dealerbot.core.exceptions import (
    AuthorizationError,
    ConfigError,
    DealerbotError,
    RegistryUnavailableError,
    StorageError,
)

__all__ = ["ERROR_STATUS_MAP", "status_for", "error_response"]

ERROR_STATUS_MAP: dict[type[DealerbotError], int] = {
    AuthorizationError: 401,
    ConfigError: 500,
    RegistryUnavailableError: 503,
    StorageError: 503,
}


def status_for(error: DealerbotError) -> int:
    """Return the HTTP status for *error*, walking its class hierarchy."""
    for cls in type(error).__mro__:
        status = ERROR_STATUS_MAP.get(cls)  # type: ignore[call-overload]
        if status is not None:
            return status
    return 500


def error_response(error: DealerbotError) -> JSONResponse:
    status = status_for(error)
    headers = {"WWW-Authenticate": "Bearer"} if status == 401 else None
    return JSONResponse(
        status_code=status,
        content={"success": False, "error": str(error)},
        headers=headers,
    )
