"""Dealerbot application settings loaded from environment and ``.env`` files.

Uses :mod:`pydantic_settings` to parse environment variables (and optionally
an ``.env`` file) into a validated settings object.

The field name is the **lowercase** version of the env-var name (e.g.
``CRON_SECRET`` → ``cron_secret``).

Typical usage::

    from dealerbot.core.settings import Settings

    settings = Settings()                   # loads from env + .env
    settings.require_pipeline_config()      # raises ConfigError if incomplete
    print(settings.quality_threshold)       # 70
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from dealerbot.core.exceptions import ConfigError

__all__ = ["Settings", "DEFAULT_USER_AGENT"]

logger = logging.getLogger(__name__)

#: Identifying user-agent sent with every page fetch.
DEFAULT_USER_AGENT: str = "Mozilla/5.0 (compatible; Dealerbot-Explorer/1.0)"


def _default_year_max() -> int:
    return datetime.now(UTC).year + 1


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Central application configuration.

    Values are loaded in priority order:

    1. Actual environment variables (highest priority).
    2. ``.env`` file in the working directory.
    3. Field defaults (lowest priority).

    The inference endpoint and the cron secret may be left empty during
    development; :meth:`require_pipeline_config` and
    :meth:`require_cron_secret` turn their absence into a
    :class:`~dealerbot.core.exceptions.ConfigError` at the point of use.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------
    database_path: str = Field(
        default="data/dealerbot.db",
        description="Path to the SQLite database file.",
    )

    # ------------------------------------------------------------------
    # Trigger auth
    # ------------------------------------------------------------------
    cron_secret: str = Field(
        default="",
        description="Shared bearer secret required by the trigger endpoints.",
    )

    # ------------------------------------------------------------------
    # Inference backend
    # ------------------------------------------------------------------
    inference_base_url: str = Field(
        default="",
        description="Base URL of the structured-generation service.",
    )
    inference_api_key: str = Field(default="", description="Bearer key for the inference service.")
    inference_model: str = Field(
        default="default",
        description="Model name forwarded to the inference service.",
    )
    inference_timeout_s: float = Field(
        default=60.0,
        gt=0,
        description="Per-call timeout for inference requests, in seconds.",
    )
    inference_max_attempts: int = Field(
        default=1,
        ge=1,
        description="Attempts per inference call (transport / 5xx errors only).",
    )
    inference_rate_limit: int = Field(
        default=30,
        ge=1,
        description="Inference requests allowed per sliding window.",
    )
    inference_rate_window_s: float = Field(
        default=60.0,
        gt=0,
        description="Length of the inference sliding window, in seconds.",
    )
    inference_response_max_chars: int = Field(
        default=20_000,
        ge=1,
        description="Raw inference text is truncated to this length before parsing.",
    )

    # ------------------------------------------------------------------
    # Page fetching
    # ------------------------------------------------------------------
    fetch_timeout_s: float = Field(
        default=20.0,
        gt=0,
        description="Per-request timeout for page fetches, in seconds.",
    )
    fetch_max_attempts: int = Field(
        default=2,
        ge=1,
        description="Attempts per page fetch (transport / 5xx errors only).",
    )
    fetch_rate_limit: int = Field(
        default=60,
        ge=1,
        description="Page fetches allowed per sliding window.",
    )
    fetch_rate_window_s: float = Field(
        default=60.0,
        gt=0,
        description="Length of the fetch sliding window, in seconds.",
    )
    max_concurrency: int = Field(
        default=4,
        ge=1,
        description="Maximum in-flight requests per client.",
    )
    user_agent: str = Field(
        default=DEFAULT_USER_AGENT,
        description="Fixed identifying User-Agent for page fetches.",
    )
    page_content_max_chars: int = Field(
        default=12_000,
        ge=1,
        description="Fetched page text is truncated to this length before inference.",
    )

    # ------------------------------------------------------------------
    # Batch scheduling
    # ------------------------------------------------------------------
    batch_default_limit: int = Field(
        default=5,
        ge=1,
        description="Sources processed per invocation when no limit is given.",
    )
    batch_max_limit: int = Field(
        default=50,
        ge=1,
        description="Upper bound accepted for the per-invocation limit.",
    )
    rotation_slots: int = Field(
        default=24,
        ge=1,
        description="Number of hour buckets the rotation ranks are spread over.",
    )
    source_timeout_s: float = Field(
        default=120.0,
        gt=0,
        description="Wall-clock budget for one source run, in seconds.",
    )

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    max_candidates_per_source: int = Field(
        default=10,
        ge=1,
        description="Candidate items processed per source per run.",
    )
    explore_max_candidates: int = Field(
        default=50,
        ge=1,
        description="Candidate items kept from one explore response.",
    )
    quality_threshold: int = Field(
        default=70,
        ge=0,
        le=100,
        description="Minimum quality score (inclusive) required to persist.",
    )
    honor_model_duplicate_flag: bool = Field(
        default=True,
        description="Reject items the validator flags as duplicates.",
    )
    year_min: int = Field(default=1900, ge=0, description="Oldest plausible model year.")
    year_max: int = Field(
        default_factory=_default_year_max,
        ge=0,
        description="Newest plausible model year (defaults to next calendar year).",
    )

    # ------------------------------------------------------------------
    # Runtime
    # ------------------------------------------------------------------
    log_level: str = Field(default="INFO", description="Logging level.")
    log_format: str = Field(default="text", description="Log format: 'text' or 'json'.")

    # ------------------------------------------------------------------
    # Field validators
    # ------------------------------------------------------------------

    @field_validator("inference_base_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.strip().rstrip("/")

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of {allowed}, got {v!r}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def _validate_log_format(cls, v: str) -> str:
        allowed = {"text", "json"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"log_format must be one of {allowed}, got {v!r}")
        return v_lower

    # ------------------------------------------------------------------
    # Model validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def _validate_ranges(self) -> Settings:
        """Ensure paired bounds are ordered."""
        if self.year_min > self.year_max:
            raise ValueError(f"year_min ({self.year_min}) > year_max ({self.year_max})")
        if self.batch_default_limit > self.batch_max_limit:
            raise ValueError(
                f"batch_default_limit ({self.batch_default_limit}) "
                f"> batch_max_limit ({self.batch_max_limit})"
            )
        return self

    # ------------------------------------------------------------------
    # Derived helpers
    # ------------------------------------------------------------------

    @property
    def database_path_resolved(self) -> Path:
        """Return the database path as a resolved :class:`~pathlib.Path`."""
        if self.database_path == ":memory:":
            return Path(self.database_path)
        return Path(self.database_path).resolve()

    @property
    def inference_configured(self) -> bool:
        """``True`` if an inference endpoint is set."""
        return bool(self.inference_base_url)

    def require_pipeline_config(self) -> None:
        """Raise :class:`ConfigError` if the batch pipeline cannot run.

        Raises:
            ConfigError: When ``INFERENCE_BASE_URL`` is missing.
        """
        if not self.inference_configured:
            raise ConfigError(
                "The pipeline requires an inference endpoint. "
                "Set INFERENCE_BASE_URL in .env (or env vars)."
            )

    def require_cron_secret(self) -> str:
        """Return the shared trigger secret or raise :class:`ConfigError`."""
        if not self.cron_secret:
            raise ConfigError("CRON_SECRET is not configured; trigger endpoints are disabled.")
        return self.cron_secret

    def resolve_limit(self, limit: int | None) -> int:
        """Clamp a caller-supplied batch limit to ``[1, batch_max_limit]``."""
        if limit is None:
            return self.batch_default_limit
        return max(1, min(limit, self.batch_max_limit))
