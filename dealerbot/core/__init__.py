"""Core domain models, settings, logging configuration, and shared utilities."""

from dealerbot.core.exceptions import (
    AuthorizationError,
    ConfigError,
    DealerbotError,
    FetchError,
    InferenceError,
    InferenceResponseError,
    InvalidJobTransitionError,
    MalformedUpstreamError,
    OrchestratorError,
    RateLimitExceededError,
    RegistryUnavailableError,
    StorageError,
    TransientExternalError,
    UniqueConstraintError,
)
from dealerbot.core.logging_config import JsonFormatter, configure_logging
from dealerbot.core.models import (
    CandidateItem,
    ExtractedRecord,
    Job,
    JobStatus,
    RefreshCadence,
    Source,
    ValidationOutcome,
    WorkUnit,
)
from dealerbot.core.settings import Settings

__all__ = [
    # Logging
    "configure_logging",
    "JsonFormatter",
    # Domain models
    "Source",
    "WorkUnit",
    "RefreshCadence",
    "CandidateItem",
    "ExtractedRecord",
    "ValidationOutcome",
    "Job",
    "JobStatus",
    # Settings
    "Settings",
    # Exceptions
    "DealerbotError",
    "ConfigError",
    "AuthorizationError",
    "StorageError",
    "RegistryUnavailableError",
    "UniqueConstraintError",
    "InvalidJobTransitionError",
    "TransientExternalError",
    "FetchError",
    "RateLimitExceededError",
    "InferenceError",
    "MalformedUpstreamError",
    "InferenceResponseError",
    "OrchestratorError",
]
