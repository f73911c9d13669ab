"""Core configuration, errors and shared infrastructure."""

from .config import Settings, get_settings
from .errors import (
    CacheMiss,
    CacheStale,
    RuleConfigMissing,
    SchemaViolation,
    TransientUpstreamError,
    TutorError,
    UpstreamUnavailableError,
    ValidationRejected,
)

__all__ = [
    "Settings",
    "get_settings",
    "CacheMiss",
    "CacheStale",
    "RuleConfigMissing",
    "SchemaViolation",
    "TransientUpstreamError",
    "TutorError",
    "UpstreamUnavailableError",
    "ValidationRejected",
]
