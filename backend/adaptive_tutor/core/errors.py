"""Error taxonomy for the tutoring core.

Only ``UpstreamUnavailableError`` is allowed to escape the turn's critical
path. Everything else is recovered locally:

- TransientUpstreamError: retried with the same prompt (see ``core.retry``)
- ValidationRejected: consumed by the bounded regeneration loop
- SchemaViolation: replaced by a minimal safe template response
- CacheMiss / CacheStale: trigger a synchronous rebuild
- RuleConfigMissing: default thresholds are used instead
"""

from typing import List, Optional


class TutorError(Exception):
    """Base class for all tutoring-core errors."""


class TransientUpstreamError(TutorError):
    """The model or network hiccupped; the same request may succeed later."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamUnavailableError(TutorError):
    """The model could not be reached even after retrying."""


class ValidationRejected(TutorError):
    """The validator rejected a draft and asked for fixes."""

    def __init__(self, confidence: float, required_fixes: List[str], issues: Optional[List[str]] = None):
        super().__init__(f"Draft rejected (confidence={confidence:.2f})")
        self.confidence = confidence
        self.required_fixes = required_fixes
        self.issues = issues or []


class SchemaViolation(TutorError):
    """Model output did not parse against the expected structure."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


class CacheMiss(TutorError):
    """No cache entry exists for the requested key."""


class CacheStale(CacheMiss):
    """A cache entry exists but is past its TTL."""


class RuleConfigMissing(TutorError):
    """No mastery rule set is configured for a subject and grade."""

    def __init__(self, subject: str, grade: int):
        super().__init__(f"No mastery rules configured for {subject} grade {grade}")
        self.subject = subject
        self.grade = grade


# =============================================================================
# Upstream error classification
# =============================================================================

_TRANSIENT_MARKERS = (
    "error code: 429",
    "rate limit",
    "too many requests",
    "timeout",
    "timed out",
    "connection error",
    "connecterror",
    "connection refused",
    "connection reset",
    "failed to establish a new connection",
    "network",
    "econnreset",
    "service unavailable",
    "bad gateway",
    "overloaded",
)


def _status_code_of(exc: BaseException) -> Optional[int]:
    for attr in ("status_code", "status", "http_status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def is_transient_error(exc: BaseException) -> bool:
    """Return True for errors worth retrying: 5xx, 429, timeouts and network failures.

    Other 4xx client errors are never retried.
    """
    if isinstance(exc, TransientUpstreamError):
        return True
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True

    status_code = _status_code_of(exc)
    if status_code is not None:
        return status_code == 429 or 500 <= status_code < 600

    text = str(exc).lower()
    return any(marker in text for marker in _TRANSIENT_MARKERS)
