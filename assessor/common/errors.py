"""Error taxonomy for the assessment pipeline.

Every error is a ``ValueError`` whose message is a snake_case code, so
callers can keep the ``str(exc)`` convention used by the endpoint layer.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class AssessmentError(ValueError):
    status_code: int = 400
    default_code: str = "assessment_error"

    def __init__(self, code: Optional[str] = None, *, extra: Optional[Dict[str, Any]] = None) -> None:
        self.code = code or self.default_code
        self.extra = extra or {}
        super().__init__(self.code)


class ValidationError(AssessmentError):
    """Malformed or oversized submission data."""

    status_code = 400
    default_code = "invalid_submission"


class AuthorizationError(AssessmentError):
    """CSRF, ownership or integrity failure."""

    status_code = 403
    default_code = "unauthorized_submission"


class RateLimitExceeded(AssessmentError):
    status_code = 429
    default_code = "rate_limit_exceeded"

    def __init__(self, code: Optional[str] = None, *, retry_after: int = 3600, extra: Optional[Dict[str, Any]] = None) -> None:
        self.retry_after = retry_after
        merged = {"retry_after": retry_after, **(extra or {})}
        super().__init__(code, extra=merged)


class AttemptsExhausted(AssessmentError):
    """Terminal until an explicit restart."""

    status_code = 409
    default_code = "attempt_limit_reached"


class NotFoundError(AssessmentError):
    status_code = 404
    default_code = "not_found"


class ConflictError(AssessmentError):
    status_code = 409
    default_code = "concurrent_modification"


class PersistenceError(AssessmentError):
    status_code = 500
    default_code = "persistence_failed"


class GradingDegraded(AssessmentError):
    """External scoring unavailable. Callers fall back silently."""

    status_code = 503
    default_code = "grading_degraded"


__all__ = [
    "AssessmentError",
    "ValidationError",
    "AuthorizationError",
    "RateLimitExceeded",
    "AttemptsExhausted",
    "NotFoundError",
    "ConflictError",
    "PersistenceError",
    "GradingDegraded",
]
