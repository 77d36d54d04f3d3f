from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class CsrfTokenResponse(BaseModel):
    csrf_token: str
    expires_in: int


class RateLimitDecision(BaseModel):
    allowed: bool
    remaining: int = 0
    retry_after_seconds: Optional[int] = None
    reason: Optional[str] = None


class SubmissionClaim(BaseModel):
    """What the client says it is submitting."""

    enrollment_id: Optional[str] = None
    course_id: Optional[str] = None
    submitted_at: Optional[datetime] = None


class CheatingReport(BaseModel):
    is_suspicious: bool = False
    indicators: List[str] = Field(default_factory=list)


__all__ = ["CheatingReport", "CsrfTokenResponse", "RateLimitDecision", "SubmissionClaim"]
