"""Security gate for the submission path.

CSRF tokens and rate-limit windows are per-user keyed state held in a
``KeyedStore``. Every check here runs before an enrollment is mutated.
"""

from __future__ import annotations

import hashlib
import logging
import re
import secrets
import statistics
import time
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from assessor.common.cache import KeyedStore, get_keyed_store
from assessor.common.errors import AuthorizationError, RateLimitExceeded, ValidationError
from assessor.common.utils import ensure_aware, strip_markup
from assessor.core.config import Settings, get_settings
from assessor.features.assessments.schemas import ESSAY
from assessor.features.security.schemas import CheatingReport, RateLimitDecision, SubmissionClaim

logger = logging.getLogger("security.gate")

MAX_ANSWER_CHARS = 10_000
MIN_ESSAY_CHARS = 10
HOUR_S = 60 * 60
DAY_S = 24 * HOUR_S

_SPAM_PATTERNS = (
    re.compile(r"(.)\1{10,}"),
    re.compile(r"\b(\w+)\s+\1\s+\1\b", re.IGNORECASE),
    re.compile(r"(https?://|www\.|\.com\b|\.net\b)", re.IGNORECASE),
)

_BOILERPLATE_GROUPS = (
    re.compile(r"\b(as an AI|as a language model|i don't have|i can't)\b", re.IGNORECASE),
    re.compile(r"\b(therefore|furthermore|in conclusion)\b", re.IGNORECASE),
    re.compile(r"\b(however|additionally|moreover)\b", re.IGNORECASE),
)

_CITATION_MARKERS = (
    re.compile(r"\[\d+\]"),
    re.compile(r"\([A-Z][a-z]+,\s*\d{4}\)"),
    re.compile(r"^[A-Z][a-z]+ [A-Z][a-z]+,\s*\d{4}", re.MULTILINE),
)

_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")

AI_CONTENT_INDICATOR = "Potential AI-generated content detected"
CITATION_INDICATOR = "Potential plagiarized content"
LINGUISTIC_INDICATOR = "Unusual writing patterns detected"


def is_likely_spam(text: str) -> bool:
    return any(p.search(text) for p in _SPAM_PATTERNS)


def has_boilerplate_density(text: str) -> bool:
    word_count = len(text.split())
    threshold = word_count / 100 * 2
    flagged = sum(1 for p in _BOILERPLATE_GROUPS if len(p.findall(text)) > threshold)
    return flagged > 1


def has_citation_markers(text: str) -> bool:
    return any(m.search(text) for m in _CITATION_MARKERS)


def has_unusual_linguistics(text: str) -> bool:
    sentences = [s for s in _SENTENCE_SPLIT_RE.split(text) if s.strip()]
    words = text.split()
    if not sentences or not words:
        return False
    lengths = [len(s.split()) for s in sentences]
    if statistics.pvariance(lengths) < 2:
        return True
    unique_ratio = len({w.lower() for w in words}) / len(words)
    return unique_ratio > 0.8


class SecurityGate:
    def __init__(
        self,
        store: Optional[KeyedStore] = None,
        settings: Optional[Settings] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or get_settings()
        self._store = store
        self._clock = clock

    @property
    def store(self) -> KeyedStore:
        if self._store is None:
            self._store = get_keyed_store()
        return self._store

    # CSRF

    @staticmethod
    def _csrf_key(user_id: str) -> str:
        return f"csrf:{user_id}"

    @staticmethod
    def _csrf_digest(token: str) -> str:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    async def issue_csrf_token(self, user_id: str) -> str:
        token = secrets.token_hex(32)
        ttl = int(self.settings.csrf_token_ttl_seconds)
        await self.store.set(self._csrf_key(user_id), self._csrf_digest(token), ttl=ttl)
        return token

    async def validate_csrf_token(self, user_id: str, token: Optional[str]) -> bool:
        """Consume the user's token when ``token`` matches it; expiry is the store TTL."""
        if not token:
            return False
        return await self.store.delete_if_equal(self._csrf_key(user_id), self._csrf_digest(str(token)))

    async def require_csrf_token(self, user_id: str, token: Optional[str]) -> None:
        if not await self.validate_csrf_token(user_id, token):
            logger.warning("csrf_rejected user_id=%s", user_id)
            raise AuthorizationError("invalid_csrf_token")

    # Rate limiting

    @staticmethod
    def _rate_key(user_id: str) -> str:
        return f"ratelimit:{user_id}"

    async def check_rate_limit(self, user_id: str) -> RateLimitDecision:
        """Trailing-window limiter; records the attempt only when allowed."""
        key = self._rate_key(user_id)
        async with self.store.hold(key):
            now = self._clock()
            stamps: List[float] = [float(t) for t in (await self.store.get(key) or [])]
            recent = [t for t in stamps if now - t < DAY_S]
            last_hour = [t for t in recent if now - t < HOUR_S]

            per_hour = self.settings.rate_limit_per_hour
            per_day = self.settings.rate_limit_per_day
            if len(last_hour) >= per_hour:
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    retry_after_seconds=HOUR_S,
                    reason=f"Too many attempts. Maximum {per_hour} per hour",
                )
            if len(recent) >= per_day:
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    retry_after_seconds=HOUR_S,
                    reason=f"Daily limit reached. Maximum {per_day} per day",
                )

            recent.append(now)
            await self.store.set(key, recent, ttl=DAY_S)
        return RateLimitDecision(allowed=True, remaining=per_hour - len(last_hour) - 1)

    async def enforce_rate_limit(self, user_id: str) -> RateLimitDecision:
        decision = await self.check_rate_limit(user_id)
        if not decision.allowed:
            logger.warning("rate_limited user_id=%s reason=%s", user_id, decision.reason)
            raise RateLimitExceeded(
                retry_after=decision.retry_after_seconds or HOUR_S,
                extra={"reason": decision.reason},
            )
        return decision

    # Integrity

    def validate_submission_integrity(
        self,
        claim: SubmissionClaim,
        expected_enrollment_id: str,
        expected_course_id: str,
    ) -> None:
        if claim.enrollment_id is not None and claim.enrollment_id != expected_enrollment_id:
            raise AuthorizationError("enrollment_mismatch")
        if claim.course_id is not None and claim.course_id != expected_course_id:
            raise AuthorizationError("course_mismatch")
        submitted_at = claim.submitted_at or datetime.now(timezone.utc)
        skew = abs(self._clock() - ensure_aware(submitted_at).timestamp())
        if skew > self.settings.submission_max_age_seconds:
            raise AuthorizationError("invalid_submission_timestamp")

    # Sanitization

    def sanitize_answer(self, answer: Any, question_type: str) -> Any:
        if question_type != ESSAY:
            if answer is None or isinstance(answer, (bool, int, float)):
                return answer
            if not isinstance(answer, str):
                raise ValidationError("invalid_answer_format")
            cleaned = strip_markup(answer)
            if len(cleaned) > MAX_ANSWER_CHARS:
                raise ValidationError("answer_too_long")
            return cleaned

        if not isinstance(answer, str):
            raise ValidationError("invalid_answer_format")
        cleaned = strip_markup(answer)
        if len(cleaned) < MIN_ESSAY_CHARS:
            raise ValidationError("essay_too_short")
        if len(cleaned) > MAX_ANSWER_CHARS:
            raise ValidationError("essay_too_long")
        if is_likely_spam(cleaned):
            raise ValidationError("spam_detected")
        return cleaned

    # Cheating heuristics

    def detect_cheating_patterns(self, text: str) -> CheatingReport:
        indicators: List[str] = []
        if has_boilerplate_density(text):
            indicators.append(AI_CONTENT_INDICATOR)
        if has_citation_markers(text):
            indicators.append(CITATION_INDICATOR)
        if has_unusual_linguistics(text):
            indicators.append(LINGUISTIC_INDICATOR)
        return CheatingReport(is_suspicious=bool(indicators), indicators=indicators)


_gate: Optional[SecurityGate] = None


def get_security_gate() -> SecurityGate:
    global _gate
    if _gate is None:
        _gate = SecurityGate()
    return _gate


__all__ = [
    "SecurityGate",
    "get_security_gate",
    "has_boilerplate_density",
    "has_citation_markers",
    "has_unusual_linguistics",
    "is_likely_spam",
]
