import asyncio
from datetime import datetime, timezone

import pytest

from assessor.common.cache import LocalKeyedStore
from assessor.common.errors import AuthorizationError, RateLimitExceeded, ValidationError
from assessor.core.config import get_settings
from assessor.features.security.schemas import SubmissionClaim
from assessor.features.security.service import (
    AI_CONTENT_INDICATOR,
    CITATION_INDICATOR,
    LINGUISTIC_INDICATOR,
    SecurityGate,
)

pytestmark = pytest.mark.anyio("asyncio")

START = 1_700_000_000.0


class Clock:
    def __init__(self, now: float = START):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class YieldingStore(LocalKeyedStore):
    """Hands control back to the loop on every read, like a networked store."""

    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)

    async def delete_if_equal(self, key, expected):
        await asyncio.sleep(0)
        return await super().delete_if_equal(key, expected)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def gate(clock):
    return SecurityGate(store=LocalKeyedStore(clock=clock), settings=get_settings(), clock=clock)


# CSRF


async def test_csrf_token_is_single_use(gate):
    token = await gate.issue_csrf_token("u1")
    assert len(token) == 64
    assert await gate.validate_csrf_token("u1", token) is True
    assert await gate.validate_csrf_token("u1", token) is False


async def test_csrf_token_is_bound_to_user(gate):
    token = await gate.issue_csrf_token("u1")
    assert await gate.validate_csrf_token("u2", token) is False
    assert await gate.validate_csrf_token("u1", "0" * 64) is False
    # a failed comparison does not consume the token
    assert await gate.validate_csrf_token("u1", token) is True


async def test_csrf_token_expires_after_thirty_minutes(gate, clock):
    token = await gate.issue_csrf_token("u1")
    clock.advance(30 * 60 + 1)
    assert await gate.validate_csrf_token("u1", token) is False


async def test_reissue_replaces_previous_token(gate):
    first = await gate.issue_csrf_token("u1")
    second = await gate.issue_csrf_token("u1")
    assert await gate.validate_csrf_token("u1", first) is False
    assert await gate.validate_csrf_token("u1", second) is True


async def test_require_csrf_token_raises(gate):
    with pytest.raises(AuthorizationError, match="invalid_csrf_token"):
        await gate.require_csrf_token("u1", None)


async def test_concurrent_validation_consumes_token_once(clock):
    gate = SecurityGate(store=YieldingStore(clock=clock), settings=get_settings(), clock=clock)
    token = await gate.issue_csrf_token("u1")

    results = await asyncio.gather(*(gate.validate_csrf_token("u1", token) for _ in range(3)))

    assert sorted(results) == [False, False, True]


# Rate limiting


async def test_hourly_limit(gate, clock):
    remaining = []
    for _ in range(5):
        decision = await gate.check_rate_limit("u1")
        assert decision.allowed is True
        remaining.append(decision.remaining)
        clock.advance(60)
    assert remaining == [4, 3, 2, 1, 0]

    denied = await gate.check_rate_limit("u1")
    assert denied.allowed is False
    assert denied.retry_after_seconds == 3600
    assert "per hour" in denied.reason

    clock.advance(60 * 60)
    assert (await gate.check_rate_limit("u1")).allowed is True


async def test_daily_limit(gate, clock):
    for _ in range(4):
        for _ in range(5):
            assert (await gate.check_rate_limit("u1")).allowed is True
        clock.advance(60 * 60 + 1)

    denied = await gate.check_rate_limit("u1")
    assert denied.allowed is False
    assert "per day" in denied.reason


async def test_denied_attempts_are_not_recorded(gate, clock):
    for _ in range(5):
        await gate.check_rate_limit("u1")
    for _ in range(3):
        assert (await gate.check_rate_limit("u1")).allowed is False
    clock.advance(60 * 60 + 1)
    assert (await gate.check_rate_limit("u1")).remaining == 4


async def test_limits_are_per_user(gate):
    for _ in range(5):
        await gate.check_rate_limit("u1")
    assert (await gate.check_rate_limit("u2")).allowed is True


async def test_enforce_rate_limit_raises_with_retry_after(gate):
    for _ in range(5):
        await gate.enforce_rate_limit("u1")
    with pytest.raises(RateLimitExceeded) as excinfo:
        await gate.enforce_rate_limit("u1")
    assert excinfo.value.retry_after == 3600
    assert excinfo.value.extra["retry_after"] == 3600


async def test_concurrent_checks_respect_hourly_limit(clock):
    gate = SecurityGate(store=YieldingStore(clock=clock), settings=get_settings(), clock=clock)

    decisions = await asyncio.gather(*(gate.check_rate_limit("u1") for _ in range(10)))

    assert sum(1 for d in decisions if d.allowed) == 5
    assert sorted(d.remaining for d in decisions if d.allowed) == [0, 1, 2, 3, 4]


# Integrity


def _at(clock, delta_seconds):
    return datetime.fromtimestamp(clock.now + delta_seconds, tz=timezone.utc)


def test_integrity_accepts_matching_recent_claim(gate, clock):
    claim = SubmissionClaim(enrollment_id="e1", course_id="c1", submitted_at=_at(clock, -120))
    gate.validate_submission_integrity(claim, "e1", "c1")


@pytest.mark.parametrize(
    "enrollment_id, course_id, code",
    [
        ("other", "c1", "enrollment_mismatch"),
        ("e1", "other", "course_mismatch"),
    ],
)
def test_integrity_rejects_mismatched_ids(gate, clock, enrollment_id, course_id, code):
    claim = SubmissionClaim(enrollment_id=enrollment_id, course_id=course_id, submitted_at=_at(clock, 0))
    with pytest.raises(AuthorizationError, match=code):
        gate.validate_submission_integrity(claim, "e1", "c1")


@pytest.mark.parametrize("offset", [-(61 * 60), 61 * 60])
def test_integrity_rejects_stale_or_future_timestamps(gate, clock, offset):
    claim = SubmissionClaim(enrollment_id="e1", course_id="c1", submitted_at=_at(clock, offset))
    with pytest.raises(AuthorizationError, match="invalid_submission_timestamp"):
        gate.validate_submission_integrity(claim, "e1", "c1")


def test_integrity_treats_naive_timestamps_as_utc(gate, clock):
    naive = _at(clock, -60).replace(tzinfo=None)
    gate.validate_submission_integrity(SubmissionClaim(submitted_at=naive), "e1", "c1")


# Sanitization


def test_essay_markup_is_stripped(gate):
    cleaned = gate.sanitize_answer("<p>Cells divide by <b>mitosis</b>.</p><script>steal()</script>", "essay")
    assert cleaned == "Cells divide by mitosis."


@pytest.mark.parametrize(
    "essay",
    [
        "My essay text &lt;script&gt;alert(1)&lt;/script&gt; here",
        "My essay text &amp;lt;script&amp;gt;alert(1)&amp;lt;/script&amp;gt; here",
        "My essay text &lt;img src=x onerror=alert(1)&gt;here",
    ],
)
def test_escaped_markup_is_stripped(gate, essay):
    cleaned = gate.sanitize_answer(essay, "essay")
    assert "<" not in cleaned
    assert cleaned.startswith("My essay text")
    assert cleaned.endswith("here")


@pytest.mark.parametrize(
    "essay, code",
    [
        ("too short", "essay_too_short"),
        ("<i>" + "x" * 5 + "</i>     ", "essay_too_short"),
        ("x" * 10_001, "essay_too_long"),
        ("This is gre" + "a" * 15 + "t work", "spam_detected"),
        ("Read more at https://example.org today", "spam_detected"),
        ("Cells cells cells divide quickly", "spam_detected"),
        (12345, "invalid_answer_format"),
    ],
)
def test_essay_rejections(gate, essay, code):
    with pytest.raises(ValidationError, match=code):
        gate.sanitize_answer(essay, "essay")


def test_objective_answers_are_stripped_not_length_checked(gate):
    assert gate.sanitize_answer("  <b>Paris</b> ", "multiple-choice") == "Paris"
    assert gate.sanitize_answer("A", "multiple-choice") == "A"
    assert gate.sanitize_answer(2, "multiple-choice") == 2
    assert gate.sanitize_answer(None, "true-false") is None
    with pytest.raises(ValidationError, match="answer_too_long"):
        gate.sanitize_answer("y" * 10_001, "multiple-choice")


# Cheating heuristics


def test_boilerplate_density_is_flagged(gate):
    report = gate.detect_cheating_patterns("As an AI I can't say. Therefore it works. However it fails.")
    assert report.is_suspicious is True
    assert AI_CONTENT_INDICATOR in report.indicators


def test_citation_markers_are_flagged(gate):
    report = gate.detect_cheating_patterns("Growth doubled last year [1]. Others agree (Smith, 2020).")
    assert CITATION_INDICATOR in report.indicators


def test_uniform_sentences_are_flagged(gate):
    report = gate.detect_cheating_patterns("One two three. Four five six. Seven eight nine.")
    assert LINGUISTIC_INDICATOR in report.indicators


def test_ordinary_prose_is_clean(gate):
    text = (
        "The cat sat on the mat and the cat was happy. It slept. "
        "The dog and the cat and the bird played in the garden with the ball all day long."
    )
    report = gate.detect_cheating_patterns(text)
    assert report.is_suspicious is False
    assert report.indicators == []
