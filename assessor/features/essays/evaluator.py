"""Multi-signal heuristic scoring for open-ended answers.

Three quality signals (semantic similarity to the model answer, rubric
keyword coverage, content relevance) are combined into a score, and their
agreement drives a confidence estimate that gates automatic grading.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from assessor.common.errors import GradingDegraded
from assessor.common.utils import fingerprint, strip_markup
from assessor.core.config import get_settings
from assessor.features.assessments.schemas import RubricCriterion
from assessor.features.essays.embeddings import EmbeddingClient, get_embedding_client

logger = logging.getLogger("essays.evaluator")

MIN_ESSAY_CHARS = 10
MAX_ESSAY_CHARS = 10_000

SEMANTIC_WEIGHT = 0.4
KEYWORD_WEIGHT = 0.3
RELEVANCE_WEIGHT = 0.3

AUTO_GRADE_CONFIDENCE = 85.0
AUTO_PASS_SCORE = 70.0
PLAGIARISM_PENALTY_THRESHOLD = 50.0
PLAGIARISM_CONFIDENCE_FACTOR = 0.7

AUTO_PASSED = "auto_passed"
AUTO_FAILED = "auto_failed"
REQUIRES_REVIEW = "requires_review"

_TERM_RE = re.compile(r"\b\w{4,}\b")
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
_LONG_QUOTE_RE = re.compile(r"[\"'][^\"']{50,}[\"']")
_ATTRIBUTION_RE = re.compile(r"\b(according to wikipedia|as stated in|the following text)\b", re.IGNORECASE)
_TRANSITION_RE = re.compile(r"\b(therefore|furthermore|in conclusion|in summary)\b", re.IGNORECASE)


@dataclass
class EvaluationResult:
    score: float
    confidence: float
    status: str
    feedback: str
    strengths: List[str] = field(default_factory=list)
    improvements: List[str] = field(default_factory=list)
    key_concepts_found: List[str] = field(default_factory=list)
    semantic_match: float = 0
    keyword_coverage: float = 0
    content_relevance: float = 0
    plagiarism_risk: float = 0
    semantic_source: Optional[str] = None
    precondition_failed: Optional[str] = None

    @property
    def requires_review(self) -> bool:
        return self.status == REQUIRES_REVIEW


def low_confidence_result(message: str, confidence: float, *, reason: Optional[str] = None) -> EvaluationResult:
    return EvaluationResult(
        score=0,
        confidence=confidence,
        status=REQUIRES_REVIEW,
        feedback=message,
        strengths=[],
        improvements=["Awaiting instructor evaluation"],
        key_concepts_found=[],
        precondition_failed=reason,
    )


def key_terms(text: str) -> set[str]:
    return set(_TERM_RE.findall(text.lower()))


def jaccard_similarity(text_a: str, text_b: str) -> float:
    terms_a, terms_b = key_terms(text_a), key_terms(text_b)
    union = terms_a | terms_b
    if not union:
        return 50.0
    return len(terms_a & terms_b) / len(union) * 100.0


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    dot = sum(a * b for a, b in zip(vec_a, vec_b))
    mag_a = math.sqrt(sum(a * a for a in vec_a))
    mag_b = math.sqrt(sum(b * b for b in vec_b))
    if mag_a == 0 or mag_b == 0:
        return 0.0
    return dot / (mag_a * mag_b)


def keyword_coverage(essay: str, rubric: Sequence[RubricCriterion]) -> float:
    essay_lower = essay.lower()
    total_weight = 0.0
    matched_weight = 0.0
    for criterion in rubric:
        keywords = [k for k in criterion.expected_keywords if k and k.strip()]
        if not keywords:
            continue
        total_weight += criterion.weight
        found = [k for k in keywords if k.lower() in essay_lower]
        matched_weight += len(found) / len(keywords) * criterion.weight
    return matched_weight / total_weight * 100.0 if total_weight > 0 else 50.0


def content_relevance(essay: str, course_title: Optional[str] = None) -> float:
    word_count = len(essay.split())
    if word_count < 50:
        return 40.0
    if word_count < 100:
        return 60.0
    if word_count > 2000:
        return 80.0

    sentences = [s for s in _SENTENCE_SPLIT_RE.split(essay) if s.strip()]
    avg_sentence_length = len(essay) / max(1, len(sentences))

    relevance = 70.0
    if avg_sentence_length < 20 or avg_sentence_length > 150:
        relevance -= 10

    if course_title:
        essay_lower = essay.lower()
        course_keywords = [kw for kw in course_title.lower().split() if kw]
        matched = [kw for kw in course_keywords if kw in essay_lower]
        relevance += min(15, len(matched) * 5)

    return min(100.0, relevance)


def plagiarism_risk(essay: str) -> float:
    risk = 0.0
    risk += min(30, len(_LONG_QUOTE_RE.findall(essay)) * 5)
    risk += min(20, len(_ATTRIBUTION_RE.findall(essay)) * 3)
    transitions = len(_TRANSITION_RE.findall(essay))
    if transitions > len(essay.split(".")) * 0.5:
        risk += 15
    return min(100.0, risk)


def calculate_confidence(semantic: float, keywords: float, relevance: float, plagiarism: float) -> float:
    confidence = (semantic + keywords + relevance) / 3
    if plagiarism > PLAGIARISM_PENALTY_THRESHOLD:
        confidence *= PLAGIARISM_CONFIDENCE_FACTOR
    consistency = 100 - (
        abs(semantic - keywords) + abs(keywords - relevance) + abs(relevance - semantic)
    ) / 3
    confidence = (confidence + consistency) / 2
    return max(0.0, min(100.0, confidence))


def determine_status(score: float, confidence: float, *, threshold: float = AUTO_GRADE_CONFIDENCE) -> str:
    if confidence >= threshold:
        return AUTO_PASSED if score >= AUTO_PASS_SCORE else AUTO_FAILED
    return REQUIRES_REVIEW


def extract_strengths(semantic: float, keywords: float, relevance: float) -> List[str]:
    strengths: List[str] = []
    if semantic >= 75:
        strengths.append("Strong semantic alignment with expected concepts")
    if keywords >= 80:
        strengths.append("Covered most required concepts and keywords")
    if relevance >= 75:
        strengths.append("Well-structured and relevant response")
    if semantic >= 65 and keywords >= 65:
        strengths.append("Demonstrates understanding of core material")
    return strengths or ["Response submitted and recorded"]


def extract_improvements(semantic: float, keywords: float, relevance: float) -> List[str]:
    improvements: List[str] = []
    if semantic < 70:
        improvements.append("Consider covering more aspects of the expected answer")
    if keywords < 70:
        improvements.append("Include more key concepts and terminology")
    if relevance < 70:
        improvements.append("Focus more directly on the question asked")
    if semantic < 60 or keywords < 60:
        improvements.append("Review course materials and provided examples")
    return improvements


def extract_key_concepts(essay: str, rubric: Sequence[RubricCriterion]) -> List[str]:
    essay_lower = essay.lower()
    concepts: List[str] = []
    for criterion in rubric:
        for keyword in criterion.expected_keywords:
            if keyword and keyword.lower() in essay_lower and keyword not in concepts:
                concepts.append(keyword)
    return concepts


def build_feedback(score: float, confidence: float, strengths: List[str], *, threshold: float = AUTO_GRADE_CONFIDENCE) -> str:
    shown = round(score)
    if confidence >= threshold:
        if score >= 80:
            feedback = f"Excellent work! Your essay demonstrates strong understanding. ({shown}%)"
        elif score >= 70:
            feedback = f"Good response. Your answer covers the main points. ({shown}%)"
        else:
            feedback = f"Your essay needs more development. Focus on the areas below. ({shown}%)"
    else:
        feedback = "Your essay has been submitted for instructor review. Expected feedback within 24 hours."
    if strengths:
        feedback += f" Strengths: {strengths[0]}"
    return feedback


class EssayEvaluator:
    def __init__(
        self,
        embedding_client: Optional[EmbeddingClient] = None,
        *,
        confidence_threshold: Optional[float] = None,
    ) -> None:
        self._embeddings = embedding_client
        if confidence_threshold is None:
            confidence_threshold = get_settings().auto_grade_confidence
        self.confidence_threshold = float(confidence_threshold)

    @property
    def embeddings(self) -> EmbeddingClient:
        if self._embeddings is None:
            self._embeddings = get_embedding_client()
        return self._embeddings

    async def semantic_similarity(self, essay: str, model_answer: str) -> tuple[float, str]:
        client = self.embeddings
        if not client.enabled or not model_answer.strip():
            return jaccard_similarity(essay, model_answer), "lexical"
        try:
            vec_essay, vec_model = await asyncio.gather(client.embed(essay), client.embed(model_answer))
        except GradingDegraded as exc:
            logger.warning("Embedding similarity degraded (%s); using lexical fallback", exc.code)
            return jaccard_similarity(essay, model_answer), "lexical"
        similarity = cosine_similarity(vec_essay, vec_model)
        return min(100.0, max(0.0, similarity * 100.0)), "embedding"

    async def evaluate(
        self,
        essay: Optional[str],
        model_answer: Optional[str],
        rubric: Sequence[RubricCriterion],
        course_title: Optional[str] = None,
    ) -> EvaluationResult:
        cleaned = strip_markup(essay)
        if len(cleaned) < MIN_ESSAY_CHARS:
            return low_confidence_result("Essay too short to evaluate", 20, reason="essay_too_short")
        if len(cleaned) > MAX_ESSAY_CHARS:
            return low_confidence_result("Essay exceeds maximum length", 25, reason="essay_too_long")

        expected = strip_markup(model_answer)[:MAX_ESSAY_CHARS]
        try:
            return await self._evaluate(cleaned, expected, list(rubric or []), course_title)
        except Exception:
            logger.exception("Essay evaluation failed for %s", fingerprint(cleaned))
            return low_confidence_result(
                "System unable to fully evaluate essay. Please await instructor review.",
                30,
                reason="evaluation_error",
            )

    async def _evaluate(
        self,
        essay: str,
        expected: str,
        rubric: List[RubricCriterion],
        course_title: Optional[str],
    ) -> EvaluationResult:
        (semantic, source), keywords, relevance, plagiarism = await asyncio.gather(
            self.semantic_similarity(essay, expected),
            asyncio.to_thread(keyword_coverage, essay, rubric),
            asyncio.to_thread(content_relevance, essay, course_title),
            asyncio.to_thread(plagiarism_risk, essay),
        )

        # status is gated on the same rounded values that are stored and reported
        score = round(semantic * SEMANTIC_WEIGHT + keywords * KEYWORD_WEIGHT + relevance * RELEVANCE_WEIGHT)
        confidence = round(calculate_confidence(semantic, keywords, relevance, plagiarism))
        status = determine_status(score, confidence, threshold=self.confidence_threshold)
        strengths = extract_strengths(semantic, keywords, relevance)
        improvements = extract_improvements(semantic, keywords, relevance)

        logger.debug(
            "essay scored %s semantic=%.1f(%s) keywords=%.1f relevance=%.1f plagiarism=%.1f confidence=%d status=%s",
            fingerprint(essay),
            semantic,
            source,
            keywords,
            relevance,
            plagiarism,
            confidence,
            status,
        )

        return EvaluationResult(
            score=score,
            confidence=confidence,
            status=status,
            feedback=build_feedback(score, confidence, strengths, threshold=self.confidence_threshold),
            strengths=strengths,
            improvements=improvements,
            key_concepts_found=extract_key_concepts(essay, rubric),
            semantic_match=round(semantic),
            keyword_coverage=round(keywords),
            content_relevance=round(relevance),
            plagiarism_risk=round(plagiarism),
            semantic_source=source,
        )


__all__ = [
    "AUTO_FAILED",
    "AUTO_PASSED",
    "REQUIRES_REVIEW",
    "EssayEvaluator",
    "EvaluationResult",
    "calculate_confidence",
    "content_relevance",
    "cosine_similarity",
    "determine_status",
    "jaccard_similarity",
    "keyword_coverage",
    "plagiarism_risk",
]
