"""Objective answer matching with an ordered matcher registry.

Assessment authors may store ``correct_answer`` as the option text or as the
option index. Matchers run in priority order and the first success wins.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from assessor.features.assessments.schemas import Question


class MatcherName:
    DIRECT_MATCH = "DIRECT_MATCH"
    INDEX_MATCH = "INDEX_MATCH"
    REVERSE_INDEX_MATCH = "REVERSE_INDEX_MATCH"


class AnswerKey:
    TEXT = "text"
    INDEX = "index"


@dataclass
class MatchAttempt:
    matcher: str
    matched: bool
    reason: Optional[str] = None


@dataclass
class GradeOutcome:
    is_correct: bool
    matcher_applied: Optional[str]
    attempts: List[MatchAttempt] = field(default_factory=list)


MatcherHandler = Callable[["_Prepared"], Tuple[bool, Optional[str]]]


def normalise(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value).lower()
    return str(value).strip().lower()


def _parse_index(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return int(text)
        except ValueError:
            try:
                as_float = float(text)
            except ValueError:
                return None
            return int(as_float) if as_float.is_integer() else None
    return None


@dataclass
class _Prepared:
    correct: str
    submitted: str
    raw_submitted: Any
    options: Sequence[str]
    answer_key: Optional[str]

    def allows(self, key: str) -> bool:
        return self.answer_key is None or self.answer_key == key

    def names_option(self) -> bool:
        return isinstance(self.raw_submitted, str) and any(normalise(opt) == self.submitted for opt in self.options)

    def compare_option(self, idx: int) -> Tuple[bool, Optional[str]]:
        if not self.correct:
            return False, "question has no correct answer"
        if self.allows(AnswerKey.TEXT) and normalise(self.options[idx]) == self.correct:
            return True, None
        if self.allows(AnswerKey.INDEX) and normalise(idx) == self.correct:
            return True, None
        return False, f"option {idx} does not match"


def _direct_match(prep: _Prepared) -> Tuple[bool, Optional[str]]:
    if not prep.correct:
        return False, "question has no correct answer"
    if prep.correct == prep.submitted:
        return True, None
    return False, "normalised values differ"


def _index_match(prep: _Prepared) -> Tuple[bool, Optional[str]]:
    if not prep.options:
        return False, "question has no options"
    # with a text key, a submission spelling out an option is that option, never an index
    if prep.answer_key == AnswerKey.TEXT and prep.names_option():
        return False, "submission is option text"
    idx = _parse_index(prep.raw_submitted)
    if idx is None:
        return False, "submission is not an index"
    if idx < 0 or idx >= len(prep.options):
        return False, "index out of range"
    return prep.compare_option(idx)


def _reverse_index_match(prep: _Prepared) -> Tuple[bool, Optional[str]]:
    if not prep.options:
        return False, "question has no options"
    idx = next((i for i, opt in enumerate(prep.options) if normalise(opt) == prep.submitted), -1)
    if idx < 0:
        return False, "submission is not an option"
    return prep.compare_option(idx)


class MatcherStrategy:
    def __init__(self, name: str, handler: MatcherHandler, *, priority: int = 100) -> None:
        self.name = name
        self._handler = handler
        self.priority = priority

    def evaluate(self, prep: _Prepared) -> MatchAttempt:
        matched, reason = self._handler(prep)
        return MatchAttempt(matcher=self.name, matched=matched, reason=reason)


class MatcherRegistry:
    def __init__(self) -> None:
        self._strategies: Dict[str, MatcherStrategy] = {}

    def register(self, strategy: MatcherStrategy) -> None:
        self._strategies[strategy.name] = strategy

    def ordered(self) -> List[MatcherStrategy]:
        return sorted(self._strategies.values(), key=lambda s: s.priority)

    def strategy(self, name: str) -> Optional[MatcherStrategy]:
        return self._strategies.get(name)

    def list_matchers(self) -> List[str]:
        return [s.name for s in self.ordered()]


registry = MatcherRegistry()
registry.register(MatcherStrategy(MatcherName.DIRECT_MATCH, _direct_match, priority=0))
registry.register(MatcherStrategy(MatcherName.INDEX_MATCH, _index_match, priority=10))
registry.register(MatcherStrategy(MatcherName.REVERSE_INDEX_MATCH, _reverse_index_match, priority=20))


def grade_detailed(question: Question, submitted_answer: Any) -> GradeOutcome:
    prep = _Prepared(
        correct=normalise(question.correct_answer),
        submitted=normalise(submitted_answer),
        raw_submitted=submitted_answer,
        options=list(question.options or []),
        answer_key=question.answer_key,
    )
    attempts: List[MatchAttempt] = []
    for strategy in registry.ordered():
        attempt = strategy.evaluate(prep)
        attempts.append(attempt)
        if attempt.matched:
            return GradeOutcome(True, strategy.name, attempts)
    return GradeOutcome(False, None, attempts)


def grade(question: Question, submitted_answer: Any) -> bool:
    return grade_detailed(question, submitted_answer).is_correct


def supported_matchers() -> List[str]:
    return registry.list_matchers()


__all__ = [
    "AnswerKey",
    "GradeOutcome",
    "MatchAttempt",
    "MatcherName",
    "grade",
    "grade_detailed",
    "normalise",
    "supported_matchers",
]
