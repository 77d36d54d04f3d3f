from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

QuestionType = Literal["multiple-choice", "true-false", "essay"]
AiGradingStatus = Literal["auto_passed", "auto_failed", "requires_review"]
RestartMode = Literal["full", "soft"]

ESSAY = "essay"
DEFAULT_PASSING_SCORE = 70.0


class RubricCriterion(BaseModel):
    criterion: str = "Overall Quality"
    weight: float = Field(default=1.0, ge=0)
    expected_keywords: List[str] = Field(default_factory=list)
    description: str = ""


class Question(BaseModel):
    text: str = ""
    type: QuestionType = "multiple-choice"
    points: float = Field(default=1, ge=0)
    options: Optional[List[str]] = None
    correct_answer: Optional[Union[str, int]] = None
    answer_key: Optional[Literal["text", "index"]] = None
    explanation: Optional[str] = None
    rubric: Optional[List[RubricCriterion]] = None
    model_answer: Optional[str] = None
    expected_keywords: List[str] = Field(default_factory=list)

    @property
    def is_essay(self) -> bool:
        return self.type == ESSAY

    @property
    def max_points(self) -> float:
        return self.points or 1

    def effective_rubric(self) -> List[RubricCriterion]:
        if self.rubric:
            return list(self.rubric)
        return [
            RubricCriterion(
                criterion="Overall Quality",
                weight=1.0,
                expected_keywords=list(self.expected_keywords),
                description=self.text,
            )
        ]


class AssessmentDefinition(BaseModel):
    questions: List[Question] = Field(default_factory=list)
    passing_score: float = DEFAULT_PASSING_SCORE

    @model_validator(mode="after")
    def default_passing_score(self) -> "AssessmentDefinition":
        if not self.passing_score:
            self.passing_score = DEFAULT_PASSING_SCORE
        return self


class CourseModule(BaseModel):
    title: str = ""
    module_assessment: Optional[AssessmentDefinition] = None


class Course(BaseModel):
    id: str
    title: str
    instructor_name: str = "Instructor"
    modules: List[CourseModule] = Field(default_factory=list)
    final_assessment: Optional[AssessmentDefinition] = None


class AssessmentResult(BaseModel):
    attempt_number: int = 0
    question_index: int
    question_text: str = ""
    question_type: QuestionType = "multiple-choice"
    student_answer: Any = None
    correct_answer: Optional[Union[str, int]] = None
    is_correct: bool = False
    explanation: Optional[str] = None
    points_earned: float = 0
    max_points: float = 0
    requires_manual_grading: bool = False
    instructor_feedback: Optional[str] = None
    graded_at: Optional[datetime] = None
    graded_by: Optional[str] = None
    matcher_applied: Optional[str] = None
    # essay-only AI signals
    ai_score: Optional[float] = None
    ai_confidence: Optional[float] = None
    ai_grading_status: Optional[AiGradingStatus] = None
    ai_feedback: Optional[str] = None
    ai_identified_strengths: Optional[List[str]] = None
    ai_identified_weaknesses: Optional[List[str]] = None
    ai_key_concepts_found: Optional[List[str]] = None
    ai_semantic_match: Optional[float] = None
    ai_content_relevance: Optional[float] = None
    ai_plagiarism_risk: Optional[float] = None
    ai_cheating_indicators: Optional[List[str]] = None
    ai_evaluated_at: Optional[datetime] = None

    @property
    def is_pending_review(self) -> bool:
        return self.requires_manual_grading and self.graded_at is None


class ModuleProgress(BaseModel):
    module_index: int
    is_completed: bool = False
    assessment_attempts: int = 0
    assessment_passed: bool = False
    last_score: float = 0
    completed_at: Optional[datetime] = None
    last_results: List[AssessmentResult] = Field(default_factory=list)


class Enrollment(BaseModel):
    id: str
    student_id: str
    student_name: str = "Student"
    course_id: str
    progress: float = 0
    completed_modules: int = 0
    module_progress: List[ModuleProgress] = Field(default_factory=list)
    final_assessment_attempts: int = 0
    final_assessment_passed: bool = False
    final_assessment_score: float = 0
    final_assessment_results: List[AssessmentResult] = Field(default_factory=list)
    pending_manual_grading_count: int = 0
    is_completed: bool = False
    completed_at: Optional[datetime] = None
    certificate_earned: bool = False
    certificate_id: Optional[str] = None
    certificate_url: Optional[str] = None
    certificate_issued_at: Optional[datetime] = None
    version: int = 0

    def progress_for(self, module_index: int) -> Optional[ModuleProgress]:
        return next((mp for mp in self.module_progress if mp.module_index == module_index), None)


# Requests / responses


class ModuleSubmissionRequest(BaseModel):
    answers: List[Any] = Field(default_factory=list)


class FinalSubmissionRequest(BaseModel):
    answers: List[Any] = Field(default_factory=list)
    enrollment_id: Optional[str] = None
    course_id: Optional[str] = None
    submitted_at: Optional[datetime] = None


class AssessmentSubmissionResponse(BaseModel):
    success: bool
    passed: bool = False
    score: float = 0
    passing_score: Optional[float] = None
    attempts_used: int = 0
    attempts_remaining: int = 0
    can_retry: bool = False
    must_restart_course: bool = False
    correct_count: int = 0
    total_questions: int = 0
    results: List[AssessmentResult] = Field(default_factory=list)
    error: Optional[str] = None


class FinalAssessmentResponse(AssessmentSubmissionResponse):
    certificate_earned: bool = False
    certificate_url: Optional[str] = None
    pending_manual_grading_count: int = 0
    requires_instructor_grading: bool = False
    ai_evaluation_count: int = 0
    rate_limit_remaining: Optional[int] = None


class RestartRequest(BaseModel):
    mode: RestartMode = "full"


class RestartResponse(BaseModel):
    success: bool = True
    mode: RestartMode
    message: str


class ReviewDecision(BaseModel):
    is_correct: bool
    feedback: str = ""


class EssayGradeRequest(BaseModel):
    is_correct: bool
    feedback: str = ""


class ReviewBatchRequest(BaseModel):
    decisions: Dict[int, ReviewDecision]

    @model_validator(mode="after")
    def ensure_decisions(self) -> "ReviewBatchRequest":
        if not self.decisions:
            raise ValueError("decisions must contain at least one question index")
        if any(idx < 0 for idx in self.decisions):
            raise ValueError("question indexes must be non-negative")
        return self


class ReviewOutcome(BaseModel):
    success: bool = True
    final_assessment_score: float
    final_assessment_passed: bool
    pending_manual_grading_count: int
    certificate_earned: bool
    certificate_url: Optional[str] = None
    graded: List[int] = Field(default_factory=list)
    skipped: List[int] = Field(default_factory=list)


class AssessmentResultsView(BaseModel):
    enrollment_id: str
    student_name: str
    course_name: str
    final_score: float
    passed: bool
    attempt_number: int
    pending_manual_grading_count: int
    results: List[AssessmentResult] = Field(default_factory=list)
