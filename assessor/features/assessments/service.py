"""Assessment orchestration: attempt limits, dispatch, aggregation, pass/fail.

One enrollment is mutated at a time (per-key lock in process, version check
in the repository across processes). The enrollment is written once at the
end of a submission, so a failed save never consumes an attempt.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional, Sequence

from assessor.common.errors import (
    AssessmentError,
    AttemptsExhausted,
    AuthorizationError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from assessor.common.locks import KeyedLocks
from assessor.common.utils import current_timestamp
from assessor.core.config import Settings, get_settings
from assessor.features.assessments.repository import (
    CourseRepository,
    EnrollmentRepository,
    get_course_repository,
    get_enrollment_repository,
)
from assessor.features.assessments.schemas import (
    AssessmentDefinition,
    AssessmentResult,
    AssessmentResultsView,
    AssessmentSubmissionResponse,
    Course,
    Enrollment,
    FinalAssessmentResponse,
    ModuleProgress,
    Question,
    RestartResponse,
)
from assessor.features.certificates.repository import CertificateRepository, get_certificate_repository
from assessor.features.certificates.schemas import CertificateDraft
from assessor.features.essays.evaluator import AUTO_FAILED, AUTO_PASSED, EssayEvaluator, REQUIRES_REVIEW
from assessor.features.grading.engine import grade_detailed
from assessor.features.notifications.dispatcher import (
    ASSESSMENT_FAILED,
    ASSESSMENT_PASSED,
    CERTIFICATE_ISSUED,
    ESSAY_REVIEW_REQUESTED,
    NotificationDispatcher,
    NotificationEvent,
    get_notification_dispatcher,
)
from assessor.features.security.schemas import SubmissionClaim
from assessor.features.security.service import SecurityGate, get_security_gate

logger = logging.getLogger("assessments.service")

ALREADY_PASSED = "assessment_already_passed"
EXHAUSTED_MESSAGE = "Maximum attempts reached. Please restart the course to try again."
INVALID_ANSWER_FEEDBACK = "Invalid answer format"


@dataclass
class GradedSubmission:
    results: List[AssessmentResult] = field(default_factory=list)
    earned: float = 0
    total: float = 0

    @property
    def score(self) -> float:
        return self.earned / self.total * 100 if self.total > 0 else 0.0

    @property
    def pending(self) -> int:
        return pending_review_count(self.results)

    @property
    def correct_count(self) -> int:
        return sum(1 for r in self.results if r.is_correct)

    @property
    def ai_evaluation_count(self) -> int:
        return sum(1 for r in self.results if r.ai_score is not None)


def pending_review_count(results: Sequence[AssessmentResult]) -> int:
    return sum(1 for r in results if r.is_pending_review)


def aggregate_score(results: Sequence[AssessmentResult]) -> float:
    total = sum(r.max_points for r in results)
    earned = sum(r.points_earned for r in results)
    return earned / total * 100 if total > 0 else 0.0


def is_passing(score: float, pending: int, passing_score: float) -> bool:
    return pending == 0 and score >= passing_score


class AssessmentService:
    def __init__(
        self,
        *,
        courses: Optional[CourseRepository] = None,
        enrollments: Optional[EnrollmentRepository] = None,
        certificates: Optional[CertificateRepository] = None,
        gate: Optional[SecurityGate] = None,
        evaluator: Optional[EssayEvaluator] = None,
        notifier: Optional[NotificationDispatcher] = None,
        settings: Optional[Settings] = None,
        locks: Optional[KeyedLocks] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._courses = courses
        self._enrollments = enrollments
        self._certificates = certificates
        self._gate = gate
        self._evaluator = evaluator
        self._notifier = notifier
        self.locks = locks or KeyedLocks()

    # Collaborators resolve lazily so tests can swap them before first use.

    @property
    def courses(self) -> CourseRepository:
        if self._courses is None:
            self._courses = get_course_repository()
        return self._courses

    @property
    def enrollments(self) -> EnrollmentRepository:
        if self._enrollments is None:
            self._enrollments = get_enrollment_repository()
        return self._enrollments

    @property
    def certificates(self) -> CertificateRepository:
        if self._certificates is None:
            self._certificates = get_certificate_repository()
        return self._certificates

    @property
    def gate(self) -> SecurityGate:
        if self._gate is None:
            self._gate = get_security_gate()
        return self._gate

    @property
    def evaluator(self) -> EssayEvaluator:
        if self._evaluator is None:
            self._evaluator = EssayEvaluator()
        return self._evaluator

    @property
    def notifier(self) -> NotificationDispatcher:
        if self._notifier is None:
            self._notifier = get_notification_dispatcher()
        return self._notifier

    @property
    def max_attempts(self) -> int:
        return int(self.settings.max_assessment_attempts)

    # Loading and saving

    async def load_enrollment(self, enrollment_id: str, student_id: Optional[str] = None) -> Enrollment:
        enrollment = await self.enrollments.get(enrollment_id)
        if enrollment is None:
            raise NotFoundError("enrollment_not_found")
        if student_id is not None and enrollment.student_id != str(student_id):
            logger.warning("ownership_mismatch enrollment_id=%s student_id=%s", enrollment_id, student_id)
            raise AuthorizationError("unauthorized_submission")
        return enrollment

    async def load_course(self, course_id: str) -> Course:
        course = await self.courses.get_course(course_id)
        if course is None:
            raise NotFoundError("course_not_found")
        return course

    async def save_enrollment(self, enrollment: Enrollment) -> Enrollment:
        try:
            return await self.enrollments.save(enrollment)
        except AssessmentError:
            raise
        except Exception as exc:
            logger.error("enrollment_save_failed enrollment_id=%s error=%s", enrollment.id, exc)
            raise PersistenceError("enrollment_persist_failed") from exc

    def _passing_score(self, definition: AssessmentDefinition) -> float:
        return float(definition.passing_score or self.settings.default_passing_score)

    # Grading

    def _invalid_result(self, idx: int, question: Question, attempt: int) -> AssessmentResult:
        return AssessmentResult(
            attempt_number=attempt,
            question_index=idx,
            question_text=question.text,
            question_type=question.type,
            student_answer="",
            correct_answer=None if question.is_essay else question.correct_answer,
            is_correct=False,
            explanation=question.explanation,
            points_earned=0,
            max_points=question.max_points,
            instructor_feedback=INVALID_ANSWER_FEEDBACK,
            graded_at=current_timestamp(),
            requires_manual_grading=False,
        )

    def _objective_result(self, idx: int, question: Question, answer: Any, attempt: int) -> AssessmentResult:
        outcome = grade_detailed(question, answer)
        return AssessmentResult(
            attempt_number=attempt,
            question_index=idx,
            question_text=question.text,
            question_type=question.type,
            student_answer=answer,
            correct_answer=question.correct_answer,
            is_correct=outcome.is_correct,
            explanation=question.explanation,
            points_earned=question.max_points if outcome.is_correct else 0,
            max_points=question.max_points,
            graded_at=current_timestamp(),
            matcher_applied=outcome.matcher_applied,
        )

    async def _essay_result(
        self, idx: int, question: Question, essay: str, course_title: str, attempt: int
    ) -> AssessmentResult:
        base = dict(
            attempt_number=attempt,
            question_index=idx,
            question_text=question.text,
            question_type=question.type,
            student_answer=essay,
            correct_answer=None,
            explanation=question.explanation,
            max_points=question.max_points,
        )
        try:
            model_answer = question.model_answer or (
                question.correct_answer if isinstance(question.correct_answer, str) else ""
            )
            evaluation = await self.evaluator.evaluate(essay, model_answer, question.effective_rubric(), course_title)
            report = self.gate.detect_cheating_patterns(essay)
        except Exception:
            logger.exception("essay_evaluation_failed question_index=%s", idx)
            return AssessmentResult(
                **base,
                is_correct=False,
                points_earned=0,
                requires_manual_grading=True,
                graded_at=None,
                ai_score=0,
                ai_confidence=0,
                ai_grading_status=REQUIRES_REVIEW,
                ai_feedback="AI evaluation failed. Awaiting instructor review.",
                ai_identified_strengths=[],
                ai_identified_weaknesses=[],
                ai_key_concepts_found=[],
                ai_cheating_indicators=[],
            )

        status = evaluation.status
        now = current_timestamp()
        return AssessmentResult(
            **base,
            is_correct=status == AUTO_PASSED,
            points_earned=question.max_points if status == AUTO_PASSED else 0,
            requires_manual_grading=status == REQUIRES_REVIEW,
            graded_at=now if status in (AUTO_PASSED, AUTO_FAILED) else None,
            ai_score=evaluation.score,
            ai_confidence=evaluation.confidence,
            ai_grading_status=status,
            ai_feedback=evaluation.feedback,
            ai_identified_strengths=evaluation.strengths,
            ai_identified_weaknesses=evaluation.improvements,
            ai_key_concepts_found=evaluation.key_concepts_found,
            ai_semantic_match=evaluation.semantic_match,
            ai_content_relevance=evaluation.content_relevance,
            ai_plagiarism_risk=evaluation.plagiarism_risk,
            ai_cheating_indicators=report.indicators,
            ai_evaluated_at=now,
        )

    async def _grade_question(
        self, idx: int, question: Question, answer: Any, course_title: str, attempt: int
    ) -> AssessmentResult:
        try:
            sanitized = self.gate.sanitize_answer(answer, question.type)
        except ValidationError as exc:
            logger.info("answer_rejected question_index=%s code=%s", idx, exc.code)
            return self._invalid_result(idx, question, attempt)
        if question.is_essay:
            return await self._essay_result(idx, question, sanitized, course_title, attempt)
        return self._objective_result(idx, question, sanitized, attempt)

    async def grade_submission(
        self,
        definition: AssessmentDefinition,
        answers: Sequence[Any],
        *,
        course_title: str,
        attempt_number: int,
    ) -> GradedSubmission:
        answers = list(answers or [])
        tasks = [
            self._grade_question(idx, q, answers[idx] if idx < len(answers) else None, course_title, attempt_number)
            for idx, q in enumerate(definition.questions)
        ]
        results = list(await asyncio.gather(*tasks))
        return GradedSubmission(
            results=results,
            earned=sum(r.points_earned for r in results),
            total=sum(r.max_points for r in results),
        )

    # Certificates

    async def ensure_certificate(self, enrollment: Enrollment, course: Course, score: float) -> bool:
        """Link a certificate to the enrollment unless one is already linked."""
        if enrollment.certificate_id:
            return False
        draft = CertificateDraft(
            enrollment_id=enrollment.id,
            student_id=enrollment.student_id,
            course_id=enrollment.course_id,
            student_name=enrollment.student_name,
            course_name=course.title,
            instructor_name=course.instructor_name,
            score_achieved=round(score, 2),
        )
        cert, created = await self.certificates.create_if_absent(draft)
        enrollment.certificate_earned = True
        enrollment.certificate_id = cert.id
        enrollment.certificate_url = cert.certificate_url
        enrollment.certificate_issued_at = cert.issued_date
        return created

    async def mark_final_passed(self, enrollment: Enrollment, course: Course, score: float) -> bool:
        now = current_timestamp()
        enrollment.final_assessment_passed = True
        enrollment.is_completed = True
        enrollment.completed_at = enrollment.completed_at or now
        enrollment.certificate_earned = True
        return await self.ensure_certificate(enrollment, course, score)

    def notify(self, kind: str, enrollment: Enrollment, **payload: Any) -> None:
        self.notifier.dispatch(
            NotificationEvent(kind=kind, enrollment_id=enrollment.id, student_id=enrollment.student_id, payload=payload)
        )

    # Module scope

    def _recompute_module_completion(self, enrollment: Enrollment, course: Course) -> None:
        completed = sum(1 for mp in enrollment.module_progress if mp.is_completed)
        enrollment.completed_modules = completed
        total = len(course.modules)
        enrollment.progress = round(completed / total * 100, 2) if total else 0

    @staticmethod
    def _incomplete_modules(enrollment: Enrollment, course: Course) -> List[int]:
        incomplete: List[int] = []
        for idx in range(len(course.modules)):
            progress = enrollment.progress_for(idx)
            if progress is None or not progress.is_completed:
                incomplete.append(idx)
        return incomplete

    def _exhausted_response(self, cls, attempts: int, passing_score: float):
        return cls(
            success=False,
            passed=False,
            passing_score=passing_score,
            attempts_used=attempts,
            attempts_remaining=0,
            can_retry=False,
            must_restart_course=True,
            error=EXHAUSTED_MESSAGE,
        )

    def _check_attempts(self, attempts: int) -> None:
        if attempts >= self.max_attempts:
            raise AttemptsExhausted()

    async def submit_module_assessment(
        self,
        enrollment_id: str,
        module_index: int,
        answers: Sequence[Any],
        *,
        student_id: Optional[str] = None,
    ) -> AssessmentSubmissionResponse:
        async with self.locks.hold(enrollment_id):
            enrollment = await self.load_enrollment(enrollment_id, student_id)
            course = await self.load_course(enrollment.course_id)
            if module_index < 0 or module_index >= len(course.modules):
                raise NotFoundError("module_not_found")
            definition = course.modules[module_index].module_assessment
            if definition is None or not definition.questions:
                raise NotFoundError("module_assessment_not_found")
            passing_score = self._passing_score(definition)

            progress = enrollment.progress_for(module_index)
            if progress is None:
                progress = ModuleProgress(module_index=module_index)
                enrollment.module_progress.append(progress)

            if progress.assessment_passed:
                return AssessmentSubmissionResponse(
                    success=False,
                    passed=True,
                    score=progress.last_score,
                    passing_score=passing_score,
                    attempts_used=progress.assessment_attempts,
                    attempts_remaining=max(0, self.max_attempts - progress.assessment_attempts),
                    error=ALREADY_PASSED,
                )
            try:
                self._check_attempts(progress.assessment_attempts)
            except AttemptsExhausted:
                logger.info("module_attempts_exhausted enrollment_id=%s module=%s", enrollment_id, module_index)
                return self._exhausted_response(AssessmentSubmissionResponse, progress.assessment_attempts, passing_score)

            progress.assessment_attempts += 1
            attempt = progress.assessment_attempts
            graded = await self.grade_submission(
                definition, answers, course_title=course.title, attempt_number=attempt
            )
            score = graded.score
            passed = is_passing(score, graded.pending, passing_score)

            progress.last_score = score
            progress.last_results = graded.results
            if passed:
                progress.assessment_passed = True
                progress.is_completed = True
                progress.completed_at = current_timestamp()
                self._recompute_module_completion(enrollment, course)

            await self.save_enrollment(enrollment)

        logger.info(
            "module_submission enrollment_id=%s module=%s attempt=%s score=%.1f passed=%s pending=%s",
            enrollment_id,
            module_index,
            attempt,
            score,
            passed,
            graded.pending,
        )
        self.notify(
            ASSESSMENT_PASSED if passed else ASSESSMENT_FAILED,
            enrollment,
            scope="module",
            module_index=module_index,
            score=score,
        )

        return AssessmentSubmissionResponse(
            success=True,
            passed=passed,
            score=score,
            passing_score=passing_score,
            attempts_used=attempt,
            attempts_remaining=max(0, self.max_attempts - attempt),
            can_retry=not passed and attempt < self.max_attempts,
            must_restart_course=not passed and attempt >= self.max_attempts,
            correct_count=graded.correct_count,
            total_questions=len(graded.results),
            results=graded.results,
        )

    # Final scope

    async def submit_final_assessment(
        self,
        enrollment_id: str,
        answers: Sequence[Any],
        csrf_token: Optional[str],
        student_id: str,
        submitted_at: Optional[datetime] = None,
        *,
        claimed_enrollment_id: Optional[str] = None,
        claimed_course_id: Optional[str] = None,
    ) -> FinalAssessmentResponse:
        # Security checks come first; nothing below runs for a rejected caller.
        await self.gate.require_csrf_token(student_id, csrf_token)
        rate = await self.gate.enforce_rate_limit(student_id)

        async with self.locks.hold(enrollment_id):
            enrollment = await self.load_enrollment(enrollment_id, student_id)
            course = await self.load_course(enrollment.course_id)
            definition = course.final_assessment
            if definition is None or not definition.questions:
                raise NotFoundError("final_assessment_not_found")
            self.gate.validate_submission_integrity(
                SubmissionClaim(
                    enrollment_id=claimed_enrollment_id or enrollment_id,
                    course_id=claimed_course_id or course.id,
                    submitted_at=submitted_at,
                ),
                enrollment_id,
                course.id,
            )
            passing_score = self._passing_score(definition)

            if enrollment.final_assessment_passed:
                return FinalAssessmentResponse(
                    success=False,
                    passed=True,
                    score=enrollment.final_assessment_score,
                    passing_score=passing_score,
                    attempts_used=enrollment.final_assessment_attempts,
                    attempts_remaining=max(0, self.max_attempts - enrollment.final_assessment_attempts),
                    certificate_earned=enrollment.certificate_earned,
                    certificate_url=enrollment.certificate_url,
                    rate_limit_remaining=rate.remaining,
                    error=ALREADY_PASSED,
                )
            try:
                self._check_attempts(enrollment.final_assessment_attempts)
            except AttemptsExhausted:
                logger.info("final_attempts_exhausted enrollment_id=%s", enrollment_id)
                response = self._exhausted_response(
                    FinalAssessmentResponse, enrollment.final_assessment_attempts, passing_score
                )
                response.rate_limit_remaining = rate.remaining
                return response

            incomplete = self._incomplete_modules(enrollment, course)
            if incomplete:
                raise ValidationError("modules_incomplete", extra={"incomplete_modules": incomplete})

            enrollment.final_assessment_attempts += 1
            attempt = enrollment.final_assessment_attempts
            graded = await self.grade_submission(
                definition, answers, course_title=course.title, attempt_number=attempt
            )
            score = graded.score
            pending = graded.pending
            passed = is_passing(score, pending, passing_score)

            enrollment.final_assessment_score = score
            enrollment.final_assessment_results = graded.results
            enrollment.pending_manual_grading_count = pending
            enrollment.final_assessment_passed = passed
            issued = False
            if passed:
                issued = await self.mark_final_passed(enrollment, course, score)

            await self.save_enrollment(enrollment)

        logger.info(
            "final_submission enrollment_id=%s attempt=%s score=%.1f passed=%s pending=%s",
            enrollment_id,
            attempt,
            score,
            passed,
            pending,
        )
        if issued:
            self.notify(CERTIFICATE_ISSUED, enrollment, certificate_id=enrollment.certificate_id)
        if pending:
            self.notify(ESSAY_REVIEW_REQUESTED, enrollment, pending=pending)
        else:
            self.notify(ASSESSMENT_PASSED if passed else ASSESSMENT_FAILED, enrollment, scope="final", score=score)

        return FinalAssessmentResponse(
            success=True,
            passed=passed,
            score=score,
            passing_score=passing_score,
            attempts_used=attempt,
            attempts_remaining=max(0, self.max_attempts - attempt),
            can_retry=not passed and attempt < self.max_attempts,
            must_restart_course=not passed and attempt >= self.max_attempts,
            correct_count=graded.correct_count,
            total_questions=len(graded.results),
            results=graded.results,
            certificate_earned=passed,
            certificate_url=enrollment.certificate_url if passed else None,
            pending_manual_grading_count=pending,
            requires_instructor_grading=pending > 0,
            ai_evaluation_count=graded.ai_evaluation_count,
            rate_limit_remaining=rate.remaining,
        )

    # Restart

    async def restart_assessment_state(
        self,
        enrollment_id: str,
        mode: str = "full",
        *,
        student_id: Optional[str] = None,
    ) -> RestartResponse:
        if mode not in ("full", "soft"):
            raise ValidationError("invalid_restart_mode")
        async with self.locks.hold(enrollment_id):
            enrollment = await self.load_enrollment(enrollment_id, student_id)
            if mode == "full":
                enrollment.module_progress = []
                enrollment.completed_modules = 0
                enrollment.progress = 0
                enrollment.final_assessment_attempts = 0
                enrollment.final_assessment_passed = False
                enrollment.final_assessment_score = 0
                enrollment.final_assessment_results = []
                enrollment.pending_manual_grading_count = 0
                enrollment.is_completed = False
                enrollment.completed_at = None
                enrollment.certificate_earned = False
                enrollment.certificate_id = None
                enrollment.certificate_url = None
                enrollment.certificate_issued_at = None
                message = "Course progress has been reset. You can start again from the first module."
            else:
                for mp in enrollment.module_progress:
                    if not mp.assessment_passed:
                        mp.assessment_attempts = 0
                if not enrollment.final_assessment_passed:
                    enrollment.final_assessment_attempts = 0
                message = "Assessment attempts have been reset. Completed modules are preserved."
            await self.save_enrollment(enrollment)
            # only drop the certificate once no stored enrollment references it
            if mode == "full":
                await self.certificates.delete_for_enrollment(enrollment.id)
        logger.info("assessment_restart enrollment_id=%s mode=%s", enrollment_id, mode)
        return RestartResponse(success=True, mode=mode, message=message)

    # Read side

    async def get_assessment_results(
        self, enrollment_id: str, *, student_id: Optional[str] = None
    ) -> AssessmentResultsView:
        enrollment = await self.load_enrollment(enrollment_id, student_id)
        course = await self.load_course(enrollment.course_id)
        return AssessmentResultsView(
            enrollment_id=enrollment.id,
            student_name=enrollment.student_name,
            course_name=course.title,
            final_score=enrollment.final_assessment_score,
            passed=enrollment.final_assessment_passed,
            attempt_number=enrollment.final_assessment_attempts,
            pending_manual_grading_count=enrollment.pending_manual_grading_count,
            results=enrollment.final_assessment_results,
        )


assessment_service = AssessmentService()

__all__ = [
    "AssessmentService",
    "GradedSubmission",
    "aggregate_score",
    "assessment_service",
    "is_passing",
    "pending_review_count",
]
