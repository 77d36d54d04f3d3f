"""Instructor review of essay answers held for manual grading."""

from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Optional

from assessor.common.errors import NotFoundError
from assessor.common.utils import current_timestamp
from assessor.features.assessments.schemas import ESSAY, AssessmentResult, Enrollment, ReviewDecision, ReviewOutcome
from assessor.features.assessments.service import (
    AssessmentService,
    aggregate_score,
    assessment_service,
    is_passing,
    pending_review_count,
)
from assessor.features.notifications.dispatcher import CERTIFICATE_ISSUED, ESSAY_GRADED

logger = logging.getLogger("assessments.review")


def _apply_decision(result: AssessmentResult, decision: ReviewDecision, grader_id: str) -> None:
    result.is_correct = decision.is_correct
    result.points_earned = result.max_points if decision.is_correct else 0
    result.instructor_feedback = decision.feedback
    result.graded_by = str(grader_id)
    result.graded_at = current_timestamp()
    result.requires_manual_grading = False


class ManualReviewService:
    def __init__(self, assessments: Optional[AssessmentService] = None) -> None:
        self.assessments = assessments or assessment_service

    async def apply_feedback(
        self,
        enrollment_id: str,
        decisions: Mapping[int, ReviewDecision],
        grader_id: str,
    ) -> ReviewOutcome:
        """Grade pending essays, then re-run the pass decision once none remain.

        Entries that are not essays or were already graded are left untouched
        and reported in ``skipped``; re-sending the same feedback is a no-op.
        """
        svc = self.assessments
        async with svc.locks.hold(enrollment_id):
            enrollment = await svc.load_enrollment(enrollment_id)
            course = await svc.load_course(enrollment.course_id)

            by_index: Dict[int, AssessmentResult] = {r.question_index: r for r in enrollment.final_assessment_results}
            missing = [idx for idx in decisions if idx not in by_index]
            if missing:
                raise NotFoundError("assessment_result_not_found", extra={"question_indexes": missing})

            graded: List[int] = []
            skipped: List[int] = []
            for idx in sorted(decisions):
                result = by_index[idx]
                if result.question_type != ESSAY or result.graded_at is not None:
                    skipped.append(idx)
                    continue
                _apply_decision(result, decisions[idx], grader_id)
                graded.append(idx)

            before = (
                enrollment.pending_manual_grading_count,
                enrollment.final_assessment_score,
                enrollment.final_assessment_passed,
                enrollment.certificate_id,
            )
            issued = False
            pending = pending_review_count(enrollment.final_assessment_results)
            enrollment.pending_manual_grading_count = pending
            if pending == 0 and enrollment.final_assessment_results:
                score = aggregate_score(enrollment.final_assessment_results)
                passing_score = course.final_assessment.passing_score if course.final_assessment else None
                passed = is_passing(score, 0, float(passing_score or svc.settings.default_passing_score))
                enrollment.final_assessment_score = score
                enrollment.final_assessment_passed = passed
                if passed:
                    issued = await svc.mark_final_passed(enrollment, course, score)

            after = (
                enrollment.pending_manual_grading_count,
                enrollment.final_assessment_score,
                enrollment.final_assessment_passed,
                enrollment.certificate_id,
            )
            if graded or after != before:
                await svc.save_enrollment(enrollment)

        logger.info(
            "manual_review enrollment_id=%s grader=%s graded=%s skipped=%s pending=%s",
            enrollment_id,
            grader_id,
            graded,
            skipped,
            enrollment.pending_manual_grading_count,
        )
        if graded:
            svc.notify(ESSAY_GRADED, enrollment, question_indexes=graded)
        if issued:
            svc.notify(CERTIFICATE_ISSUED, enrollment, certificate_id=enrollment.certificate_id)
        return self._outcome(enrollment, graded, skipped)

    async def grade_essay_question(
        self,
        enrollment_id: str,
        question_index: int,
        is_correct: bool,
        feedback: str,
        grader_id: str,
    ) -> ReviewOutcome:
        decision = ReviewDecision(is_correct=is_correct, feedback=feedback)
        return await self.apply_feedback(enrollment_id, {question_index: decision}, grader_id)

    @staticmethod
    def _outcome(enrollment: Enrollment, graded: List[int], skipped: List[int]) -> ReviewOutcome:
        return ReviewOutcome(
            success=True,
            final_assessment_score=enrollment.final_assessment_score,
            final_assessment_passed=enrollment.final_assessment_passed,
            pending_manual_grading_count=enrollment.pending_manual_grading_count,
            certificate_earned=enrollment.certificate_earned,
            certificate_url=enrollment.certificate_url,
            graded=graded,
            skipped=skipped,
        )


review_service = ManualReviewService()

__all__ = ["ManualReviewService", "review_service"]
