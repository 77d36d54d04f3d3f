from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Response

from assessor.common.deps import CurrentUser, get_current_user, is_staff, require_role
from assessor.features.assessments.review import review_service
from assessor.features.assessments.schemas import (
    AssessmentResultsView,
    AssessmentSubmissionResponse,
    EssayGradeRequest,
    FinalAssessmentResponse,
    FinalSubmissionRequest,
    ModuleSubmissionRequest,
    RestartRequest,
    RestartResponse,
    ReviewBatchRequest,
    ReviewOutcome,
)
from assessor.features.assessments.service import assessment_service
from assessor.features.security.schemas import CsrfTokenResponse

logger = logging.getLogger("assessments")

router = APIRouter(prefix="/assessments", tags=["assessments"])


def _owner_scope(current_user: CurrentUser) -> Optional[str]:
    """Students act on their own enrollments only; staff may act on any."""
    return None if is_staff(current_user) else current_user.id


@router.get("/csrf-token", response_model=CsrfTokenResponse, summary="Issue a single-use submission token")
async def issue_csrf_token(current_user: CurrentUser = Depends(get_current_user)):
    gate = assessment_service.gate
    token = await gate.issue_csrf_token(current_user.id)
    return CsrfTokenResponse(csrf_token=token, expires_in=int(gate.settings.csrf_token_ttl_seconds))


@router.post(
    "/enrollments/{enrollment_id}/modules/{module_index}/submit",
    response_model=AssessmentSubmissionResponse,
    summary="Submit answers for a module assessment",
)
async def submit_module_assessment(
    enrollment_id: str,
    module_index: int,
    payload: ModuleSubmissionRequest,
    current_user: CurrentUser = Depends(get_current_user),
):
    return await assessment_service.submit_module_assessment(
        enrollment_id,
        module_index,
        payload.answers,
        student_id=_owner_scope(current_user),
    )


@router.post(
    "/enrollments/{enrollment_id}/final/submit",
    response_model=FinalAssessmentResponse,
    summary="Submit answers for the final assessment",
    description=(
        "Requires a token from GET /assessments/csrf-token in the X-CSRF-Token header. "
        "Rate limited per student; the remaining hourly quota is echoed in X-RateLimit-Remaining."
    ),
)
async def submit_final_assessment(
    enrollment_id: str,
    payload: FinalSubmissionRequest,
    response: Response,
    x_csrf_token: Optional[str] = Header(default=None),
    current_user: CurrentUser = Depends(require_role("student")),
):
    result = await assessment_service.submit_final_assessment(
        enrollment_id,
        payload.answers,
        x_csrf_token,
        current_user.id,
        payload.submitted_at,
        claimed_enrollment_id=payload.enrollment_id,
        claimed_course_id=payload.course_id,
    )
    if result.rate_limit_remaining is not None:
        response.headers["X-RateLimit-Remaining"] = str(result.rate_limit_remaining)
    return result


@router.post(
    "/enrollments/{enrollment_id}/final/results/{question_index}/grade",
    response_model=ReviewOutcome,
    summary="Grade one essay answer held for review",
)
async def grade_essay_question(
    enrollment_id: str,
    question_index: int,
    payload: EssayGradeRequest,
    current_user: CurrentUser = Depends(require_role("instructor")),
):
    return await review_service.grade_essay_question(
        enrollment_id, question_index, payload.is_correct, payload.feedback, current_user.id
    )


@router.post(
    "/enrollments/{enrollment_id}/final/review",
    response_model=ReviewOutcome,
    summary="Apply instructor feedback to several essay answers",
)
async def apply_review_feedback(
    enrollment_id: str,
    payload: ReviewBatchRequest,
    current_user: CurrentUser = Depends(require_role("instructor")),
):
    return await review_service.apply_feedback(enrollment_id, payload.decisions, current_user.id)


@router.post(
    "/enrollments/{enrollment_id}/restart",
    response_model=RestartResponse,
    summary="Restart the course (full) or reset attempt counters (soft)",
)
async def restart_assessment_state(
    enrollment_id: str,
    payload: RestartRequest,
    current_user: CurrentUser = Depends(get_current_user),
):
    return await assessment_service.restart_assessment_state(
        enrollment_id, payload.mode, student_id=_owner_scope(current_user)
    )


@router.get(
    "/enrollments/{enrollment_id}/results",
    response_model=AssessmentResultsView,
    summary="Detailed final assessment results",
)
async def get_assessment_results(enrollment_id: str, current_user: CurrentUser = Depends(get_current_user)):
    return await assessment_service.get_assessment_results(enrollment_id, student_id=_owner_scope(current_user))
