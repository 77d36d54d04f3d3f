import pytest

from conftest import (
    ESSAY_ANSWER,
    StubEvaluator,
    essay_question,
    make_course,
    make_enrollment,
    objective_questions,
    seed,
    submit_final,
)

from assessor.common.errors import NotFoundError
from assessor.features.assessments.review import ManualReviewService
from assessor.features.assessments.schemas import ReviewDecision

pytestmark = pytest.mark.anyio("asyncio")

EID = "enrollment-0001abcd"
ALL_CORRECT = ["Paris", "4", "True"]


async def _pending_essay_setup(stores, build_service, final_questions=None, answers=None):
    questions = final_questions or objective_questions() + [essay_question()]
    course = make_course(final_questions=questions)
    await seed(stores, course, make_enrollment(course))
    svc = build_service(StubEvaluator(status="requires_review", score=70, confidence=50))
    resp = await submit_final(svc, EID, answers or ALL_CORRECT + [ESSAY_ANSWER])
    assert resp.pending_manual_grading_count >= 1
    return svc, ManualReviewService(svc)


async def test_approving_last_essay_passes_and_issues_certificate(stores, build_service):
    _, review = await _pending_essay_setup(stores, build_service)

    outcome = await review.grade_essay_question(EID, 3, True, "Clear explanation", "instructor-7")

    assert outcome.graded == [3]
    assert outcome.pending_manual_grading_count == 0
    assert outcome.final_assessment_score == 100
    assert outcome.final_assessment_passed is True
    assert outcome.certificate_earned is True
    assert outcome.certificate_url.startswith("/api/certificates/")

    stored = await stores.enrollments.get(EID)
    essay = stored.final_assessment_results[3]
    assert essay.graded_by == "instructor-7"
    assert essay.instructor_feedback == "Clear explanation"
    assert essay.graded_at is not None
    assert essay.requires_manual_grading is False
    assert stored.is_completed is True
    assert len(stores.certificates) == 1


async def test_repeated_feedback_is_a_no_op(stores, build_service):
    _, review = await _pending_essay_setup(stores, build_service)

    first = await review.grade_essay_question(EID, 3, True, "ok", "instructor-7")
    version_after_first = (await stores.enrollments.get(EID)).version
    second = await review.grade_essay_question(EID, 3, False, "changed my mind", "instructor-7")

    assert second.graded == []
    assert second.skipped == [3]
    assert second.certificate_url == first.certificate_url
    assert len(stores.certificates) == 1
    stored = await stores.enrollments.get(EID)
    assert stored.version == version_after_first
    assert stored.final_assessment_results[3].instructor_feedback == "ok"


async def test_rejected_essay_can_fail_the_assessment(stores, build_service):
    questions = [essay_question(points=3), objective_questions()[0]]
    _, review = await _pending_essay_setup(stores, build_service, questions, [ESSAY_ANSWER, "Paris"])

    outcome = await review.grade_essay_question(EID, 0, False, "Missing key concepts", "instructor-7")

    assert outcome.pending_manual_grading_count == 0
    assert outcome.final_assessment_score == 25
    assert outcome.final_assessment_passed is False
    assert outcome.certificate_earned is False
    assert len(stores.certificates) == 0


async def test_partial_review_keeps_assessment_pending(stores, build_service):
    questions = objective_questions() + [essay_question(), essay_question()]
    _, review = await _pending_essay_setup(
        stores, build_service, questions, ALL_CORRECT + [ESSAY_ANSWER, ESSAY_ANSWER]
    )

    outcome = await review.grade_essay_question(EID, 3, True, "", "instructor-7")

    assert outcome.pending_manual_grading_count == 1
    assert outcome.final_assessment_passed is False
    assert outcome.certificate_earned is False


async def test_batch_review_grades_all_decisions(stores, build_service):
    questions = objective_questions() + [essay_question(), essay_question()]
    _, review = await _pending_essay_setup(
        stores, build_service, questions, ALL_CORRECT + [ESSAY_ANSWER, ESSAY_ANSWER]
    )

    outcome = await review.apply_feedback(
        EID,
        {
            4: ReviewDecision(is_correct=True, feedback="good"),
            3: ReviewDecision(is_correct=True, feedback="fine"),
            0: ReviewDecision(is_correct=False, feedback="objective"),
        },
        "instructor-7",
    )

    assert outcome.graded == [3, 4]
    assert outcome.skipped == [0]
    assert outcome.final_assessment_passed is True
    stored = await stores.enrollments.get(EID)
    assert stored.final_assessment_results[0].is_correct is True


async def test_unknown_question_index_is_rejected(stores, build_service):
    _, review = await _pending_essay_setup(stores, build_service)

    with pytest.raises(NotFoundError) as excinfo:
        await review.grade_essay_question(EID, 9, True, "", "instructor-7")

    assert excinfo.value.code == "assessment_result_not_found"
    assert excinfo.value.extra == {"question_indexes": [9]}
    assert (await stores.enrollments.get(EID)).pending_manual_grading_count == 1


async def test_review_of_unknown_enrollment_is_not_found(build_service):
    review = ManualReviewService(build_service())
    with pytest.raises(NotFoundError, match="enrollment_not_found"):
        await review.grade_essay_question("missing", 0, True, "", "instructor-7")
