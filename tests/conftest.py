import sys
import os

# Ensure repo root on sys.path for imports like `assessor...`
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

# Tests run against in-memory collaborators unless a test wires its own.
for _name in ("DATABASE_URL", "REDIS_URL", "EMBEDDING_API_URL", "EMBEDDING_API_KEY", "OPENAI_API_KEY"):
    os.environ[_name] = ""

from types import SimpleNamespace  # noqa: E402
from typing import List, Optional  # noqa: E402

import pytest  # noqa: E402

from assessor.common.cache import LocalKeyedStore  # noqa: E402
from assessor.core.config import get_settings  # noqa: E402
from assessor.features.assessments.repository import (  # noqa: E402
    InMemoryCourseRepository,
    InMemoryEnrollmentRepository,
)
from assessor.features.assessments.schemas import (  # noqa: E402
    AssessmentDefinition,
    Course,
    CourseModule,
    Enrollment,
    ModuleProgress,
    Question,
    RubricCriterion,
)
from assessor.features.assessments.service import AssessmentService  # noqa: E402
from assessor.features.certificates.repository import InMemoryCertificateRepository  # noqa: E402
from assessor.features.essays.evaluator import EvaluationResult, REQUIRES_REVIEW  # noqa: E402
from assessor.features.notifications.dispatcher import NotificationDispatcher  # noqa: E402
from assessor.features.security.service import SecurityGate  # noqa: E402


@pytest.fixture
def anyio_backend():
    return "asyncio"


class StubEvaluator:
    """Returns a fixed evaluation and records every essay it sees."""

    def __init__(self, status: str = "auto_passed", score: float = 90, confidence: float = 92, error: Optional[Exception] = None):
        self.status = status
        self.score = score
        self.confidence = confidence
        self.error = error
        self.calls: List[str] = []

    async def evaluate(self, essay, model_answer, rubric, course_title=None):
        self.calls.append(essay)
        if self.error is not None:
            raise self.error
        return EvaluationResult(
            score=self.score,
            confidence=self.confidence,
            status=self.status,
            feedback="stub feedback",
            strengths=["Response submitted and recorded"],
            improvements=[] if self.status != REQUIRES_REVIEW else ["Awaiting instructor evaluation"],
            key_concepts_found=[],
            semantic_match=self.score,
            keyword_coverage=self.score,
            content_relevance=self.score,
            plagiarism_risk=0,
        )


ESSAY_ANSWER = (
    "Photosynthesis converts light energy into chemical energy stored in glucose. "
    "Chlorophyll in the leaves absorbs sunlight while carbon dioxide and water are consumed, "
    "and oxygen is released as a by-product of the reaction."
)


def objective_questions() -> List[Question]:
    return [
        Question(text="Capital of France?", type="multiple-choice", options=["Paris", "London", "Rome"], correct_answer="Paris"),
        Question(text="2 + 2?", type="multiple-choice", options=["3", "4", "5"], correct_answer=1, answer_key="index"),
        Question(text="The sky is blue.", type="true-false", options=["True", "False"], correct_answer="True"),
    ]


def essay_question(points: float = 1) -> Question:
    return Question(
        text="Explain photosynthesis.",
        type="essay",
        points=points,
        model_answer="Plants use sunlight, water and carbon dioxide to make glucose and release oxygen.",
        rubric=[RubricCriterion(criterion="Concepts", weight=1.0, expected_keywords=["sunlight", "glucose", "oxygen"])],
    )


def make_course(course_id: str = "course-1", modules: int = 2, final_questions: Optional[List[Question]] = None, passing_score: float = 70) -> Course:
    return Course(
        id=course_id,
        title="Intro Biology",
        instructor_name="Dr. Ada Byron",
        modules=[
            CourseModule(
                title=f"Module {i + 1}",
                module_assessment=AssessmentDefinition(questions=objective_questions(), passing_score=passing_score),
            )
            for i in range(modules)
        ],
        final_assessment=AssessmentDefinition(
            questions=final_questions if final_questions is not None else objective_questions(),
            passing_score=passing_score,
        ),
    )


def make_enrollment(
    course: Course,
    enrollment_id: str = "enrollment-0001abcd",
    student_id: str = "student-1",
    modules_completed: bool = True,
) -> Enrollment:
    progress = []
    if modules_completed:
        progress = [
            ModuleProgress(module_index=i, is_completed=True, assessment_attempts=1, assessment_passed=True, last_score=100)
            for i in range(len(course.modules))
        ]
    return Enrollment(
        id=enrollment_id,
        student_id=student_id,
        student_name="Grace Hopper",
        course_id=course.id,
        module_progress=progress,
        completed_modules=len(progress),
    )


@pytest.fixture
def stores():
    return SimpleNamespace(
        courses=InMemoryCourseRepository(),
        enrollments=InMemoryEnrollmentRepository(),
        certificates=InMemoryCertificateRepository(),
        keyed=LocalKeyedStore(),
    )


@pytest.fixture
def build_service(stores):
    def _build(evaluator=None, **overrides) -> AssessmentService:
        params = dict(
            courses=stores.courses,
            enrollments=stores.enrollments,
            certificates=stores.certificates,
            gate=SecurityGate(store=stores.keyed, settings=get_settings()),
            evaluator=evaluator or StubEvaluator(),
            notifier=NotificationDispatcher(sinks=[]),
        )
        params.update(overrides)
        return AssessmentService(**params)

    return _build


async def seed(stores, course: Course, enrollment: Enrollment) -> None:
    await stores.courses.save_course(course)
    await stores.enrollments.create(enrollment)


async def submit_final(svc: AssessmentService, enrollment_id: str, answers, student_id: str = "student-1"):
    token = await svc.gate.issue_csrf_token(student_id)
    return await svc.submit_final_assessment(enrollment_id, answers, token, student_id)
