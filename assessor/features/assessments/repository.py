from __future__ import annotations

import asyncio
import logging
import threading
from typing import Dict, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from assessor.common.errors import ConflictError, NotFoundError, PersistenceError
from assessor.features.assessments.models import CourseRecord, EnrollmentRecord
from assessor.features.assessments.schemas import Course, Enrollment

logger = logging.getLogger("assessments.repository")


class CourseRepository(Protocol):
    async def get_course(self, course_id: str) -> Optional[Course]: ...

    async def save_course(self, course: Course) -> Course: ...


class EnrollmentRepository(Protocol):
    async def get(self, enrollment_id: str) -> Optional[Enrollment]: ...

    async def create(self, enrollment: Enrollment) -> Enrollment: ...

    async def save(self, enrollment: Enrollment) -> Enrollment: ...


_LOCAL_FALLBACK_NOTICE_EMITTED = False


def _emit_local_notice() -> None:
    global _LOCAL_FALLBACK_NOTICE_EMITTED
    if not _LOCAL_FALLBACK_NOTICE_EMITTED:
        logger.warning("DATABASE_URL not set; courses and enrollments are kept in memory for this process.")
        _LOCAL_FALLBACK_NOTICE_EMITTED = True


class InMemoryCourseRepository:
    def __init__(self) -> None:
        self._courses: Dict[str, Course] = {}

    async def get_course(self, course_id: str) -> Optional[Course]:
        course = self._courses.get(course_id)
        return course.model_copy(deep=True) if course is not None else None

    async def save_course(self, course: Course) -> Course:
        self._courses[course.id] = course.model_copy(deep=True)
        return course


class InMemoryEnrollmentRepository:
    """Deep-copies on the way in and out so callers never alias stored state."""

    def __init__(self) -> None:
        self._items: Dict[str, Enrollment] = {}
        self._lock = threading.Lock()

    async def get(self, enrollment_id: str) -> Optional[Enrollment]:
        with self._lock:
            item = self._items.get(enrollment_id)
            return item.model_copy(deep=True) if item is not None else None

    async def create(self, enrollment: Enrollment) -> Enrollment:
        with self._lock:
            if enrollment.id in self._items:
                raise ConflictError("enrollment_exists")
            stored = enrollment.model_copy(deep=True, update={"version": 0})
            self._items[enrollment.id] = stored
            return stored.model_copy(deep=True)

    async def save(self, enrollment: Enrollment) -> Enrollment:
        with self._lock:
            current = self._items.get(enrollment.id)
            if current is None:
                raise NotFoundError("enrollment_not_found")
            if current.version != enrollment.version:
                raise ConflictError()
            stored = enrollment.model_copy(deep=True, update={"version": enrollment.version + 1})
            self._items[enrollment.id] = stored
            return stored.model_copy(deep=True)


class SqlCourseRepository:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def _get_sync(self, course_id: str) -> Optional[Course]:
        with self._session_factory() as session:
            row = session.get(CourseRecord, course_id)
            return Course.model_validate(row.document) if row is not None else None

    async def get_course(self, course_id: str) -> Optional[Course]:
        return await asyncio.to_thread(self._get_sync, course_id)

    def _save_sync(self, course: Course) -> Course:
        with self._session_factory() as session:
            session.merge(CourseRecord(id=course.id, title=course.title, document=course.model_dump(mode="json")))
            session.commit()
        return course

    async def save_course(self, course: Course) -> Course:
        try:
            return await asyncio.to_thread(self._save_sync, course)
        except SQLAlchemyError as exc:
            raise PersistenceError("course_persist_failed") from exc


class SqlEnrollmentRepository:
    """Enrollment documents with a compare-and-swap on ``version``."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _to_model(row: EnrollmentRecord) -> Enrollment:
        data = dict(row.document or {})
        data["version"] = row.version
        return Enrollment.model_validate(data)

    def _get_sync(self, enrollment_id: str) -> Optional[Enrollment]:
        with self._session_factory() as session:
            row = session.get(EnrollmentRecord, enrollment_id)
            return self._to_model(row) if row is not None else None

    async def get(self, enrollment_id: str) -> Optional[Enrollment]:
        return await asyncio.to_thread(self._get_sync, enrollment_id)

    def _create_sync(self, enrollment: Enrollment) -> Enrollment:
        stored = enrollment.model_copy(update={"version": 0})
        with self._session_factory() as session:
            session.add(
                EnrollmentRecord(
                    id=stored.id,
                    student_id=stored.student_id,
                    course_id=stored.course_id,
                    version=0,
                    document=stored.model_dump(mode="json", exclude={"version"}),
                )
            )
            session.commit()
        return stored

    async def create(self, enrollment: Enrollment) -> Enrollment:
        try:
            return await asyncio.to_thread(self._create_sync, enrollment)
        except IntegrityError as exc:
            raise ConflictError("enrollment_exists") from exc
        except SQLAlchemyError as exc:
            raise PersistenceError("enrollment_persist_failed") from exc

    def _save_sync(self, enrollment: Enrollment) -> Enrollment:
        stmt = (
            update(EnrollmentRecord)
            .where(EnrollmentRecord.id == enrollment.id, EnrollmentRecord.version == enrollment.version)
            .values(
                version=enrollment.version + 1,
                document=enrollment.model_dump(mode="json", exclude={"version"}),
            )
        )
        with self._session_factory() as session:
            result = session.execute(stmt)
            if result.rowcount == 0:
                session.rollback()
                exists = session.execute(
                    select(EnrollmentRecord.id).where(EnrollmentRecord.id == enrollment.id)
                ).scalar_one_or_none()
                if exists is None:
                    raise NotFoundError("enrollment_not_found")
                raise ConflictError()
            session.commit()
        return enrollment.model_copy(update={"version": enrollment.version + 1})

    async def save(self, enrollment: Enrollment) -> Enrollment:
        try:
            return await asyncio.to_thread(self._save_sync, enrollment)
        except SQLAlchemyError as exc:
            logger.error("enrollment_save_failed enrollment_id=%s error=%s", enrollment.id, exc)
            raise PersistenceError("enrollment_persist_failed") from exc


_course_repository: Optional[CourseRepository] = None
_enrollment_repository: Optional[EnrollmentRepository] = None


def _build_repositories() -> None:
    global _course_repository, _enrollment_repository
    from assessor.core.config import get_settings

    if get_settings().get_database_url():
        from assessor.db.session import get_session_factory

        factory = get_session_factory()
        _course_repository = SqlCourseRepository(factory)
        _enrollment_repository = SqlEnrollmentRepository(factory)
    else:
        _emit_local_notice()
        _course_repository = InMemoryCourseRepository()
        _enrollment_repository = InMemoryEnrollmentRepository()


def get_course_repository() -> CourseRepository:
    if _course_repository is None:
        _build_repositories()
    return _course_repository  # type: ignore[return-value]


def get_enrollment_repository() -> EnrollmentRepository:
    if _enrollment_repository is None:
        _build_repositories()
    return _enrollment_repository  # type: ignore[return-value]


__all__ = [
    "CourseRepository",
    "EnrollmentRepository",
    "InMemoryCourseRepository",
    "InMemoryEnrollmentRepository",
    "SqlCourseRepository",
    "SqlEnrollmentRepository",
    "get_course_repository",
    "get_enrollment_repository",
]
