from __future__ import annotations

import asyncio
import logging
import threading
from typing import Dict, Optional, Protocol, Tuple
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from assessor.common.errors import PersistenceError
from assessor.common.utils import current_timestamp
from assessor.features.certificates.models import CertificateRecord
from assessor.features.certificates.schemas import (
    Certificate,
    CertificateDraft,
    certificate_number_for,
    certificate_url_for,
)

logger = logging.getLogger("certificates.repository")


def _new_certificate(draft: CertificateDraft) -> Certificate:
    cert_id = str(uuid4())
    return Certificate(
        id=cert_id,
        public_id=str(uuid4()),
        certificate_number=certificate_number_for(draft.enrollment_id),
        enrollment_id=draft.enrollment_id,
        student_id=draft.student_id,
        course_id=draft.course_id,
        student_name=draft.student_name,
        course_name=draft.course_name,
        instructor_name=draft.instructor_name,
        score_achieved=draft.score_achieved,
        issued_date=current_timestamp(),
        certificate_url=certificate_url_for(cert_id),
        is_valid=True,
    )


class CertificateRepository(Protocol):
    async def get(self, certificate_id: str) -> Optional[Certificate]: ...

    async def get_by_public_id(self, public_id: str) -> Optional[Certificate]: ...

    async def get_for_enrollment(self, enrollment_id: str) -> Optional[Certificate]: ...

    async def create_if_absent(self, draft: CertificateDraft) -> Tuple[Certificate, bool]: ...

    async def delete_for_enrollment(self, enrollment_id: str) -> bool: ...


class InMemoryCertificateRepository:
    """Process-local certificates keyed by enrollment id."""

    def __init__(self) -> None:
        self._by_enrollment: Dict[str, Certificate] = {}
        self._lock = threading.Lock()

    async def get(self, certificate_id: str) -> Optional[Certificate]:
        with self._lock:
            return next((c for c in self._by_enrollment.values() if c.id == certificate_id), None)

    async def get_by_public_id(self, public_id: str) -> Optional[Certificate]:
        with self._lock:
            return next((c for c in self._by_enrollment.values() if c.public_id == public_id), None)

    async def get_for_enrollment(self, enrollment_id: str) -> Optional[Certificate]:
        with self._lock:
            return self._by_enrollment.get(enrollment_id)

    async def create_if_absent(self, draft: CertificateDraft) -> Tuple[Certificate, bool]:
        with self._lock:
            existing = self._by_enrollment.get(draft.enrollment_id)
            if existing is not None:
                return existing, False
            cert = _new_certificate(draft)
            self._by_enrollment[draft.enrollment_id] = cert
        logger.info("certificate_issued id=%s enrollment_id=%s", cert.id, draft.enrollment_id)
        return cert, True

    async def delete_for_enrollment(self, enrollment_id: str) -> bool:
        with self._lock:
            removed = self._by_enrollment.pop(enrollment_id, None)
        return removed is not None

    def __len__(self) -> int:
        return len(self._by_enrollment)


class SqlCertificateRepository:
    """SQLAlchemy-backed repository; sync sessions are driven off the event loop."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def _fetch_one(self, stmt) -> Optional[Certificate]:
        with self._session_factory() as session:
            row = session.execute(stmt).scalar_one_or_none()
            return Certificate.model_validate(row) if row is not None else None

    async def get(self, certificate_id: str) -> Optional[Certificate]:
        stmt = select(CertificateRecord).where(CertificateRecord.id == certificate_id)
        return await asyncio.to_thread(self._fetch_one, stmt)

    async def get_by_public_id(self, public_id: str) -> Optional[Certificate]:
        stmt = select(CertificateRecord).where(CertificateRecord.public_id == public_id)
        return await asyncio.to_thread(self._fetch_one, stmt)

    async def get_for_enrollment(self, enrollment_id: str) -> Optional[Certificate]:
        stmt = select(CertificateRecord).where(CertificateRecord.enrollment_id == enrollment_id)
        return await asyncio.to_thread(self._fetch_one, stmt)

    def _create_if_absent_sync(self, draft: CertificateDraft) -> Tuple[Certificate, bool]:
        lookup = select(CertificateRecord).where(CertificateRecord.enrollment_id == draft.enrollment_id)
        with self._session_factory() as session:
            existing = session.execute(lookup).scalar_one_or_none()
            if existing is not None:
                return Certificate.model_validate(existing), False
            cert = _new_certificate(draft)
            session.add(CertificateRecord(**cert.model_dump()))
            try:
                session.commit()
            except IntegrityError:
                # Another writer issued it first; the unique enrollment_id wins.
                session.rollback()
                winner = session.execute(lookup).scalar_one()
                return Certificate.model_validate(winner), False
            return cert, True

    async def create_if_absent(self, draft: CertificateDraft) -> Tuple[Certificate, bool]:
        try:
            cert, created = await asyncio.to_thread(self._create_if_absent_sync, draft)
        except SQLAlchemyError as exc:
            logger.error("certificate_create_failed enrollment_id=%s error=%s", draft.enrollment_id, exc)
            raise PersistenceError("certificate_persist_failed") from exc
        if created:
            logger.info("certificate_issued id=%s enrollment_id=%s", cert.id, draft.enrollment_id)
        return cert, created

    def _delete_sync(self, enrollment_id: str) -> bool:
        with self._session_factory() as session:
            result = session.execute(delete(CertificateRecord).where(CertificateRecord.enrollment_id == enrollment_id))
            session.commit()
            return bool(result.rowcount)

    async def delete_for_enrollment(self, enrollment_id: str) -> bool:
        try:
            return await asyncio.to_thread(self._delete_sync, enrollment_id)
        except SQLAlchemyError as exc:
            raise PersistenceError("certificate_delete_failed") from exc


_repository: Optional[CertificateRepository] = None


def get_certificate_repository() -> CertificateRepository:
    global _repository
    if _repository is None:
        from assessor.core.config import get_settings

        if get_settings().get_database_url():
            from assessor.db.session import get_session_factory

            _repository = SqlCertificateRepository(get_session_factory())
        else:
            logger.warning("DATABASE_URL not set; certificates are kept in memory")
            _repository = InMemoryCertificateRepository()
    return _repository


__all__ = [
    "CertificateRepository",
    "InMemoryCertificateRepository",
    "SqlCertificateRepository",
    "get_certificate_repository",
]
