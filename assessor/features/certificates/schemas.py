from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


def certificate_number_for(enrollment_id: str) -> str:
    return f"CERT-{str(enrollment_id)[-8:].upper()}"


def certificate_url_for(certificate_id: str) -> str:
    return f"/api/certificates/{certificate_id}"


class CertificateDraft(BaseModel):
    """Deterministic fields a certificate is issued from."""

    enrollment_id: str
    student_id: str
    course_id: str
    student_name: str
    course_name: str
    instructor_name: str
    score_achieved: float


class Certificate(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    public_id: str
    certificate_number: str
    enrollment_id: str
    student_id: str
    course_id: str
    student_name: str
    course_name: str
    instructor_name: str
    score_achieved: float
    issued_date: datetime
    certificate_url: Optional[str] = None
    is_valid: bool = True


__all__ = ["Certificate", "CertificateDraft", "certificate_number_for", "certificate_url_for"]
