from sqlalchemy import Boolean, Column, DateTime, Float, String
from sqlalchemy.sql import func

from assessor.db.base import Base


class CertificateRecord(Base):
    __tablename__ = "certificates"
    __table_args__ = {"extend_existing": True}

    id = Column(String(36), primary_key=True)
    public_id = Column(String(36), unique=True, nullable=False, index=True)
    certificate_number = Column(String(32), nullable=False)
    # one certificate per enrollment; create-if-absent relies on this
    enrollment_id = Column(String(64), unique=True, nullable=False, index=True)
    student_id = Column(String(64), nullable=False, index=True)
    course_id = Column(String(64), nullable=False, index=True)
    student_name = Column(String(255), nullable=False)
    course_name = Column(String(255), nullable=False)
    instructor_name = Column(String(255), nullable=False)
    score_achieved = Column(Float, nullable=False)
    issued_date = Column(DateTime(timezone=True), nullable=False)
    certificate_url = Column(String(255), nullable=True)
    is_valid = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<CertificateRecord(id={self.id}, enrollment_id={self.enrollment_id})>"
