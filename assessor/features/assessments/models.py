from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from assessor.db.base import Base


class CourseRecord(Base):
    """Course with modules and assessments kept as one JSON document."""
    __tablename__ = "courses"
    __table_args__ = {"extend_existing": True}

    id = Column(String(64), primary_key=True)
    title = Column(String(255), nullable=False)
    document = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<CourseRecord(id={self.id}, title={self.title})>"


class EnrollmentRecord(Base):
    __tablename__ = "enrollments"
    __table_args__ = {"extend_existing": True}

    id = Column(String(64), primary_key=True)
    student_id = Column(String(64), nullable=False, index=True)
    course_id = Column(String(64), nullable=False, index=True)
    # optimistic concurrency counter, bumped on every save
    version = Column(Integer, nullable=False, default=0)
    document = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<EnrollmentRecord(id={self.id}, version={self.version})>"
