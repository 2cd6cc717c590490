"""
ceplatform/orm/unit_progress.py
Per-enrollment progress rows: UnitProgress and LessonProgress

UnitProgress state machine: locked -> in_progress -> completed.
Only an audited administrative override may move a unit backwards.
"""
from sqlalchemy import Column, Integer, DateTime, Boolean, ForeignKey, UniqueConstraint, Index, Enum as SQLEnum
from enum import Enum

from ceplatform.orm.base import BaseModel


class UnitStatus(str, Enum):
    LOCKED = "locked"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class UnitProgress(BaseModel):
    """Exactly one row per (enrollment, unit)."""
    __tablename__ = "unit_progress"

    enrollment_id = Column(
        Integer,
        ForeignKey("enrollments.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    unit_id = Column(
        Integer,
        ForeignKey("units.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    status = Column(
        SQLEnum(UnitStatus),
        nullable=False,
        default=UnitStatus.LOCKED,
        index=True
    )

    lessons_completed = Column(Integer, nullable=False, default=0)

    quiz_passed = Column(Boolean, nullable=False, default=False)
    quiz_best_score = Column(Integer, nullable=True)
    quiz_attempts = Column(Integer, nullable=False, default=0)

    time_spent_seconds = Column(Integer, nullable=False, default=0)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("enrollment_id", "unit_id", name="uq_enrollment_unit_progress"),
        Index("ix_unit_progress_enrollment_status", "enrollment_id", "status"),
    )

    def __repr__(self):
        return f"<UnitProgress(enrollment_id={self.enrollment_id}, unit_id={self.unit_id}, status={self.status})>"


class LessonProgress(BaseModel):
    """Exactly one row per (enrollment, lesson). Created on first activity."""
    __tablename__ = "lesson_progress"

    enrollment_id = Column(
        Integer,
        ForeignKey("enrollments.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    lesson_id = Column(
        Integer,
        ForeignKey("lessons.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    completed = Column(Boolean, nullable=False, default=False)
    time_spent_seconds = Column(Integer, nullable=False, default=0)
    completed_at = Column(DateTime, nullable=True)
    last_accessed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("enrollment_id", "lesson_id", name="uq_enrollment_lesson_progress"),
    )

    def __repr__(self):
        return f"<LessonProgress(enrollment_id={self.enrollment_id}, lesson_id={self.lesson_id}, completed={self.completed})>"
