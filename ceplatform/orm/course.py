"""
ceplatform/orm/course.py
Course catalog tables: Course, Unit, Lesson

These rows are owned by the content-authoring side. The progression engine
only reads them (ordering, hours, jurisdiction) and never mutates them.
"""
from sqlalchemy import Column, Integer, String, Text, Boolean, ForeignKey, UniqueConstraint, Index

from ceplatform.orm.base import BaseModel


class Course(BaseModel):
    """
    A regulated course offering.

    jurisdiction drives RetakePolicyEngine (e.g. "FL" selects the Florida
    retake rules); hours_required drives credited-hours computation.
    """
    __tablename__ = "courses"

    title = Column(String(255), nullable=False)

    jurisdiction = Column(
        String(8),
        nullable=False,
        index=True,
        comment="Two-letter state code used to select the retake policy"
    )

    hours_required = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Credit hours awarded on full completion"
    )

    expiration_months = Column(
        Integer,
        nullable=True,
        comment="Months an enrollment stays active (NULL = never expires)"
    )

    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self):
        return f"<Course(id={self.id}, title='{self.title}', jurisdiction='{self.jurisdiction}')>"


class Unit(BaseModel):
    """Ordered course subdivision. Immutable once authored."""
    __tablename__ = "units"

    course_id = Column(
        Integer,
        ForeignKey("courses.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    sequence = Column(
        Integer,
        nullable=False,
        comment="1-based position in the course; drives unlock order"
    )

    title = Column(String(255), nullable=False)
    hours_required = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("course_id", "sequence", name="uq_unit_course_sequence"),
    )

    def __repr__(self):
        return f"<Unit(id={self.id}, course_id={self.course_id}, sequence={self.sequence})>"


class Lesson(BaseModel):
    """Lesson inside a unit."""
    __tablename__ = "lessons"

    unit_id = Column(
        Integer,
        ForeignKey("units.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    sequence = Column(Integer, nullable=False, default=0)
    title = Column(String(255), nullable=False)
    duration_minutes = Column(Integer, nullable=True, default=15)

    __table_args__ = (
        Index("ix_lesson_unit_sequence", "unit_id", "sequence"),
    )

    def __repr__(self):
        return f"<Lesson(id={self.id}, unit_id={self.unit_id}, sequence={self.sequence})>"
