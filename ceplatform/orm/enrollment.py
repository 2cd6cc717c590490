"""
ceplatform/orm/enrollment.py
Enrollment - a learner's registration in one course

Carries all course-level progression aggregates and the embedded final-exam
eligibility state read by RetakePolicyEngine.

Lifecycle:
1. Created on successful registration (free or paid)
2. Mutated by progression events (lesson completion, quiz results)
3. Never deleted - only reset by an audited admin action
"""
from sqlalchemy import Column, Integer, DateTime, Boolean, ForeignKey, Index

from ceplatform.core.clock import utcnow
from ceplatform.orm.base import BaseModel


class Enrollment(BaseModel):
    __tablename__ = "enrollments"

    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Learner who owns this enrollment"
    )

    course_id = Column(
        Integer,
        ForeignKey("courses.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    enrolled_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=True, comment="NULL = never expires")

    # Progress aggregates
    current_unit_index = Column(Integer, nullable=False, default=0)
    total_time_seconds = Column(Integer, nullable=False, default=0)
    hours_completed = Column(Integer, nullable=False, default=0)
    progress = Column(Integer, nullable=False, default=0, comment="Overall percentage 0-100")

    # Final exam outcome
    final_exam_passed = Column(Boolean, nullable=False, default=False)
    final_exam_score = Column(Integer, nullable=True, comment="Best final exam score")

    # Final exam eligibility state (RetakePolicyEngine)
    final_exam_attempts = Column(Integer, nullable=False, default=0)
    first_exam_attempt_at = Column(DateTime, nullable=True)
    last_exam_attempt_at = Column(DateTime, nullable=True)
    retest_eligible_at = Column(DateTime, nullable=True)
    exam_state_version = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Optimistic concurrency token for attempt reservation and resets"
    )

    policy_acknowledged_at = Column(DateTime, nullable=True)

    completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime, nullable=True)

    reset_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_enrollment_user_course", "user_id", "course_id"),
    )

    def is_expired(self, now=None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) > self.expires_at

    def __repr__(self):
        return (
            f"<Enrollment(id={self.id}, user_id={self.user_id}, course_id={self.course_id}, "
            f"progress={self.progress}, attempts={self.final_exam_attempts})>"
        )
