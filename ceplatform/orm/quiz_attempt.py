"""
ceplatform/orm/quiz_attempt.py
Attempt ledger rows: QuizAttempt and QuizAnswer

Key Design:
- question_ids is an immutable snapshot of the sampled question set
- completed_at NULL means the attempt is open
- Once completed an attempt is never modified again
- One answer per (attempt, question)
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, JSON, UniqueConstraint, Index

from ceplatform.core.clock import utcnow
from ceplatform.orm.base import BaseModel


class QuizAttempt(BaseModel):
    __tablename__ = "quiz_attempts"

    enrollment_id = Column(
        Integer,
        ForeignKey("enrollments.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    bank_id = Column(
        Integer,
        ForeignKey("question_banks.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    question_ids = Column(JSON, nullable=False, comment="Ordered snapshot of sampled question ids")
    total_questions = Column(Integer, nullable=False)
    correct_answers = Column(Integer, nullable=False, default=0)
    score = Column(Integer, nullable=False, default=0)
    passed = Column(Boolean, nullable=False, default=False)

    exam_form = Column(String(4), nullable=True)

    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True, comment="NULL while the attempt is open")
    time_spent_seconds = Column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_attempt_enrollment_bank", "enrollment_id", "bank_id", "started_at"),
    )

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    def to_dict(self):
        return {
            "id": self.id,
            "enrollment_id": self.enrollment_id,
            "bank_id": self.bank_id,
            "total_questions": self.total_questions,
            "correct_answers": self.correct_answers,
            "score": self.score,
            "passed": self.passed,
            "exam_form": self.exam_form,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "time_spent_seconds": self.time_spent_seconds,
        }

    def __repr__(self):
        return f"<QuizAttempt(id={self.id}, bank_id={self.bank_id}, score={self.score}, completed={self.is_completed})>"


class QuizAnswer(BaseModel):
    __tablename__ = "quiz_answers"

    attempt_id = Column(
        Integer,
        ForeignKey("quiz_attempts.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    question_id = Column(
        Integer,
        ForeignKey("questions.id", ondelete="CASCADE"),
        nullable=False
    )

    selected_option = Column(Integer, nullable=False)
    is_correct = Column(Boolean, nullable=False, default=False)
    answered_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("attempt_id", "question_id", name="uq_attempt_question_answer"),
    )

    def __repr__(self):
        return f"<QuizAnswer(attempt_id={self.attempt_id}, question_id={self.question_id}, correct={self.is_correct})>"
