"""
ceplatform/orm/question_bank.py
Question pools for unit quizzes and final exams

A bank is scoped to a course (final exam) or to one unit (unit quiz).
Final-exam banks carry an exam_form so that retakes rotate between forms.
"""
from sqlalchemy import Column, Integer, String, Text, Boolean, ForeignKey, JSON, Index, Enum as SQLEnum
from enum import Enum

from ceplatform.orm.base import BaseModel


class BankType(str, Enum):
    UNIT_QUIZ = "unit_quiz"
    FINAL_EXAM = "final_exam"


class QuestionBank(BaseModel):
    __tablename__ = "question_banks"

    course_id = Column(
        Integer,
        ForeignKey("courses.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    unit_id = Column(
        Integer,
        ForeignKey("units.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
        comment="Set for unit quizzes, NULL for final exams"
    )

    title = Column(String(255), nullable=False)

    bank_type = Column(SQLEnum(BankType), nullable=False, index=True)

    exam_form = Column(
        String(4),
        nullable=True,
        comment="Final exam form letter (A/B)"
    )

    questions_per_attempt = Column(Integer, nullable=False, default=10)
    passing_score = Column(Integer, nullable=False, default=70, comment="Percentage")
    time_limit_minutes = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("ix_bank_course_type", "course_id", "bank_type"),
    )

    @property
    def is_final_exam(self) -> bool:
        return self.bank_type == BankType.FINAL_EXAM

    def __repr__(self):
        return f"<QuestionBank(id={self.id}, type={self.bank_type}, form={self.exam_form})>"


class Question(BaseModel):
    """Multiple-choice question. correct_option indexes into options."""
    __tablename__ = "questions"

    bank_id = Column(
        Integer,
        ForeignKey("question_banks.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    prompt = Column(Text, nullable=False)
    options = Column(JSON, nullable=False, comment="List of answer option strings (2+)")
    correct_option = Column(Integer, nullable=False)
    explanation = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    def __repr__(self):
        return f"<Question(id={self.id}, bank_id={self.bank_id})>"
