"""
ceplatform/services/attempt_ledger.py
Quiz and exam attempt ledger

RULES:
1. An attempt is opened with an immutable snapshot of its question ids
2. One answer per (attempt, question); answers only while the attempt is open
3. Completion is a conditional UPDATE ... WHERE completed_at IS NULL, so the
   first completion wins and every later one is rejected without touching
   the stored score
4. Score = correct / total * 100 rounded half-up (7/10 -> 70, 2/3 -> 67)
"""
import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ceplatform.core.clock import Clock, utcnow
from ceplatform.errors import (
    AttemptAlreadyCompleted,
    AnswerAlreadySubmitted,
    UnknownQuestion,
    InvalidOption,
    NotFoundError,
    ErrorCode,
)
from ceplatform.orm.question_bank import QuestionBank, Question
from ceplatform.orm.quiz_attempt import QuizAttempt, QuizAnswer

logger = logging.getLogger(__name__)


def compute_score(correct: int, total: int) -> int:
    """Percentage rounded half-up. An empty attempt scores 0."""
    if total <= 0:
        return 0
    value = Decimal(correct) * Decimal(100) / Decimal(total)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class AttemptLedger:

    def __init__(self, db: AsyncSession, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    async def get(self, attempt_id: int) -> QuizAttempt:
        attempt = await self.db.get(QuizAttempt, attempt_id)
        if attempt is None:
            raise NotFoundError("Attempt", attempt_id, code=ErrorCode.ATTEMPT_NOT_FOUND)
        return attempt

    async def open(
        self,
        enrollment_id: int,
        bank_id: int,
        question_ids: List[int],
        exam_form: Optional[str] = None
    ) -> QuizAttempt:
        attempt = QuizAttempt(
            enrollment_id=enrollment_id,
            bank_id=bank_id,
            question_ids=list(question_ids),
            total_questions=len(question_ids),
            correct_answers=0,
            score=0,
            passed=False,
            exam_form=exam_form,
            started_at=self.clock(),
            completed_at=None,
        )
        self.db.add(attempt)
        await self.db.flush()
        logger.info(
            f"[ATTEMPT OPEN] attempt={attempt.id} enrollment={enrollment_id} "
            f"bank={bank_id} questions={len(question_ids)}"
        )
        return attempt

    async def find_open(self, enrollment_id: int, bank_id: int) -> Optional[QuizAttempt]:
        result = await self.db.execute(
            select(QuizAttempt).where(
                QuizAttempt.enrollment_id == enrollment_id,
                QuizAttempt.bank_id == bank_id,
                QuizAttempt.completed_at.is_(None)
            ).order_by(QuizAttempt.started_at.desc(), QuizAttempt.id.desc())
        )
        return result.scalars().first()

    async def answers_for(self, attempt_id: int) -> List[QuizAnswer]:
        result = await self.db.execute(
            select(QuizAnswer)
            .where(QuizAnswer.attempt_id == attempt_id)
            .order_by(QuizAnswer.id)
        )
        return list(result.scalars().all())

    async def record_answer(
        self,
        attempt_id: int,
        question_id: int,
        selected_option: int
    ) -> QuizAnswer:
        """
        Record one answer against an open attempt.

        Raises:
            AttemptAlreadyCompleted: attempt is closed
            UnknownQuestion: question is not in the attempt's snapshot
            InvalidOption: option index out of range
            AnswerAlreadySubmitted: the question was already answered
        """
        attempt = await self.get(attempt_id)
        if attempt.is_completed:
            raise AttemptAlreadyCompleted(attempt_id)

        if question_id not in (attempt.question_ids or []):
            raise UnknownQuestion(attempt_id, question_id)

        question = await self.db.get(Question, question_id)
        if question is None:
            raise UnknownQuestion(attempt_id, question_id)

        option_count = len(question.options or [])
        if selected_option < 0 or selected_option >= option_count:
            raise InvalidOption(question_id, selected_option, option_count)

        existing = await self.db.execute(
            select(QuizAnswer.id).where(
                QuizAnswer.attempt_id == attempt_id,
                QuizAnswer.question_id == question_id
            )
        )
        if existing.scalar_one_or_none() is not None:
            raise AnswerAlreadySubmitted(attempt_id, question_id)

        answer = QuizAnswer(
            attempt_id=attempt_id,
            question_id=question_id,
            selected_option=selected_option,
            is_correct=selected_option == question.correct_option,
            answered_at=self.clock(),
        )
        self.db.add(answer)
        try:
            await self.db.flush()
        except IntegrityError:
            # Concurrent submit for the same question won the unique constraint
            await self.db.rollback()
            raise AnswerAlreadySubmitted(attempt_id, question_id)

        return answer

    async def complete(
        self,
        attempt_id: int,
        time_spent_seconds: Optional[int] = None
    ) -> QuizAttempt:
        """
        Score and close an attempt exactly once.

        Raises:
            AttemptAlreadyCompleted: another completion already landed
        """
        attempt = await self.get(attempt_id)
        if attempt.is_completed:
            raise AttemptAlreadyCompleted(attempt_id)

        bank = await self.db.get(QuestionBank, attempt.bank_id)
        passing_score = bank.passing_score if bank is not None else 70

        correct_result = await self.db.execute(
            select(func.count(QuizAnswer.id)).where(
                QuizAnswer.attempt_id == attempt_id,
                QuizAnswer.is_correct.is_(True)
            )
        )
        correct = correct_result.scalar_one()
        total = attempt.total_questions
        score = compute_score(correct, total)
        passed = score >= passing_score
        now: datetime = self.clock()

        result = await self.db.execute(
            update(QuizAttempt)
            .where(QuizAttempt.id == attempt_id, QuizAttempt.completed_at.is_(None))
            .values(
                correct_answers=correct,
                score=score,
                passed=passed,
                completed_at=now,
                time_spent_seconds=time_spent_seconds,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(f"[ATTEMPT COMPLETE RACE] attempt={attempt_id} already completed")
            raise AttemptAlreadyCompleted(attempt_id)

        refreshed = await self.db.execute(
            select(QuizAttempt)
            .where(QuizAttempt.id == attempt_id)
            .execution_options(populate_existing=True)
        )
        attempt = refreshed.scalar_one()
        logger.info(
            f"[ATTEMPT COMPLETE] attempt={attempt_id} correct={correct}/{total} "
            f"score={score} passed={passed}"
        )
        return attempt

    async def history(self, enrollment_id: int, bank_id: int) -> List[QuizAttempt]:
        """Attempts for one bank, newest first."""
        result = await self.db.execute(
            select(QuizAttempt).where(
                QuizAttempt.enrollment_id == enrollment_id,
                QuizAttempt.bank_id == bank_id
            ).order_by(QuizAttempt.started_at.desc(), QuizAttempt.id.desc())
        )
        return list(result.scalars().all())
