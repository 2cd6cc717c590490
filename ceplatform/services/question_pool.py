"""
ceplatform/services/question_pool.py
Randomized question draws from a bank

Reads only. Uniform sampling without replacement over the bank's active
questions; the random source is injectable so tests can pin the draw.
"""
import logging
import random
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ceplatform.errors import InsufficientQuestions, NotFoundError, ErrorCode
from ceplatform.orm.question_bank import QuestionBank, Question

logger = logging.getLogger(__name__)


class QuestionPool:

    def __init__(self, db: AsyncSession, rng: Optional[random.Random] = None):
        self.db = db
        self.rng = rng or random.Random()

    async def get_bank(self, bank_id: int) -> QuestionBank:
        bank = await self.db.get(QuestionBank, bank_id)
        if bank is None:
            raise NotFoundError("Question bank", bank_id, code=ErrorCode.BANK_NOT_FOUND)
        return bank

    async def active_questions(self, bank_id: int) -> List[Question]:
        result = await self.db.execute(
            select(Question)
            .where(Question.bank_id == bank_id, Question.is_active.is_(True))
            .order_by(Question.id)
        )
        return list(result.scalars().all())

    async def sample(self, bank_id: int, count: int) -> List[Question]:
        """
        Draw `count` distinct active questions.

        Raises:
            InsufficientQuestions: the bank has fewer active questions than requested
        """
        questions = await self.active_questions(bank_id)
        if count > len(questions):
            logger.error(
                f"[POOL EXHAUSTED] bank={bank_id} available={len(questions)} requested={count}"
            )
            raise InsufficientQuestions(bank_id, len(questions), count)
        return self.rng.sample(questions, count)

    async def questions_by_id(self, question_ids: List[int]) -> Dict[int, Question]:
        if not question_ids:
            return {}
        result = await self.db.execute(select(Question).where(Question.id.in_(question_ids)))
        return {q.id: q for q in result.scalars().all()}


def sanitize_question(question: Question) -> dict:
    """Learner-facing view: no correct option, no explanation."""
    return {
        "id": question.id,
        "prompt": question.prompt,
        "options": list(question.options or []),
    }
