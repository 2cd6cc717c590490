"""
QuestionPool and AttemptLedger

- sampling is uniform without replacement over active questions
- scores round half-up
- completed attempts are immutable, sequentially and concurrently
"""
import asyncio
import random

import pytest
import pytest_asyncio
from sqlalchemy import update

from ceplatform.errors import (
    AnswerAlreadySubmitted,
    AttemptAlreadyCompleted,
    InsufficientQuestions,
    InvalidOption,
    UnknownQuestion,
)
from ceplatform.orm.question_bank import Question
from ceplatform.orm.quiz_attempt import QuizAttempt
from ceplatform.services.attempt_ledger import AttemptLedger, compute_score
from ceplatform.services.question_pool import QuestionPool, sanitize_question

from factories import CORRECT, WRONG


class TestComputeScore:

    def test_seven_of_ten_is_seventy(self):
        assert compute_score(7, 10) == 70

    def test_rounds_half_up(self):
        assert compute_score(1, 8) == 13
        assert compute_score(2, 3) == 67
        assert compute_score(1, 3) == 33

    def test_empty_attempt_scores_zero(self):
        assert compute_score(0, 0) == 0


class TestQuestionPool:

    async def test_sample_returns_distinct_active_questions(self, db, fl_course):
        bank_id = fl_course.unit_bank_ids[fl_course.unit_ids[0]]
        pool = QuestionPool(db, random.Random(1))

        drawn = await pool.sample(bank_id, 5)

        ids = [q.id for q in drawn]
        assert len(ids) == 5
        assert len(set(ids)) == 5
        assert set(ids) <= set(fl_course.question_ids[bank_id])

    async def test_sample_is_deterministic_with_seeded_rng(self, db, fl_course):
        bank_id = fl_course.unit_bank_ids[fl_course.unit_ids[0]]
        first = await QuestionPool(db, random.Random(42)).sample(bank_id, 4)
        second = await QuestionPool(db, random.Random(42)).sample(bank_id, 4)
        assert [q.id for q in first] == [q.id for q in second]

    async def test_inactive_questions_are_never_drawn(self, db, fl_course):
        bank_id = fl_course.unit_bank_ids[fl_course.unit_ids[0]]
        retired = fl_course.question_ids[bank_id][:3]
        await db.execute(update(Question).where(Question.id.in_(retired)).values(is_active=False))
        await db.commit()

        drawn = await QuestionPool(db, random.Random(3)).sample(bank_id, 7)
        assert not {q.id for q in drawn} & set(retired)

        with pytest.raises(InsufficientQuestions) as exc:
            await QuestionPool(db).sample(bank_id, 8)
        assert exc.value.details["available"] == 7
        assert exc.value.status_code == 503

    async def test_sanitized_question_hides_answer(self, db, fl_course):
        bank_id = fl_course.unit_bank_ids[fl_course.unit_ids[0]]
        question = (await QuestionPool(db).sample(bank_id, 1))[0]
        view = sanitize_question(question)
        assert set(view) == {"id", "prompt", "options"}


async def _open_attempt(db, catalog, clock, count=10):
    bank_id = catalog.unit_bank_ids[catalog.unit_ids[0]]
    ledger = AttemptLedger(db, clock)
    attempt = await ledger.open(1, bank_id, catalog.question_ids[bank_id][:count])
    await db.commit()
    return ledger, attempt.id, catalog.question_ids[bank_id][:count]


class TestAttemptLedger:

    @pytest_asyncio.fixture(autouse=True)
    async def _enrollment(self, enrollment_id):
        # attempts reference enrollment 1
        assert enrollment_id == 1

    async def test_open_attempt_starts_zeroed(self, db, fl_course, clock):
        ledger, attempt_id, question_ids = await _open_attempt(db, fl_course, clock)
        attempt = await ledger.get(attempt_id)
        assert attempt.score == 0
        assert attempt.completed_at is None
        assert attempt.question_ids == question_ids
        assert attempt.total_questions == 10

    async def test_complete_scores_seven_of_ten(self, db, fl_course, clock):
        ledger, attempt_id, question_ids = await _open_attempt(db, fl_course, clock)
        for index, question_id in enumerate(question_ids):
            await ledger.record_answer(attempt_id, question_id, CORRECT if index < 7 else WRONG)
        attempt = await ledger.complete(attempt_id, 120)
        await db.commit()

        assert attempt.correct_answers == 7
        assert attempt.score == 70
        assert attempt.passed is True
        assert attempt.completed_at == clock()

    async def test_unanswered_questions_count_as_wrong(self, db, fl_course, clock):
        ledger, attempt_id, question_ids = await _open_attempt(db, fl_course, clock)
        for question_id in question_ids[:6]:
            await ledger.record_answer(attempt_id, question_id, CORRECT)
        attempt = await ledger.complete(attempt_id, 60)
        assert attempt.score == 60
        assert attempt.passed is False

    async def test_second_completion_is_rejected_and_score_kept(self, db, fl_course, clock):
        ledger, attempt_id, question_ids = await _open_attempt(db, fl_course, clock)
        for question_id in question_ids[:8]:
            await ledger.record_answer(attempt_id, question_id, CORRECT)
        await ledger.complete(attempt_id, 60)
        await db.commit()

        with pytest.raises(AttemptAlreadyCompleted):
            await ledger.complete(attempt_id, 999)
        await db.rollback()

        stored = await db.get(QuizAttempt, attempt_id, populate_existing=True)
        assert stored.score == 80
        assert stored.time_spent_seconds == 60

    async def test_answer_after_completion_is_rejected(self, db, fl_course, clock):
        ledger, attempt_id, question_ids = await _open_attempt(db, fl_course, clock)
        await ledger.complete(attempt_id, 10)
        await db.commit()

        with pytest.raises(AttemptAlreadyCompleted):
            await ledger.record_answer(attempt_id, question_ids[0], CORRECT)

    async def test_answer_validation(self, db, fl_course, clock):
        ledger, attempt_id, question_ids = await _open_attempt(db, fl_course, clock, count=5)
        outside = fl_course.question_ids[fl_course.unit_bank_ids[fl_course.unit_ids[0]]][9]

        with pytest.raises(UnknownQuestion):
            await ledger.record_answer(attempt_id, outside, CORRECT)
        with pytest.raises(InvalidOption):
            await ledger.record_answer(attempt_id, question_ids[0], 4)

        await ledger.record_answer(attempt_id, question_ids[0], CORRECT)
        await db.commit()
        with pytest.raises(AnswerAlreadySubmitted):
            await ledger.record_answer(attempt_id, question_ids[0], WRONG)

    async def test_history_is_newest_first(self, db, fl_course, clock):
        ledger, first_id, _ = await _open_attempt(db, fl_course, clock)
        await ledger.complete(first_id, 10)
        clock.advance(hours=1)
        _, second_id, _ = await _open_attempt(db, fl_course, clock)

        bank_id = fl_course.unit_bank_ids[fl_course.unit_ids[0]]
        history = await ledger.history(1, bank_id)
        assert [a.id for a in history] == [second_id, first_id]

    async def test_concurrent_completion_has_single_winner(self, database, db, fl_course, clock):
        _, attempt_id, question_ids = await _open_attempt(db, fl_course, clock)

        async def complete_in_own_session(seconds):
            async with database.session() as session:
                try:
                    attempt = await AttemptLedger(session, clock).complete(attempt_id, seconds)
                    await session.commit()
                    return attempt.time_spent_seconds
                except AttemptAlreadyCompleted:
                    await session.rollback()
                    return None

        results = await asyncio.gather(*(complete_in_own_session(s) for s in (11, 22, 33, 44)))

        winners = [r for r in results if r is not None]
        assert len(winners) == 1

        async with database.session() as session:
            stored = await session.get(QuizAttempt, attempt_id)
            assert stored.time_spent_seconds == winners[0]
