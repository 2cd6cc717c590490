"""
Catalog and learner builders shared by the test modules.

Builders return plain ids, never ORM instances, so tests stay safe after a
rollback expires the session's identity map.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from ceplatform.orm.course import Course, Unit, Lesson
from ceplatform.orm.question_bank import QuestionBank, Question, BankType
from ceplatform.orm.user import User, UserRole

CORRECT = 0
WRONG = 1


class FakeClock:
    """Mutable naive-UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@dataclass
class CatalogIds:
    course_id: int
    unit_ids: List[int]
    lesson_ids: Dict[int, List[int]]
    unit_bank_ids: Dict[int, int]
    final_bank_ids: Dict[str, int] = field(default_factory=dict)
    question_ids: Dict[int, List[int]] = field(default_factory=dict)


async def create_user(db: AsyncSession, email: str, role: UserRole = UserRole.learner) -> int:
    user = User(email=email, full_name=email.split("@")[0].title(), role=role, is_active=True)
    db.add(user)
    await db.flush()
    user_id = user.id
    await db.commit()
    return user_id


async def _add_bank(
    db: AsyncSession,
    course_id: int,
    unit_id: Optional[int],
    bank_type: BankType,
    title: str,
    question_count: int,
    questions_per_attempt: int,
    exam_form: Optional[str] = None,
    time_limit_minutes: Optional[int] = None,
) -> Tuple[int, List[int]]:
    bank = QuestionBank(
        course_id=course_id,
        unit_id=unit_id,
        title=title,
        bank_type=bank_type,
        exam_form=exam_form,
        questions_per_attempt=questions_per_attempt,
        passing_score=70,
        time_limit_minutes=time_limit_minutes,
        is_active=True,
    )
    db.add(bank)
    await db.flush()

    question_ids = []
    for n in range(question_count):
        question = Question(
            bank_id=bank.id,
            prompt=f"{title} question {n + 1}",
            options=["right", "wrong", "also wrong", "still wrong"],
            correct_option=CORRECT,
            explanation=f"Explanation {n + 1}",
            is_active=True,
        )
        db.add(question)
        await db.flush()
        question_ids.append(question.id)
    return bank.id, question_ids


async def build_course(
    db: AsyncSession,
    jurisdiction: str = "FL",
    unit_count: int = 3,
    lessons_per_unit: int = 2,
    questions_per_bank: int = 10,
    questions_per_attempt: int = 10,
    hours_required: int = 63,
    expiration_months: Optional[int] = 12,
    final_forms: Tuple[str, ...] = ("A", "B"),
    time_limit_minutes: Optional[int] = None,
) -> CatalogIds:
    course = Course(
        title=f"{jurisdiction} Sales Associate Pre-Licensing",
        jurisdiction=jurisdiction,
        hours_required=hours_required,
        expiration_months=expiration_months,
        is_active=True,
    )
    db.add(course)
    await db.flush()

    ids = CatalogIds(course_id=course.id, unit_ids=[], lesson_ids={}, unit_bank_ids={})

    for sequence in range(1, unit_count + 1):
        unit = Unit(course_id=course.id, sequence=sequence, title=f"Unit {sequence}", hours_required=3)
        db.add(unit)
        await db.flush()
        ids.unit_ids.append(unit.id)

        ids.lesson_ids[unit.id] = []
        for lesson_seq in range(1, lessons_per_unit + 1):
            lesson = Lesson(unit_id=unit.id, sequence=lesson_seq, title=f"Lesson {sequence}.{lesson_seq}")
            db.add(lesson)
            await db.flush()
            ids.lesson_ids[unit.id].append(lesson.id)

        bank_id, question_ids = await _add_bank(
            db, course.id, unit.id, BankType.UNIT_QUIZ, f"Unit {sequence} Quiz",
            questions_per_bank, questions_per_attempt, time_limit_minutes=time_limit_minutes,
        )
        ids.unit_bank_ids[unit.id] = bank_id
        ids.question_ids[bank_id] = question_ids

    for form in final_forms:
        bank_id, question_ids = await _add_bank(
            db, course.id, None, BankType.FINAL_EXAM, f"Final Exam Form {form}",
            questions_per_bank, questions_per_attempt, exam_form=form,
            time_limit_minutes=time_limit_minutes,
        )
        ids.final_bank_ids[form] = bank_id
        ids.question_ids[bank_id] = question_ids

    await db.commit()
    return ids


async def finish_lessons(coordinator, learner_id: int, enrollment_id: int, lesson_ids: List[int]):
    for lesson_id in lesson_ids:
        await coordinator.record_lesson_time(learner_id, enrollment_id, lesson_id, 60)
        await coordinator.complete_lesson(learner_id, enrollment_id, lesson_id)


async def take_attempt(coordinator, learner_id: int, session: dict, correct: int, time_spent: int = 300) -> dict:
    """Answer `correct` questions right and the rest wrong, then complete."""
    for index, question in enumerate(session["questions"]):
        option = CORRECT if index < correct else WRONG
        await coordinator.submit_answer(learner_id, session["attempt_id"], question["id"], option)
    return await coordinator.complete_quiz(learner_id, session["attempt_id"], time_spent)


async def pass_unit(coordinator, learner_id: int, enrollment_id: int, catalog: CatalogIds, unit_id: int, correct: int = 10) -> dict:
    await finish_lessons(coordinator, learner_id, enrollment_id, catalog.lesson_ids[unit_id])
    session = await coordinator.start_quiz(learner_id, enrollment_id, catalog.unit_bank_ids[unit_id])
    return await take_attempt(coordinator, learner_id, session, correct)
