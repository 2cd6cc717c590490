"""
Lesson time, lesson completion and sequential unit unlocking
"""
import asyncio
import random

import pytest
from sqlalchemy import delete, func, select

from ceplatform.errors import (
    EnrollmentExpired,
    ErrorCode,
    ForbiddenError,
    LessonsIncomplete,
    MinimumTimeNotMet,
    NotFoundError,
    UnitLocked,
)
from ceplatform.orm.enrollment import Enrollment
from ceplatform.orm.unit_progress import LessonProgress, UnitProgress, UnitStatus
from ceplatform.services.enrollment_service import add_months
from ceplatform.services.progression_coordinator import ProgressionCoordinator
from ceplatform.services.unit_progress_tracker import UnitProgressTracker, proportion

from factories import build_course, create_user, finish_lessons, pass_unit, take_attempt


async def unit_row(db, enrollment_id, unit_id):
    result = await db.execute(
        select(UnitProgress)
        .where(UnitProgress.enrollment_id == enrollment_id, UnitProgress.unit_id == unit_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


def test_proportion_rounds_half_up():
    assert proportion(1, 6, 100) == 17
    assert proportion(2, 6, 63) == 21
    assert proportion(1, 2, 3) == 2
    assert proportion(3, 0, 100) == 0


def test_add_months_clamps_day():
    from datetime import datetime
    assert add_months(datetime(2026, 1, 31, 8), 1) == datetime(2026, 2, 28, 8)
    assert add_months(datetime(2026, 1, 15), 12) == datetime(2027, 1, 15)


class TestInitialization:

    async def test_first_unit_open_rest_locked(self, db, enrollment_id, fl_course):
        statuses = [(await unit_row(db, enrollment_id, u)).status for u in fl_course.unit_ids]
        assert statuses == [UnitStatus.IN_PROGRESS, UnitStatus.LOCKED, UnitStatus.LOCKED]

    async def test_initialization_is_idempotent_and_repairs_first_unit(self, db, settings, clock, enrollment_id, fl_course):
        first = await unit_row(db, enrollment_id, fl_course.unit_ids[0])
        first.status = UnitStatus.LOCKED
        await db.commit()

        tracker = UnitProgressTracker(db, settings, clock)
        await tracker.ensure_initialized(enrollment_id)
        await tracker.ensure_initialized(enrollment_id)
        await db.commit()

        count = (await db.execute(
            select(func.count(UnitProgress.id)).where(UnitProgress.enrollment_id == enrollment_id)
        )).scalar_one()
        assert count == 3
        assert (await unit_row(db, enrollment_id, fl_course.unit_ids[0])).status == UnitStatus.IN_PROGRESS

    async def test_concurrent_initialization_creates_one_row_per_unit(self, database, db, settings, clock, enrollment_id, fl_course):
        await db.execute(delete(UnitProgress).where(UnitProgress.enrollment_id == enrollment_id))
        await db.commit()

        async def initialize_in_own_session():
            async with database.session() as session:
                rows = await UnitProgressTracker(session, settings, clock).ensure_initialized(enrollment_id)
                await session.commit()
                return [row.unit_id for row in rows]

        results = await asyncio.gather(initialize_in_own_session(), initialize_in_own_session())

        assert results == [fl_course.unit_ids, fl_course.unit_ids]
        count = (await db.execute(
            select(func.count(UnitProgress.id)).where(UnitProgress.enrollment_id == enrollment_id)
        )).scalar_one()
        assert count == 3
        assert (await unit_row(db, enrollment_id, fl_course.unit_ids[0])).status == UnitStatus.IN_PROGRESS


class TestLessonTime:

    async def test_minimum_time_gate(self, db, coordinator, learner_id, enrollment_id, fl_course):
        lesson_id = fl_course.lesson_ids[fl_course.unit_ids[0]][0]

        await coordinator.record_lesson_time(learner_id, enrollment_id, lesson_id, 45)
        with pytest.raises(MinimumTimeNotMet) as exc:
            await coordinator.complete_lesson(learner_id, enrollment_id, lesson_id)
        assert exc.value.code == ErrorCode.MINIMUM_TIME_NOT_MET

        await coordinator.record_lesson_time(learner_id, enrollment_id, lesson_id, 15)
        result = await coordinator.complete_lesson(learner_id, enrollment_id, lesson_id)
        assert result["completed"] is True
        assert result["time_spent_seconds"] == 60

    async def test_increment_is_capped(self, db, coordinator, learner_id, enrollment_id, fl_course):
        lesson_id = fl_course.lesson_ids[fl_course.unit_ids[0]][0]

        result = await coordinator.record_lesson_time(learner_id, enrollment_id, lesson_id, 3600)
        assert result["time_spent_seconds"] == 120
        assert result["total_time_seconds"] == 120

        unit = await unit_row(db, enrollment_id, fl_course.unit_ids[0])
        assert unit.time_spent_seconds == 120

    async def test_completing_twice_is_a_noop(self, db, coordinator, learner_id, enrollment_id, fl_course):
        lesson_id = fl_course.lesson_ids[fl_course.unit_ids[0]][0]
        await finish_lessons(coordinator, learner_id, enrollment_id, [lesson_id])
        await coordinator.complete_lesson(learner_id, enrollment_id, lesson_id)

        unit = await unit_row(db, enrollment_id, fl_course.unit_ids[0])
        assert unit.lessons_completed == 1

    async def test_concurrent_first_heartbeats_share_one_row(self, database, db, settings, publisher, clock, learner_id, enrollment_id, fl_course):
        lesson_id = fl_course.lesson_ids[fl_course.unit_ids[0]][0]

        async def heartbeat_in_own_session():
            async with database.session() as session:
                coordinator = ProgressionCoordinator(
                    session, settings, publisher=publisher, rng=random.Random(3), clock=clock
                )
                return await coordinator.record_lesson_time(learner_id, enrollment_id, lesson_id, 30)

        results = await asyncio.gather(heartbeat_in_own_session(), heartbeat_in_own_session())

        assert [r["lesson_id"] for r in results] == [lesson_id, lesson_id]
        rows = (await db.execute(
            select(LessonProgress)
            .where(LessonProgress.enrollment_id == enrollment_id, LessonProgress.lesson_id == lesson_id)
            .execution_options(populate_existing=True)
        )).scalars().all()
        assert len(rows) == 1
        assert rows[0].time_spent_seconds >= 30

    async def test_locked_unit_lessons_rejected(self, coordinator, learner_id, enrollment_id, fl_course):
        lesson_id = fl_course.lesson_ids[fl_course.unit_ids[1]][0]
        with pytest.raises(UnitLocked):
            await coordinator.record_lesson_time(learner_id, enrollment_id, lesson_id, 60)
        with pytest.raises(UnitLocked):
            await coordinator.complete_lesson(learner_id, enrollment_id, lesson_id)

    async def test_lesson_from_another_course_not_found(self, db, coordinator, learner_id, enrollment_id):
        other = await build_course(db, jurisdiction="GA", unit_count=1)
        lesson_id = other.lesson_ids[other.unit_ids[0]][0]
        with pytest.raises(NotFoundError):
            await coordinator.record_lesson_time(learner_id, enrollment_id, lesson_id, 60)

    async def test_progress_and_hours_follow_completed_lessons(self, db, coordinator, learner_id, enrollment_id, fl_course):
        await finish_lessons(coordinator, learner_id, enrollment_id, fl_course.lesson_ids[fl_course.unit_ids[0]])

        enrollment = await db.get(Enrollment, enrollment_id, populate_existing=True)
        assert enrollment.progress == 33
        assert enrollment.hours_completed == 21
        assert enrollment.total_time_seconds == 120


class TestAccessGuards:

    async def test_other_learner_is_forbidden(self, db, coordinator, enrollment_id, fl_course):
        intruder = await create_user(db, "intruder@example.com")
        lesson_id = fl_course.lesson_ids[fl_course.unit_ids[0]][0]
        with pytest.raises(ForbiddenError) as exc:
            await coordinator.record_lesson_time(intruder, enrollment_id, lesson_id, 60)
        assert exc.value.code == ErrorCode.OWNERSHIP_VIOLATION

    async def test_expired_enrollment_rejects_progress(self, coordinator, clock, learner_id, enrollment_id, fl_course):
        clock.advance(days=400)
        lesson_id = fl_course.lesson_ids[fl_course.unit_ids[0]][0]
        with pytest.raises(EnrollmentExpired):
            await coordinator.record_lesson_time(learner_id, enrollment_id, lesson_id, 60)

        progress = await coordinator.get_progress(learner_id, enrollment_id)
        assert progress["units"][0]["status"] == "in_progress"


class TestSequentialUnlock:

    async def test_quiz_requires_completed_lessons(self, coordinator, learner_id, enrollment_id, fl_course):
        unit_id = fl_course.unit_ids[0]
        await finish_lessons(coordinator, learner_id, enrollment_id, fl_course.lesson_ids[unit_id][:1])
        with pytest.raises(LessonsIncomplete) as exc:
            await coordinator.start_quiz(learner_id, enrollment_id, fl_course.unit_bank_ids[unit_id])
        assert exc.value.details == {"unit_id": unit_id, "lessons_completed": 1, "total_lessons": 2}

    async def test_next_unit_quiz_locked_until_predecessor_passes(self, coordinator, learner_id, enrollment_id, fl_course):
        with pytest.raises(UnitLocked):
            await coordinator.start_quiz(learner_id, enrollment_id, fl_course.unit_bank_ids[fl_course.unit_ids[1]])

    async def test_failed_quiz_keeps_next_unit_locked(self, db, coordinator, learner_id, enrollment_id, fl_course):
        result = await pass_unit(coordinator, learner_id, enrollment_id, fl_course, fl_course.unit_ids[0], correct=6)

        assert result["passed"] is False
        assert result["unlocked_unit_id"] is None
        first = await unit_row(db, enrollment_id, fl_course.unit_ids[0])
        assert first.status == UnitStatus.IN_PROGRESS
        assert first.quiz_attempts == 1
        assert first.quiz_best_score == 60
        assert (await unit_row(db, enrollment_id, fl_course.unit_ids[1])).status == UnitStatus.LOCKED

    async def test_passing_unlocks_exactly_the_next_unit(self, db, coordinator, learner_id, enrollment_id, fl_course):
        result = await pass_unit(coordinator, learner_id, enrollment_id, fl_course, fl_course.unit_ids[0], correct=7)

        assert result["passed"] is True
        assert result["score"] == 70
        assert result["unlocked_unit_id"] == fl_course.unit_ids[1]
        statuses = [(await unit_row(db, enrollment_id, u)).status for u in fl_course.unit_ids]
        assert statuses == [UnitStatus.COMPLETED, UnitStatus.IN_PROGRESS, UnitStatus.LOCKED]

        enrollment = await db.get(Enrollment, enrollment_id, populate_existing=True)
        assert enrollment.current_unit_index == 1

    async def test_passing_again_keeps_best_score_and_unlock_state(self, db, coordinator, learner_id, enrollment_id, fl_course):
        unit_id = fl_course.unit_ids[0]
        await pass_unit(coordinator, learner_id, enrollment_id, fl_course, unit_id, correct=10)

        session = await coordinator.start_quiz(learner_id, enrollment_id, fl_course.unit_bank_ids[unit_id])
        again = await take_attempt(coordinator, learner_id, session, correct=8)

        assert again["passed"] is True
        assert again["unlocked_unit_id"] == fl_course.unit_ids[1]
        first = await unit_row(db, enrollment_id, unit_id)
        assert first.quiz_best_score == 100
        assert first.quiz_attempts == 2
        assert (await unit_row(db, enrollment_id, fl_course.unit_ids[2])).status == UnitStatus.LOCKED
        enrollment = await db.get(Enrollment, enrollment_id, populate_existing=True)
        assert enrollment.current_unit_index == 1

    async def test_progress_view_reports_units_in_order(self, coordinator, learner_id, enrollment_id, fl_course):
        await pass_unit(coordinator, learner_id, enrollment_id, fl_course, fl_course.unit_ids[0])

        progress = await coordinator.get_progress(learner_id, enrollment_id)
        assert [u["unit_id"] for u in progress["units"]] == fl_course.unit_ids
        assert [u["is_locked"] for u in progress["units"]] == [False, False, True]
        assert progress["units"][0]["quiz_score"] == 100
        assert progress["units"][0]["lessons_completed"] == 2
