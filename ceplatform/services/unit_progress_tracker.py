"""
ceplatform/services/unit_progress_tracker.py
Per-enrollment unit and lesson progress

STATE MACHINE (UnitProgress.status):
    locked -> in_progress -> completed

- locked -> in_progress: the predecessor unit completed, or first unit at enrollment
- in_progress -> completed: only through a passing quiz attempt
- nothing moves backwards here; regressions are admin overrides

The tracker flushes but never commits. The caller owns the transaction so
"mark completed" and "unlock next" always land together.
"""
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ceplatform.config.settings import EngineSettings
from ceplatform.core.clock import Clock, utcnow
from ceplatform.errors import (
    UnitLocked,
    MinimumTimeNotMet,
    NotFoundError,
    ErrorCode,
)
from ceplatform.orm.course import Course, Unit, Lesson
from ceplatform.orm.enrollment import Enrollment
from ceplatform.orm.unit_progress import UnitProgress, LessonProgress, UnitStatus

logger = logging.getLogger(__name__)


def proportion(part: int, whole: int, scale: int) -> int:
    """round(part / whole * scale), half-up; 0 when whole is 0."""
    if whole <= 0:
        return 0
    value = Decimal(part) * Decimal(scale) / Decimal(whole)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class UnitProgressTracker:

    def __init__(self, db: AsyncSession, settings: EngineSettings, clock: Clock = utcnow):
        self.db = db
        self.settings = settings
        self.clock = clock

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_enrollment(self, enrollment_id: int) -> Enrollment:
        enrollment = await self.db.get(Enrollment, enrollment_id)
        if enrollment is None:
            raise NotFoundError("Enrollment", enrollment_id, code=ErrorCode.ENROLLMENT_NOT_FOUND)
        return enrollment

    async def course_units(self, course_id: int) -> List[Unit]:
        result = await self.db.execute(
            select(Unit).where(Unit.course_id == course_id).order_by(Unit.sequence)
        )
        return list(result.scalars().all())

    async def lesson_with_unit(self, lesson_id: int) -> Tuple[Lesson, Unit]:
        lesson = await self.db.get(Lesson, lesson_id)
        if lesson is None:
            raise NotFoundError("Lesson", lesson_id, code=ErrorCode.LESSON_NOT_FOUND)
        unit = await self.db.get(Unit, lesson.unit_id)
        return lesson, unit

    async def get_unit_progress(self, enrollment_id: int, unit_id: int) -> Optional[UnitProgress]:
        result = await self.db.execute(
            select(UnitProgress).where(
                UnitProgress.enrollment_id == enrollment_id,
                UnitProgress.unit_id == unit_id
            )
        )
        return result.scalar_one_or_none()

    async def progress_rows(self, enrollment_id: int) -> List[Tuple[Unit, UnitProgress]]:
        """(Unit, UnitProgress) pairs in unit sequence order."""
        result = await self.db.execute(
            select(Unit, UnitProgress)
            .join(UnitProgress, UnitProgress.unit_id == Unit.id)
            .where(UnitProgress.enrollment_id == enrollment_id)
            .order_by(Unit.sequence)
        )
        return [(unit, progress) for unit, progress in result.all()]

    async def _find_lesson_progress(self, enrollment_id: int, lesson_id: int) -> Optional[LessonProgress]:
        result = await self.db.execute(
            select(LessonProgress).where(
                LessonProgress.enrollment_id == enrollment_id,
                LessonProgress.lesson_id == lesson_id
            )
        )
        return result.scalar_one_or_none()

    async def _get_or_create_lesson_progress(self, enrollment_id: int, lesson_id: int) -> LessonProgress:
        lesson_progress = await self._find_lesson_progress(enrollment_id, lesson_id)
        if lesson_progress is not None:
            return lesson_progress

        try:
            async with self.db.begin_nested():
                lesson_progress = LessonProgress(
                    enrollment_id=enrollment_id,
                    lesson_id=lesson_id,
                    completed=False,
                    time_spent_seconds=0,
                )
                self.db.add(lesson_progress)
        except IntegrityError:
            # A concurrent request created the row first; use theirs
            logger.info(f"[LESSON PROGRESS RACE] enrollment={enrollment_id} lesson={lesson_id}")
            lesson_progress = await self._find_lesson_progress(enrollment_id, lesson_id)
        return lesson_progress

    async def _require_unlocked(self, enrollment_id: int, unit: Unit) -> UnitProgress:
        progress = await self.get_unit_progress(enrollment_id, unit.id)
        if progress is None or progress.status == UnitStatus.LOCKED:
            raise UnitLocked(unit.id, unit.sequence)
        return progress

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def ensure_initialized(self, enrollment_id: int, units: Optional[List[Unit]] = None) -> List[UnitProgress]:
        """
        One progress row per unit; the lowest-sequence unit in_progress,
        the rest locked. Safe to call repeatedly and repairs a locked first unit.
        """
        if units is None:
            enrollment = await self.get_enrollment(enrollment_id)
            units = await self.course_units(enrollment.course_id)
        units = sorted(units, key=lambda u: u.sequence)
        if not units:
            return []

        now = self.clock()
        existing = await self._unit_rows_by_unit(enrollment_id)
        missing = [
            UnitProgress(
                enrollment_id=enrollment_id,
                unit_id=unit.id,
                status=UnitStatus.IN_PROGRESS if index == 0 else UnitStatus.LOCKED,
                lessons_completed=0,
                quiz_passed=False,
                quiz_attempts=0,
                time_spent_seconds=0,
                started_at=now if index == 0 else None,
            )
            for index, unit in enumerate(units)
            if unit.id not in existing
        ]
        if missing:
            try:
                async with self.db.begin_nested():
                    self.db.add_all(missing)
            except IntegrityError:
                logger.info(f"[UNIT INIT RACE] enrollment={enrollment_id} rows created concurrently")
            existing = await self._unit_rows_by_unit(enrollment_id)

        first = existing[units[0].id]
        if first.status == UnitStatus.LOCKED:
            logger.warning(f"[UNIT REPAIR] enrollment={enrollment_id} first unit {first.unit_id} was locked")
            first.status = UnitStatus.IN_PROGRESS
            first.started_at = first.started_at or now

        await self.db.flush()
        return [existing[unit.id] for unit in units]

    async def _unit_rows_by_unit(self, enrollment_id: int) -> Dict[int, UnitProgress]:
        result = await self.db.execute(
            select(UnitProgress).where(UnitProgress.enrollment_id == enrollment_id)
        )
        return {row.unit_id: row for row in result.scalars().all()}

    # ------------------------------------------------------------------
    # Lessons
    # ------------------------------------------------------------------

    async def record_time_spent(self, enrollment_id: int, lesson_id: int, seconds: int) -> LessonProgress:
        """
        Credit time on a lesson. Each call adds at most max_time_increment_seconds.

        Raises:
            UnitLocked: the lesson's unit is locked
        """
        lesson, unit = await self.lesson_with_unit(lesson_id)
        unit_progress = await self._require_unlocked(enrollment_id, unit)

        increment = max(0, min(int(seconds), self.settings.max_time_increment_seconds))

        lesson_progress = await self._get_or_create_lesson_progress(enrollment_id, lesson_id)
        lesson_progress.time_spent_seconds = (lesson_progress.time_spent_seconds or 0) + increment
        lesson_progress.last_accessed_at = self.clock()

        unit_progress.time_spent_seconds = (unit_progress.time_spent_seconds or 0) + increment

        enrollment = await self.get_enrollment(enrollment_id)
        enrollment.total_time_seconds = (enrollment.total_time_seconds or 0) + increment

        await self.db.flush()
        return lesson_progress

    async def complete_lesson(self, enrollment_id: int, lesson_id: int) -> LessonProgress:
        """
        Mark a lesson complete and recompute course progress.

        Raises:
            UnitLocked: the lesson's unit is locked
            MinimumTimeNotMet: less than minimum_lesson_seconds accumulated
        """
        lesson, unit = await self.lesson_with_unit(lesson_id)
        unit_progress = await self._require_unlocked(enrollment_id, unit)
        lesson_progress = await self._get_or_create_lesson_progress(enrollment_id, lesson_id)

        if lesson_progress.completed:
            return lesson_progress

        required = self.settings.minimum_lesson_seconds
        spent = lesson_progress.time_spent_seconds or 0
        if spent < required:
            raise MinimumTimeNotMet(lesson_id, spent, required)

        now = self.clock()
        lesson_progress.completed = True
        lesson_progress.completed_at = now
        lesson_progress.last_accessed_at = now
        unit_progress.lessons_completed = (unit_progress.lessons_completed or 0) + 1

        await self.db.flush()
        await self.recompute_aggregates(enrollment_id)
        logger.info(f"[LESSON COMPLETE] enrollment={enrollment_id} lesson={lesson_id}")
        return lesson_progress

    async def recompute_aggregates(self, enrollment_id: int) -> Enrollment:
        """Progress % and credited hours from completed lessons."""
        enrollment = await self.get_enrollment(enrollment_id)
        course = await self.db.get(Course, enrollment.course_id)

        total_result = await self.db.execute(
            select(func.count(Lesson.id))
            .join(Unit, Unit.id == Lesson.unit_id)
            .where(Unit.course_id == enrollment.course_id)
        )
        total_lessons = total_result.scalar_one()

        done_result = await self.db.execute(
            select(func.count(LessonProgress.id))
            .join(Lesson, Lesson.id == LessonProgress.lesson_id)
            .join(Unit, Unit.id == Lesson.unit_id)
            .where(
                LessonProgress.enrollment_id == enrollment_id,
                LessonProgress.completed.is_(True),
                Unit.course_id == enrollment.course_id
            )
        )
        completed_lessons = done_result.scalar_one()

        if enrollment.completed:
            enrollment.progress = 100
        else:
            enrollment.progress = proportion(completed_lessons, total_lessons, 100)
        enrollment.hours_completed = proportion(
            completed_lessons, total_lessons, course.hours_required or 0
        )
        await self.db.flush()
        return enrollment

    # ------------------------------------------------------------------
    # Quiz outcomes
    # ------------------------------------------------------------------

    async def mark_unit_passed(self, enrollment_id: int, unit_id: int, score: int) -> Optional[Unit]:
        """
        Record a passing unit quiz. Passing again keeps the best score.

        Returns:
            The next sequential unit, or None for the last unit
        """
        unit = await self.db.get(Unit, unit_id)
        if unit is None:
            raise NotFoundError("Unit", unit_id, code=ErrorCode.UNIT_NOT_FOUND)
        progress = await self.get_unit_progress(enrollment_id, unit_id)
        if progress is None:
            raise UnitLocked(unit_id, unit.sequence)

        now = self.clock()
        progress.quiz_passed = True
        progress.quiz_attempts = (progress.quiz_attempts or 0) + 1
        progress.quiz_best_score = max(progress.quiz_best_score or 0, score)
        if progress.status != UnitStatus.COMPLETED:
            progress.status = UnitStatus.COMPLETED
            progress.completed_at = now
        progress.started_at = progress.started_at or now

        await self.db.flush()
        logger.info(f"[UNIT PASSED] enrollment={enrollment_id} unit={unit_id} score={score}")
        return await self.next_unit(unit)

    async def record_quiz_failure(self, enrollment_id: int, unit_id: int, score: int) -> UnitProgress:
        progress = await self.get_unit_progress(enrollment_id, unit_id)
        if progress is None:
            raise NotFoundError("Unit progress", unit_id, code=ErrorCode.UNIT_NOT_FOUND)
        progress.quiz_attempts = (progress.quiz_attempts or 0) + 1
        progress.quiz_best_score = max(progress.quiz_best_score or 0, score)
        await self.db.flush()
        return progress

    async def next_unit(self, unit: Unit) -> Optional[Unit]:
        result = await self.db.execute(
            select(Unit)
            .where(Unit.course_id == unit.course_id, Unit.sequence > unit.sequence)
            .order_by(Unit.sequence)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def unlock_next_unit(self, enrollment_id: int, unit: Optional[Unit]) -> Optional[UnitProgress]:
        """locked -> in_progress for `unit` and point current_unit_index at it."""
        if unit is None:
            return None
        progress = await self.get_unit_progress(enrollment_id, unit.id)
        if progress is None:
            await self.ensure_initialized(enrollment_id)
            progress = await self.get_unit_progress(enrollment_id, unit.id)

        if progress.status == UnitStatus.LOCKED:
            progress.status = UnitStatus.IN_PROGRESS
            progress.started_at = progress.started_at or self.clock()
            logger.info(f"[UNIT UNLOCK] enrollment={enrollment_id} unit={unit.id} sequence={unit.sequence}")

        enrollment = await self.get_enrollment(enrollment_id)
        units = await self.course_units(enrollment.course_id)
        index = next((i for i, u in enumerate(units) if u.id == unit.id), 0)
        enrollment.current_unit_index = max(enrollment.current_unit_index or 0, index)

        await self.db.flush()
        return progress

    async def check_completion(self, enrollment_id: int, unit_id: int) -> dict:
        """Pure query: are the unit's lessons done and its quiz passed?"""
        total_result = await self.db.execute(
            select(func.count(Lesson.id)).where(Lesson.unit_id == unit_id)
        )
        total_lessons = total_result.scalar_one()

        done_result = await self.db.execute(
            select(func.count(LessonProgress.id))
            .join(Lesson, Lesson.id == LessonProgress.lesson_id)
            .where(
                Lesson.unit_id == unit_id,
                LessonProgress.enrollment_id == enrollment_id,
                LessonProgress.completed.is_(True)
            )
        )
        lessons_completed = done_result.scalar_one()

        progress = await self.get_unit_progress(enrollment_id, unit_id)
        return {
            "lessons_complete": lessons_completed >= total_lessons,
            "quiz_passed": bool(progress and progress.quiz_passed),
            "lessons_completed": lessons_completed,
            "total_lessons": total_lessons,
        }
