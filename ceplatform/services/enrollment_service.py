"""
ceplatform/services/enrollment_service.py
Enrollment lifecycle

- create_enrollment is driven by the checkout collaborator's
  "enrollment created" event and is idempotent for an active enrollment
- expires_at = enrolled_at + course.expiration_months (calendar months)
- acknowledge_policy stamps the course exam policy disclosure
"""
import calendar
import logging
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ceplatform.config.settings import EngineSettings
from ceplatform.core.clock import Clock, utcnow
from ceplatform.errors import NotFoundError, ForbiddenError, ErrorCode, EnrollmentExpired
from ceplatform.orm.course import Course
from ceplatform.orm.enrollment import Enrollment
from ceplatform.orm.user import User
from ceplatform.services.unit_progress_tracker import UnitProgressTracker

logger = logging.getLogger(__name__)


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day (Jan 31 + 1 -> Feb 28/29)."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


class EnrollmentService:

    def __init__(self, db: AsyncSession, settings: EngineSettings, clock: Clock = utcnow):
        self.db = db
        self.settings = settings
        self.clock = clock
        self.tracker = UnitProgressTracker(db, settings, clock)

    async def _active_enrollment(self, user_id: int, course_id: int) -> Optional[Enrollment]:
        result = await self.db.execute(
            select(Enrollment).where(
                Enrollment.user_id == user_id,
                Enrollment.course_id == course_id,
                Enrollment.completed.is_(False)
            ).order_by(Enrollment.enrolled_at.desc(), Enrollment.id.desc())
        )
        now = self.clock()
        for enrollment in result.scalars().all():
            if not enrollment.is_expired(now):
                return enrollment
        return None

    async def create_enrollment(self, user_id: int, course_id: int) -> Tuple[Enrollment, bool]:
        """
        Register a learner in a course.

        Returns:
            (enrollment, created) - created is False when an active
            enrollment already existed
        """
        user = await self.db.get(User, user_id)
        if user is None or not user.is_active:
            raise NotFoundError("User", user_id)

        course = await self.db.get(Course, course_id)
        if course is None or not course.is_active:
            raise NotFoundError("Course", course_id, code=ErrorCode.COURSE_NOT_FOUND)

        existing = await self._active_enrollment(user_id, course_id)
        if existing is not None:
            logger.info(f"[ENROLL] user={user_id} course={course_id} already enrolled as {existing.id}")
            await self.tracker.ensure_initialized(existing.id)
            await self.db.commit()
            return existing, False

        now = self.clock()
        expires_at = None
        if course.expiration_months:
            expires_at = add_months(now, course.expiration_months)

        enrollment = Enrollment(
            user_id=user_id,
            course_id=course_id,
            enrolled_at=now,
            expires_at=expires_at,
            current_unit_index=0,
            total_time_seconds=0,
            hours_completed=0,
            progress=0,
            final_exam_passed=False,
            final_exam_attempts=0,
            exam_state_version=0,
            completed=False,
            reset_count=0,
        )
        self.db.add(enrollment)
        await self.db.flush()

        units = await self.tracker.course_units(course_id)
        await self.tracker.ensure_initialized(enrollment.id, units)
        await self.db.commit()

        logger.info(
            f"[ENROLL] user={user_id} course={course_id} enrollment={enrollment.id} "
            f"units={len(units)} expires_at={expires_at}"
        )
        return enrollment, True

    async def acknowledge_policy(self, learner_id: int, enrollment_id: int) -> Enrollment:
        enrollment = await self.db.get(Enrollment, enrollment_id)
        if enrollment is None:
            raise NotFoundError("Enrollment", enrollment_id, code=ErrorCode.ENROLLMENT_NOT_FOUND)
        if enrollment.user_id != learner_id:
            raise ForbiddenError(
                "You do not have access to this enrollment",
                code=ErrorCode.OWNERSHIP_VIOLATION
            )
        if enrollment.is_expired(self.clock()):
            raise EnrollmentExpired(enrollment.id, enrollment.expires_at)

        if enrollment.policy_acknowledged_at is None:
            enrollment.policy_acknowledged_at = self.clock()
            await self.db.commit()
            logger.info(f"[POLICY ACK] enrollment={enrollment_id}")
        return enrollment
