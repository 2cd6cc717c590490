"""
ceplatform/services/admin_override_service.py
Privileged progress writes

These bypass progression gating, so every one of them writes a
ProgressAuditLog row with the actor, the reason and before/after snapshots.

reset_enrollment bumps exam_state_version; a final exam reservation racing
the reset fails its compare-and-swap and re-reads the reset state.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ceplatform.config.settings import EngineSettings
from ceplatform.core.clock import Clock, utcnow
from ceplatform.errors import BadRequestError, NotFoundError, ErrorCode
from ceplatform.events import publisher as events
from ceplatform.events.publisher import EventPublisher
from ceplatform.orm.course import Unit
from ceplatform.orm.enrollment import Enrollment
from ceplatform.orm.progress_audit import ProgressAuditLog
from ceplatform.orm.quiz_attempt import QuizAttempt
from ceplatform.orm.unit_progress import UnitProgress, LessonProgress, UnitStatus
from ceplatform.services.attempt_ledger import AttemptLedger
from ceplatform.services.unit_progress_tracker import UnitProgressTracker

logger = logging.getLogger(__name__)


def _iso(value):
    return value.isoformat() if value is not None else None


def enrollment_snapshot(enrollment: Enrollment) -> Dict[str, Any]:
    return {
        "current_unit_index": enrollment.current_unit_index,
        "total_time_seconds": enrollment.total_time_seconds,
        "hours_completed": enrollment.hours_completed,
        "progress": enrollment.progress,
        "final_exam_passed": enrollment.final_exam_passed,
        "final_exam_score": enrollment.final_exam_score,
        "final_exam_attempts": enrollment.final_exam_attempts,
        "first_exam_attempt_at": _iso(enrollment.first_exam_attempt_at),
        "last_exam_attempt_at": _iso(enrollment.last_exam_attempt_at),
        "retest_eligible_at": _iso(enrollment.retest_eligible_at),
        "exam_state_version": enrollment.exam_state_version,
        "policy_acknowledged_at": _iso(enrollment.policy_acknowledged_at),
        "completed": enrollment.completed,
        "completed_at": _iso(enrollment.completed_at),
        "reset_count": enrollment.reset_count,
    }


def unit_snapshot(progress: UnitProgress) -> Dict[str, Any]:
    return {
        "unit_id": progress.unit_id,
        "status": progress.status.value if progress.status else None,
        "lessons_completed": progress.lessons_completed,
        "quiz_passed": progress.quiz_passed,
        "quiz_best_score": progress.quiz_best_score,
        "quiz_attempts": progress.quiz_attempts,
    }


class AdminOverrideService:

    def __init__(
        self,
        db: AsyncSession,
        settings: EngineSettings,
        publisher: Optional[EventPublisher] = None,
        clock: Clock = utcnow
    ):
        self.db = db
        self.settings = settings
        self.publisher = publisher
        self.clock = clock
        self.tracker = UnitProgressTracker(db, settings, clock)
        self.ledger = AttemptLedger(db, clock)

    async def _enrollment(self, enrollment_id: int) -> Enrollment:
        enrollment = await self.db.get(Enrollment, enrollment_id)
        if enrollment is None:
            raise NotFoundError("Enrollment", enrollment_id, code=ErrorCode.ENROLLMENT_NOT_FOUND)
        return enrollment

    def _audit(self, enrollment_id: int, actor_id: Optional[int], action: str, reason: Optional[str], before, after):
        self.db.add(ProgressAuditLog(
            enrollment_id=enrollment_id,
            actor_user_id=actor_id,
            action=action,
            reason=reason,
            before_state=before,
            after_state=after,
        ))

    async def reset_enrollment(self, enrollment_id: int, actor_id: Optional[int], reason: Optional[str] = None) -> Enrollment:
        """
        Return an enrollment to its initial state. Attempt rows are kept as
        history; open attempts are closed so they cannot be resumed.
        """
        try:
            enrollment = await self._enrollment(enrollment_id)
            before = enrollment_snapshot(enrollment)
            now = self.clock()

            open_result = await self.db.execute(
                select(QuizAttempt.id).where(
                    QuizAttempt.enrollment_id == enrollment_id,
                    QuizAttempt.completed_at.is_(None)
                )
            )
            closed_attempts = []
            for attempt_id in open_result.scalars().all():
                await self.ledger.complete(attempt_id, 0)
                closed_attempts.append(attempt_id)

            enrollment.current_unit_index = 0
            enrollment.total_time_seconds = 0
            enrollment.hours_completed = 0
            enrollment.progress = 0
            enrollment.final_exam_passed = False
            enrollment.final_exam_score = None
            enrollment.final_exam_attempts = 0
            enrollment.first_exam_attempt_at = None
            enrollment.last_exam_attempt_at = None
            enrollment.retest_eligible_at = None
            enrollment.exam_state_version = (enrollment.exam_state_version or 0) + 1
            enrollment.policy_acknowledged_at = None
            enrollment.completed = False
            enrollment.completed_at = None
            enrollment.reset_count = (enrollment.reset_count or 0) + 1

            unit_result = await self.db.execute(
                select(UnitProgress).where(UnitProgress.enrollment_id == enrollment_id)
            )
            for progress in unit_result.scalars().all():
                progress.status = UnitStatus.LOCKED
                progress.lessons_completed = 0
                progress.quiz_passed = False
                progress.quiz_best_score = None
                progress.quiz_attempts = 0
                progress.time_spent_seconds = 0
                progress.started_at = None
                progress.completed_at = None

            lesson_result = await self.db.execute(
                select(LessonProgress).where(LessonProgress.enrollment_id == enrollment_id)
            )
            for lesson_progress in lesson_result.scalars().all():
                lesson_progress.completed = False
                lesson_progress.time_spent_seconds = 0
                lesson_progress.completed_at = None

            await self.db.flush()
            await self.tracker.ensure_initialized(enrollment_id)

            after = enrollment_snapshot(enrollment)
            after["closed_attempt_ids"] = closed_attempts
            self._audit(enrollment_id, actor_id, "enrollment_reset", reason, before, after)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.warning(
            f"[ADMIN RESET] enrollment={enrollment_id} actor={actor_id} reset_count={enrollment.reset_count}"
        )
        if self.publisher is not None:
            try:
                await self.publisher.publish(events.ENROLLMENT_RESET, {
                    "enrollment_id": enrollment_id,
                    "user_id": enrollment.user_id,
                    "actor_user_id": actor_id,
                    "reason": reason,
                    "reset_count": enrollment.reset_count,
                })
            except Exception as e:
                logger.error(f"[EVENT PUBLISH FAILED] {events.ENROLLMENT_RESET}: {e}")
        return enrollment

    async def override_unit_status(
        self,
        enrollment_id: int,
        unit_id: int,
        status: UnitStatus,
        actor_id: Optional[int],
        reason: Optional[str] = None
    ) -> UnitProgress:
        """Set a unit's status directly. May move backwards."""
        try:
            enrollment = await self._enrollment(enrollment_id)
            unit = await self.db.get(Unit, unit_id)
            if unit is None or unit.course_id != enrollment.course_id:
                raise NotFoundError("Unit", unit_id, code=ErrorCode.UNIT_NOT_FOUND)

            units = await self.tracker.course_units(enrollment.course_id)
            if status == UnitStatus.LOCKED and units and units[0].id == unit_id:
                raise BadRequestError(
                    "The first unit of an active enrollment cannot be locked",
                    details={"unit_id": unit_id}
                )

            progress = await self.tracker.get_unit_progress(enrollment_id, unit_id)
            if progress is None:
                await self.tracker.ensure_initialized(enrollment_id, units)
                progress = await self.tracker.get_unit_progress(enrollment_id, unit_id)

            before = unit_snapshot(progress)
            now = self.clock()

            progress.status = status
            if status == UnitStatus.COMPLETED:
                progress.quiz_passed = True
                progress.started_at = progress.started_at or now
                progress.completed_at = progress.completed_at or now
            elif status == UnitStatus.IN_PROGRESS:
                progress.quiz_passed = False
                progress.started_at = progress.started_at or now
                progress.completed_at = None
            else:
                progress.quiz_passed = False
                progress.completed_at = None

            index = next((i for i, u in enumerate(units) if u.id == unit_id), 0)
            if status != UnitStatus.LOCKED:
                enrollment.current_unit_index = max(enrollment.current_unit_index or 0, index)
            elif (enrollment.current_unit_index or 0) >= index:
                enrollment.current_unit_index = max(0, index - 1)

            await self.db.flush()
            if status == UnitStatus.COMPLETED:
                await self.tracker.unlock_next_unit(enrollment_id, await self.tracker.next_unit(unit))
            await self.tracker.recompute_aggregates(enrollment_id)

            self._audit(
                enrollment_id, actor_id, "unit_status_override", reason,
                before, unit_snapshot(progress)
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.warning(
            f"[ADMIN OVERRIDE] enrollment={enrollment_id} unit={unit_id} "
            f"{before['status']} -> {status.value} actor={actor_id}"
        )
        return progress

    async def audit_log(self, enrollment_id: int) -> List[ProgressAuditLog]:
        result = await self.db.execute(
            select(ProgressAuditLog)
            .where(ProgressAuditLog.enrollment_id == enrollment_id)
            .order_by(ProgressAuditLog.created_at, ProgressAuditLog.id)
        )
        return list(result.scalars().all())
