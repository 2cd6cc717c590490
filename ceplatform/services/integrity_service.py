"""
ceplatform/services/integrity_service.py
Read-only consistency checks over one enrollment's progression state

Checks:
- exactly one UnitProgress row per course unit
- first unit not locked while the enrollment is active
- monotonic unlock: a unit is open only after its predecessor completed,
  and no unit stays locked behind a completed predecessor
- final exam counter within the jurisdiction cap
- completed attempts carry a score consistent with their answers
- a passed final exam implies a completed enrollment
"""
import logging
from typing import Any, Dict, List

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from ceplatform.config.settings import EngineSettings
from ceplatform.core.clock import Clock, utcnow
from ceplatform.errors import NotFoundError, ErrorCode
from ceplatform.orm.course import Course, Unit
from ceplatform.orm.enrollment import Enrollment
from ceplatform.orm.quiz_attempt import QuizAttempt, QuizAnswer
from ceplatform.orm.unit_progress import UnitProgress, UnitStatus
from ceplatform.services.attempt_ledger import compute_score

logger = logging.getLogger(__name__)


async def verify_enrollment_integrity(
    db: AsyncSession,
    settings: EngineSettings,
    enrollment_id: int,
    clock: Clock = utcnow
) -> Dict[str, Any]:
    """
    Inspect an enrollment and report every violated invariant.

    Returns:
        {"enrollment_id", "ok", "violations": [{"check", "message", ...}], "checked_at"}
    """
    enrollment = await db.get(Enrollment, enrollment_id)
    if enrollment is None:
        raise NotFoundError("Enrollment", enrollment_id, code=ErrorCode.ENROLLMENT_NOT_FOUND)

    course = await db.get(Course, enrollment.course_id)
    policy = settings.policy_for(course.jurisdiction if course else None)
    violations: List[Dict[str, Any]] = []

    unit_result = await db.execute(
        select(Unit).where(Unit.course_id == enrollment.course_id).order_by(Unit.sequence)
    )
    units = list(unit_result.scalars().all())

    progress_result = await db.execute(
        select(UnitProgress).where(UnitProgress.enrollment_id == enrollment_id)
    )
    rows_by_unit: Dict[int, List[UnitProgress]] = {}
    for row in progress_result.scalars().all():
        rows_by_unit.setdefault(row.unit_id, []).append(row)

    for unit in units:
        count = len(rows_by_unit.get(unit.id, []))
        if count != 1:
            violations.append({
                "check": "unit_progress_rows",
                "message": f"Unit {unit.id} has {count} progress rows",
                "unit_id": unit.id,
            })

    ordered = [(unit, rows_by_unit[unit.id][0]) for unit in units if rows_by_unit.get(unit.id)]

    if ordered and not enrollment.is_expired(clock()) and ordered[0][1].status == UnitStatus.LOCKED:
        violations.append({
            "check": "first_unit_unlocked",
            "message": "First unit is locked on an active enrollment",
            "unit_id": ordered[0][0].id,
        })

    for (prev_unit, prev), (unit, current) in zip(ordered, ordered[1:]):
        if current.status != UnitStatus.LOCKED and prev.status != UnitStatus.COMPLETED:
            violations.append({
                "check": "monotonic_unlock",
                "message": f"Unit {unit.id} is {current.status.value} but unit {prev_unit.id} is {prev.status.value}",
                "unit_id": unit.id,
            })
        if prev.status == UnitStatus.COMPLETED and current.status == UnitStatus.LOCKED:
            violations.append({
                "check": "locked_after_completed",
                "message": f"Unit {unit.id} is locked after completed unit {prev_unit.id}",
                "unit_id": unit.id,
            })

    if (enrollment.final_exam_attempts or 0) > policy.max_attempts:
        violations.append({
            "check": "attempt_cap",
            "message": (
                f"{enrollment.final_exam_attempts} final exam attempts exceed the "
                f"{policy.code} cap of {policy.max_attempts}"
            ),
        })

    attempt_result = await db.execute(
        select(QuizAttempt).where(
            QuizAttempt.enrollment_id == enrollment_id,
            QuizAttempt.completed_at.is_not(None)
        )
    )
    for attempt in attempt_result.scalars().all():
        correct_result = await db.execute(
            select(func.count(QuizAnswer.id)).where(
                QuizAnswer.attempt_id == attempt.id,
                QuizAnswer.is_correct.is_(True)
            )
        )
        correct = correct_result.scalar_one()
        expected = compute_score(correct, attempt.total_questions)
        if attempt.correct_answers != correct or attempt.score != expected:
            violations.append({
                "check": "attempt_score",
                "message": (
                    f"Attempt {attempt.id} stores {attempt.correct_answers} correct / score "
                    f"{attempt.score}, answers give {correct} / {expected}"
                ),
                "attempt_id": attempt.id,
            })

    if enrollment.final_exam_passed and not enrollment.completed:
        violations.append({
            "check": "completion",
            "message": "Final exam passed but enrollment not completed",
        })

    if violations:
        logger.warning(f"[INTEGRITY] enrollment={enrollment_id} violations={len(violations)}")

    return {
        "enrollment_id": enrollment_id,
        "ok": not violations,
        "violations": violations,
        "checked_at": clock(),
    }
