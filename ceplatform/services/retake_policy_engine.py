"""
ceplatform/services/retake_policy_engine.py
Final exam eligibility and attempt reservation

JURISDICTION RULES (JurisdictionPolicy):
- Attempt cap: 2 when regulated (original + one retest), 3 otherwise
- Cooldown: after a non-passing attempt wait cooldown_days from the most
  recent attempt date; eligible date = last attempt date + cooldown_days
- Window: window_days from the first attempt; once closed the course must be
  repeated
- Form rotation: attempt 1 -> A, 2 -> B, 3 -> A

evaluate() is pure. reserve_attempt() is the only writer and is a
compare-and-swap on (final_exam_attempts, exam_state_version); a lost race is
retried against freshly read state, a real denial is raised immediately.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ceplatform.config.settings import EngineSettings, JurisdictionPolicy
from ceplatform.core.clock import Clock, utcnow, to_date
from ceplatform.errors import (
    AttemptLimitExceeded,
    CooldownActive,
    CourseRepeatRequired,
    FinalExamAlreadyPassed,
    ReservationConflict,
    NotFoundError,
    ErrorCode,
)
from ceplatform.orm.course import Course
from ceplatform.orm.enrollment import Enrollment

logger = logging.getLogger(__name__)


@dataclass
class EligibilityDecision:
    permitted: bool
    reason: Optional[str] = None
    form_to_use: Optional[str] = None
    attempts_used: int = 0
    attempts_remaining: int = 0
    retest_eligible_date: Optional[date] = None
    course_repeat_required: bool = False
    max_attempts: int = 0
    window_closes_on: Optional[date] = None

    def to_dict(self) -> dict:
        return {
            "permitted": self.permitted,
            "reason": self.reason,
            "form_to_use": self.form_to_use,
            "attempts_used": self.attempts_used,
            "attempts_remaining": self.attempts_remaining,
            "max_attempts": self.max_attempts,
            "retest_eligible_date": self.retest_eligible_date,
            "course_repeat_required": self.course_repeat_required,
            "window_closes_on": self.window_closes_on,
        }


@dataclass
class ReservationResult:
    success: bool
    attempt_number: int
    form_to_use: str
    retries: int = 0
    decision: Optional[EligibilityDecision] = field(default=None, repr=False)


def evaluate_policy(enrollment: Enrollment, policy: JurisdictionPolicy, now: datetime) -> EligibilityDecision:
    """Pure eligibility check of one enrollment's exam state against a policy."""
    attempts = enrollment.final_exam_attempts or 0
    today = to_date(now)
    remaining = max(0, policy.max_attempts - attempts)

    window_closes_on = None
    if enrollment.first_exam_attempt_at is not None:
        window_closes_on = to_date(enrollment.first_exam_attempt_at) + timedelta(days=policy.window_days)

    base = dict(
        attempts_used=attempts,
        attempts_remaining=remaining,
        max_attempts=policy.max_attempts,
        window_closes_on=window_closes_on,
    )

    if enrollment.final_exam_passed:
        return EligibilityDecision(permitted=False, reason=ErrorCode.FINAL_EXAM_ALREADY_PASSED, **base)

    if window_closes_on is not None and today > window_closes_on:
        return EligibilityDecision(
            permitted=False,
            reason=ErrorCode.COURSE_REPEAT_REQUIRED,
            course_repeat_required=True,
            **base
        )

    if attempts >= policy.max_attempts:
        return EligibilityDecision(
            permitted=False,
            reason=ErrorCode.ATTEMPT_LIMIT_EXCEEDED,
            course_repeat_required=policy.requires_course_repeat_after_max,
            **base
        )

    if attempts > 0 and enrollment.last_exam_attempt_at is not None:
        eligible_on = to_date(enrollment.last_exam_attempt_at) + timedelta(days=policy.cooldown_days)
        if today < eligible_on:
            return EligibilityDecision(
                permitted=False,
                reason=ErrorCode.COOLDOWN_ACTIVE,
                retest_eligible_date=eligible_on,
                **base
            )

    return EligibilityDecision(
        permitted=True,
        form_to_use=policy.form_for_attempt(attempts + 1),
        **base
    )


def raise_for_decision(decision: EligibilityDecision, enrollment: Enrollment, policy: JurisdictionPolicy):
    if decision.permitted:
        return
    if decision.reason == ErrorCode.FINAL_EXAM_ALREADY_PASSED:
        raise FinalExamAlreadyPassed(enrollment.id)
    if decision.reason == ErrorCode.COURSE_REPEAT_REQUIRED:
        raise CourseRepeatRequired(decision.window_closes_on)
    if decision.reason == ErrorCode.ATTEMPT_LIMIT_EXCEEDED:
        raise AttemptLimitExceeded(policy.max_attempts, decision.course_repeat_required)
    if decision.reason == ErrorCode.COOLDOWN_ACTIVE:
        raise CooldownActive(decision.retest_eligible_date, policy.cooldown_days)
    raise ValueError(f"Unhandled eligibility reason: {decision.reason}")


class RetakePolicyEngine:

    def __init__(self, db: AsyncSession, settings: EngineSettings, clock: Clock = utcnow):
        self.db = db
        self.settings = settings
        self.clock = clock

    def policy(self, jurisdiction: Optional[str]) -> JurisdictionPolicy:
        return self.settings.policy_for(jurisdiction)

    def evaluate(
        self,
        enrollment: Enrollment,
        jurisdiction: Optional[str],
        now: Optional[datetime] = None
    ) -> EligibilityDecision:
        return evaluate_policy(enrollment, self.policy(jurisdiction), now or self.clock())

    async def _jurisdiction_for(self, enrollment: Enrollment) -> Optional[str]:
        course = await self.db.get(Course, enrollment.course_id)
        return course.jurisdiction if course is not None else None

    async def _read_enrollment(self, enrollment_id: int) -> Enrollment:
        result = await self.db.execute(
            select(Enrollment)
            .where(Enrollment.id == enrollment_id)
            .execution_options(populate_existing=True)
        )
        enrollment = result.scalar_one_or_none()
        if enrollment is None:
            raise NotFoundError("Enrollment", enrollment_id, code=ErrorCode.ENROLLMENT_NOT_FOUND)
        return enrollment

    async def reserve_attempt(self, enrollment_id: int) -> ReservationResult:
        """
        Atomically consume one final exam attempt.

        Raises:
            FinalExamAlreadyPassed, CourseRepeatRequired, AttemptLimitExceeded,
            CooldownActive: the enrollment is not eligible
            ReservationConflict: every retry lost the race and the enrollment
                is still eligible
        """
        max_retries = self.settings.reservation_max_retries
        jurisdiction = None

        for retry in range(max_retries + 1):
            enrollment = await self._read_enrollment(enrollment_id)
            if jurisdiction is None:
                jurisdiction = await self._jurisdiction_for(enrollment)
            policy = self.policy(jurisdiction)

            now = self.clock()
            decision = evaluate_policy(enrollment, policy, now)
            if not decision.permitted:
                logger.info(
                    f"[RESERVE DENIED] enrollment={enrollment_id} reason={decision.reason} "
                    f"attempts={decision.attempts_used}/{policy.max_attempts}"
                )
                raise_for_decision(decision, enrollment, policy)

            observed_attempts = enrollment.final_exam_attempts or 0
            observed_version = enrollment.exam_state_version or 0
            attempt_number = observed_attempts + 1
            retest_eligible_at = datetime.combine(
                to_date(now) + timedelta(days=policy.cooldown_days), time.min
            )

            result = await self.db.execute(
                update(Enrollment)
                .where(
                    Enrollment.id == enrollment_id,
                    Enrollment.final_exam_attempts == observed_attempts,
                    Enrollment.exam_state_version == observed_version
                )
                .values(
                    final_exam_attempts=attempt_number,
                    exam_state_version=observed_version + 1,
                    first_exam_attempt_at=enrollment.first_exam_attempt_at or now,
                    last_exam_attempt_at=now,
                    retest_eligible_at=retest_eligible_at,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )

            if result.rowcount == 1:
                await self._read_enrollment(enrollment_id)
                logger.info(
                    f"[RESERVE OK] enrollment={enrollment_id} attempt={attempt_number} "
                    f"form={decision.form_to_use} retries={retry}"
                )
                return ReservationResult(
                    success=True,
                    attempt_number=attempt_number,
                    form_to_use=decision.form_to_use,
                    retries=retry,
                    decision=decision,
                )

            logger.warning(
                f"[RESERVE CONFLICT] enrollment={enrollment_id} observed_attempts={observed_attempts} "
                f"observed_version={observed_version} retry={retry}"
            )

        # Out of retries: judge eligibility on the state the winners left
        enrollment = await self._read_enrollment(enrollment_id)
        policy = self.policy(jurisdiction)
        decision = evaluate_policy(enrollment, policy, self.clock())
        if not decision.permitted:
            logger.info(
                f"[RESERVE DENIED] enrollment={enrollment_id} reason={decision.reason} after {max_retries} retries"
            )
            raise_for_decision(decision, enrollment, policy)
        raise ReservationConflict(enrollment_id, max_retries)
