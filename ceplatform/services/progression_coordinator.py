"""
ceplatform/services/progression_coordinator.py
Learner-facing progression workflow

Every learner action enters here:
    learner action -> ownership / expiry checks -> gating (UnitProgressTracker,
    RetakePolicyEngine) -> QuestionPool draw -> AttemptLedger write ->
    progress and enrollment aggregates -> one commit -> completion events

Precondition and limit violations are raised as named APIErrors and never
retried. Only reservation races are retried, inside RetakePolicyEngine.
Any failure rolls the whole operation back, so a reserved exam attempt is
never consumed by a request that did not open an attempt.
"""
import logging
import random
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ceplatform.config.settings import EngineSettings
from ceplatform.core.clock import Clock, utcnow
from ceplatform.errors import (
    APIError,
    ForbiddenError,
    NotFoundError,
    ErrorCode,
    EnrollmentExpired,
    BankNotInCourse,
    UnitLocked,
    LessonsIncomplete,
    ExamLocked,
    PolicyNotAcknowledged,
    DuplicateOpenAttempt,
    AttemptAlreadyCompleted,
    AttemptTimeExpired,
    ExamFormUnavailable,
)
from ceplatform.events import publisher as events
from ceplatform.events.publisher import EventPublisher
from ceplatform.orm.course import Course, Unit, Lesson
from ceplatform.orm.enrollment import Enrollment
from ceplatform.orm.question_bank import QuestionBank, Question, BankType
from ceplatform.orm.quiz_attempt import QuizAttempt
from ceplatform.orm.unit_progress import UnitStatus
from ceplatform.services.attempt_ledger import AttemptLedger
from ceplatform.services.question_pool import QuestionPool, sanitize_question
from ceplatform.services.retake_policy_engine import RetakePolicyEngine
from ceplatform.services.unit_progress_tracker import UnitProgressTracker

logger = logging.getLogger(__name__)


class ProgressionCoordinator:

    def __init__(
        self,
        db: AsyncSession,
        settings: EngineSettings,
        publisher: Optional[EventPublisher] = None,
        rng: Optional[random.Random] = None,
        clock: Clock = utcnow
    ):
        self.db = db
        self.settings = settings
        self.publisher = publisher
        self.clock = clock
        self.pool = QuestionPool(db, rng)
        self.ledger = AttemptLedger(db, clock)
        self.tracker = UnitProgressTracker(db, settings, clock)
        self.retakes = RetakePolicyEngine(db, settings, clock)
        self._pending_events: List[Tuple[str, Dict[str, Any]]] = []

    # ------------------------------------------------------------------
    # Transaction helpers
    # ------------------------------------------------------------------

    async def _commit(self):
        await self.db.commit()
        pending, self._pending_events = self._pending_events, []
        if self.publisher is None:
            return
        for event_type, payload in pending:
            try:
                await self.publisher.publish(event_type, payload)
            except Exception as e:
                logger.error(f"[EVENT PUBLISH FAILED] {event_type}: {e}")

    async def _rollback(self):
        self._pending_events = []
        await self.db.rollback()

    def _emit(self, event_type: str, payload: Dict[str, Any]):
        self._pending_events.append((event_type, payload))

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    async def _owned_enrollment(self, learner_id: int, enrollment_id: int, check_expiry: bool = True) -> Enrollment:
        enrollment = await self.db.get(Enrollment, enrollment_id)
        if enrollment is None:
            raise NotFoundError("Enrollment", enrollment_id, code=ErrorCode.ENROLLMENT_NOT_FOUND)
        if enrollment.user_id != learner_id:
            logger.warning(
                f"[OWNERSHIP] learner={learner_id} attempted access to enrollment={enrollment_id}"
            )
            raise ForbiddenError(
                "You do not have access to this enrollment",
                code=ErrorCode.OWNERSHIP_VIOLATION
            )
        if check_expiry and enrollment.is_expired(self.clock()):
            raise EnrollmentExpired(enrollment.id, enrollment.expires_at)
        return enrollment

    async def _owned_attempt(
        self,
        learner_id: int,
        attempt_id: int,
        check_expiry: bool = True
    ) -> Tuple[QuizAttempt, Enrollment, QuestionBank]:
        attempt = await self.ledger.get(attempt_id)
        enrollment = await self._owned_enrollment(learner_id, attempt.enrollment_id, check_expiry)
        bank = await self.pool.get_bank(attempt.bank_id)
        return attempt, enrollment, bank

    async def _owned_lesson(self, enrollment: Enrollment, lesson_id: int) -> Tuple[Lesson, Unit]:
        lesson, unit = await self.tracker.lesson_with_unit(lesson_id)
        if unit is None or unit.course_id != enrollment.course_id:
            raise NotFoundError("Lesson", lesson_id, code=ErrorCode.LESSON_NOT_FOUND)
        return lesson, unit

    def _deadline(self, attempt: QuizAttempt, bank: QuestionBank) -> Optional[datetime]:
        if not bank.time_limit_minutes:
            return None
        return attempt.started_at + timedelta(minutes=bank.time_limit_minutes)

    async def _open_final_attempt(self, enrollment_id: int, course_id: int) -> Optional[QuizAttempt]:
        result = await self.db.execute(
            select(QuizAttempt)
            .join(QuestionBank, QuestionBank.id == QuizAttempt.bank_id)
            .where(
                QuizAttempt.enrollment_id == enrollment_id,
                QuizAttempt.completed_at.is_(None),
                QuestionBank.course_id == course_id,
                QuestionBank.bank_type == BankType.FINAL_EXAM
            )
        )
        return result.scalars().first()

    async def _final_bank_for_form(self, requested: QuestionBank, form: str) -> QuestionBank:
        """Final exam bank of the requested bank's course matching the rotation form."""
        result = await self.db.execute(
            select(QuestionBank).where(
                QuestionBank.course_id == requested.course_id,
                QuestionBank.bank_type == BankType.FINAL_EXAM,
                QuestionBank.is_active.is_(True)
            ).order_by(QuestionBank.id)
        )
        banks = list(result.scalars().all())
        if not any(b.exam_form for b in banks):
            return requested
        for bank in banks:
            if bank.exam_form == form:
                return bank
        raise ExamFormUnavailable(requested.course_id, form)

    async def _units_blocking_exam(self, enrollment_id: int) -> List[int]:
        rows = await self.tracker.progress_rows(enrollment_id)
        return [
            unit.id for unit, progress in rows
            if progress.status != UnitStatus.COMPLETED or not progress.quiz_passed
        ]

    # ------------------------------------------------------------------
    # Lessons
    # ------------------------------------------------------------------

    async def record_lesson_time(self, learner_id: int, enrollment_id: int, lesson_id: int, seconds: int) -> Dict[str, Any]:
        try:
            enrollment = await self._owned_enrollment(learner_id, enrollment_id)
            await self._owned_lesson(enrollment, lesson_id)
            lesson_progress = await self.tracker.record_time_spent(enrollment_id, lesson_id, seconds)
            payload = {
                "enrollment_id": enrollment_id,
                "lesson_id": lesson_id,
                "time_spent_seconds": lesson_progress.time_spent_seconds,
                "completed": lesson_progress.completed,
                "total_time_seconds": enrollment.total_time_seconds,
            }
            await self._commit()
            return payload
        except Exception:
            await self._rollback()
            raise

    async def complete_lesson(self, learner_id: int, enrollment_id: int, lesson_id: int) -> Dict[str, Any]:
        try:
            enrollment = await self._owned_enrollment(learner_id, enrollment_id)
            await self._owned_lesson(enrollment, lesson_id)
            lesson_progress = await self.tracker.complete_lesson(enrollment_id, lesson_id)
            payload = {
                "enrollment_id": enrollment_id,
                "lesson_id": lesson_id,
                "time_spent_seconds": lesson_progress.time_spent_seconds,
                "completed": lesson_progress.completed,
                "progress": enrollment.progress,
                "hours_completed": enrollment.hours_completed,
            }
            await self._commit()
            return payload
        except Exception:
            await self._rollback()
            raise

    # ------------------------------------------------------------------
    # Quizzes and exams
    # ------------------------------------------------------------------

    async def start_quiz(self, learner_id: int, enrollment_id: int, bank_id: int) -> Dict[str, Any]:
        """
        Open a new attempt on a unit quiz or the final exam.

        Returns:
            attempt id, sanitized questions and timing information
        """
        try:
            enrollment = await self._owned_enrollment(learner_id, enrollment_id)
            bank = await self.pool.get_bank(bank_id)
            if bank.course_id != enrollment.course_id or not bank.is_active:
                raise BankNotInCourse(bank_id, enrollment.course_id)

            exam_form = None
            attempt_number = None

            if bank.bank_type == BankType.UNIT_QUIZ:
                unit = await self.db.get(Unit, bank.unit_id)
                progress = await self.tracker.get_unit_progress(enrollment_id, bank.unit_id)
                if progress is None or progress.status == UnitStatus.LOCKED:
                    raise UnitLocked(bank.unit_id, unit.sequence if unit else None)

                completion = await self.tracker.check_completion(enrollment_id, bank.unit_id)
                if not completion["lessons_complete"]:
                    raise LessonsIncomplete(
                        bank.unit_id, completion["lessons_completed"], completion["total_lessons"]
                    )

                open_attempt = await self.ledger.find_open(enrollment_id, bank_id)
                if open_attempt is not None:
                    raise DuplicateOpenAttempt(open_attempt.id, bank_id)
            else:
                blocking = await self._units_blocking_exam(enrollment_id)
                if blocking:
                    raise ExamLocked(blocking)

                course = await self.db.get(Course, enrollment.course_id)
                policy = self.settings.policy_for(course.jurisdiction)
                if policy.requires_policy_acknowledgment and enrollment.policy_acknowledged_at is None:
                    raise PolicyNotAcknowledged(enrollment_id)

                open_attempt = await self._open_final_attempt(enrollment_id, enrollment.course_id)
                if open_attempt is not None:
                    raise DuplicateOpenAttempt(open_attempt.id, open_attempt.bank_id)

                reservation = await self.retakes.reserve_attempt(enrollment_id)
                exam_form = reservation.form_to_use
                attempt_number = reservation.attempt_number
                bank = await self._final_bank_for_form(bank, exam_form)

            questions = await self.pool.sample(bank.id, bank.questions_per_attempt)
            attempt = await self.ledger.open(
                enrollment_id, bank.id, [q.id for q in questions], exam_form=exam_form
            )

            payload = {
                "attempt_id": attempt.id,
                "enrollment_id": enrollment_id,
                "bank_id": bank.id,
                "bank_type": bank.bank_type.value,
                "exam_form": exam_form,
                "attempt_number": attempt_number,
                "total_questions": attempt.total_questions,
                "passing_score": bank.passing_score,
                "time_limit_minutes": bank.time_limit_minutes,
                "started_at": attempt.started_at,
                "deadline": self._deadline(attempt, bank),
                "questions": [sanitize_question(q) for q in questions],
            }
            await self._commit()
            logger.info(
                f"[QUIZ START] learner={learner_id} enrollment={enrollment_id} bank={bank.id} "
                f"attempt={payload['attempt_id']} form={exam_form}"
            )
            return payload
        except Exception:
            await self._rollback()
            raise

    async def resume_quiz(self, learner_id: int, attempt_id: int) -> Dict[str, Any]:
        """Session recovery: questions and answered ids of an open attempt."""
        attempt, enrollment, bank = await self._owned_attempt(learner_id, attempt_id)
        if attempt.is_completed:
            raise AttemptAlreadyCompleted(attempt_id)

        by_id = await self.pool.questions_by_id(attempt.question_ids)
        answers = await self.ledger.answers_for(attempt_id)
        return {
            "attempt_id": attempt.id,
            "enrollment_id": enrollment.id,
            "bank_id": bank.id,
            "bank_type": bank.bank_type.value,
            "exam_form": attempt.exam_form,
            "total_questions": attempt.total_questions,
            "passing_score": bank.passing_score,
            "time_limit_minutes": bank.time_limit_minutes,
            "started_at": attempt.started_at,
            "deadline": self._deadline(attempt, bank),
            "questions": [sanitize_question(by_id[qid]) for qid in attempt.question_ids if qid in by_id],
            "answered_question_ids": [a.question_id for a in answers],
        }

    async def submit_answer(
        self,
        learner_id: int,
        attempt_id: int,
        question_id: int,
        selected_option: int
    ) -> Dict[str, Any]:
        try:
            attempt, enrollment, bank = await self._owned_attempt(learner_id, attempt_id)
            if attempt.is_completed:
                raise AttemptAlreadyCompleted(attempt_id)

            if bank.bank_type == BankType.UNIT_QUIZ:
                progress = await self.tracker.get_unit_progress(enrollment.id, bank.unit_id)
                if progress is None or progress.status == UnitStatus.LOCKED:
                    raise UnitLocked(bank.unit_id)

            deadline = self._deadline(attempt, bank)
            if self.settings.enforce_time_limits and deadline is not None:
                grace = timedelta(seconds=self.settings.time_limit_grace_seconds)
                if self.clock() > deadline + grace:
                    raise AttemptTimeExpired(attempt_id, deadline)

            answer = await self.ledger.record_answer(attempt_id, question_id, selected_option)

            payload: Dict[str, Any] = {
                "attempt_id": attempt_id,
                "question_id": question_id,
                "selected_option": selected_option,
                "recorded": True,
                "feedback": None,
            }
            show_feedback = not bank.is_final_exam or self.settings.final_exam_immediate_feedback
            if show_feedback:
                question = await self.db.get(Question, question_id)
                payload["feedback"] = {
                    "is_correct": answer.is_correct,
                    "correct_option": question.correct_option,
                    "explanation": question.explanation,
                }

            await self._commit()
            return payload
        except Exception:
            await self._rollback()
            raise

    async def complete_quiz(
        self,
        learner_id: int,
        attempt_id: int,
        time_spent_seconds: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Score and close an attempt, then apply its consequences in the same
        transaction: unit pass unlocks the next unit, a final exam pass
        completes the enrollment.
        """
        try:
            attempt, enrollment, bank = await self._owned_attempt(learner_id, attempt_id, check_expiry=False)
            if attempt.is_completed:
                raise AttemptAlreadyCompleted(attempt_id)

            now = self.clock()
            elapsed = max(0, int((now - attempt.started_at).total_seconds()))
            if time_spent_seconds is None:
                time_spent = elapsed
            else:
                time_spent = max(0, min(int(time_spent_seconds), elapsed))

            attempt = await self.ledger.complete(attempt_id, time_spent)

            result: Dict[str, Any] = {
                "attempt": attempt.to_dict(),
                "score": attempt.score,
                "passed": attempt.passed,
                "passing_score": bank.passing_score,
                "unlocked_unit_id": None,
                "course_completed": False,
                "eligibility": None,
            }

            if bank.bank_type == BankType.UNIT_QUIZ:
                if attempt.passed:
                    next_unit = await self.tracker.mark_unit_passed(enrollment.id, bank.unit_id, attempt.score)
                    if next_unit is not None:
                        await self.tracker.unlock_next_unit(enrollment.id, next_unit)
                        result["unlocked_unit_id"] = next_unit.id
                    await self.tracker.recompute_aggregates(enrollment.id)
                    self._emit(events.UNIT_PASSED, {
                        "enrollment_id": enrollment.id,
                        "user_id": enrollment.user_id,
                        "unit_id": bank.unit_id,
                        "attempt_id": attempt.id,
                        "score": attempt.score,
                        "unlocked_unit_id": result["unlocked_unit_id"],
                    })
                else:
                    await self.tracker.record_quiz_failure(enrollment.id, bank.unit_id, attempt.score)
            else:
                await self._apply_final_exam_result(enrollment, attempt, now, result)

            await self._commit()
            return result
        except Exception:
            await self._rollback()
            raise

    async def _apply_final_exam_result(
        self,
        enrollment: Enrollment,
        attempt: QuizAttempt,
        now: datetime,
        result: Dict[str, Any]
    ):
        enrollment.final_exam_score = max(enrollment.final_exam_score or 0, attempt.score)
        course = await self.db.get(Course, enrollment.course_id)

        if attempt.passed:
            enrollment.final_exam_passed = True
            enrollment.retest_eligible_at = None
            enrollment.completed = True
            enrollment.completed_at = enrollment.completed_at or now
            enrollment.progress = 100
            enrollment.hours_completed = course.hours_required or 0
            result["course_completed"] = True
            base = {
                "enrollment_id": enrollment.id,
                "user_id": enrollment.user_id,
                "course_id": enrollment.course_id,
                "attempt_id": attempt.id,
                "score": attempt.score,
                "exam_form": attempt.exam_form,
            }
            self._emit(events.FINAL_EXAM_PASSED, base)
            self._emit(events.COURSE_COMPLETED, {
                **base,
                "completed_at": enrollment.completed_at,
                "hours_completed": enrollment.hours_completed,
                "jurisdiction": course.jurisdiction,
            })
            logger.info(f"[COURSE COMPLETE] enrollment={enrollment.id} score={attempt.score}")
        else:
            decision = self.retakes.evaluate(enrollment, course.jurisdiction, now)
            result["eligibility"] = decision.to_dict()
            self._emit(events.FINAL_EXAM_FAILED, {
                "enrollment_id": enrollment.id,
                "user_id": enrollment.user_id,
                "attempt_id": attempt.id,
                "score": attempt.score,
                "exam_form": attempt.exam_form,
                "attempts_remaining": decision.attempts_remaining,
                "retest_eligible_date": decision.retest_eligible_date,
                "course_repeat_required": decision.course_repeat_required,
            })

        await self.db.flush()

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    async def attempt_history(self, learner_id: int, enrollment_id: int, bank_id: int) -> List[Dict[str, Any]]:
        enrollment = await self._owned_enrollment(learner_id, enrollment_id, check_expiry=False)
        bank = await self.pool.get_bank(bank_id)
        if bank.course_id != enrollment.course_id:
            raise BankNotInCourse(bank_id, enrollment.course_id)
        return [a.to_dict() for a in await self.ledger.history(enrollment_id, bank_id)]

    async def get_eligibility(self, learner_id: int, enrollment_id: int) -> Dict[str, Any]:
        enrollment = await self._owned_enrollment(learner_id, enrollment_id, check_expiry=False)
        course = await self.db.get(Course, enrollment.course_id)
        policy = self.settings.policy_for(course.jurisdiction)
        decision = self.retakes.evaluate(enrollment, course.jurisdiction)
        blocking = await self._units_blocking_exam(enrollment_id)
        return {
            **decision.to_dict(),
            "enrollment_id": enrollment_id,
            "jurisdiction": policy.code,
            "exam_unlocked": not blocking,
            "policy_acknowledgment_required": policy.requires_policy_acknowledgment,
            "policy_acknowledged": enrollment.policy_acknowledged_at is not None,
            "expired": enrollment.is_expired(self.clock()),
        }

    async def get_progress(self, learner_id: int, enrollment_id: int) -> Dict[str, Any]:
        enrollment = await self._owned_enrollment(learner_id, enrollment_id, check_expiry=False)
        rows = await self.tracker.progress_rows(enrollment_id)

        units = []
        for unit, progress in rows:
            completion = await self.tracker.check_completion(enrollment_id, unit.id)
            units.append({
                "unit_id": unit.id,
                "sequence": unit.sequence,
                "title": unit.title,
                "status": progress.status.value,
                "is_locked": progress.status == UnitStatus.LOCKED,
                "lessons_completed": completion["lessons_completed"],
                "total_lessons": completion["total_lessons"],
                "quiz_passed": progress.quiz_passed,
                "quiz_score": progress.quiz_best_score,
                "quiz_attempts": progress.quiz_attempts,
                "time_spent_seconds": progress.time_spent_seconds,
            })

        return {
            "enrollment_id": enrollment.id,
            "course_id": enrollment.course_id,
            "progress": enrollment.progress,
            "hours_completed": enrollment.hours_completed,
            "total_time_seconds": enrollment.total_time_seconds,
            "current_unit_index": enrollment.current_unit_index,
            "final_exam_passed": enrollment.final_exam_passed,
            "final_exam_score": enrollment.final_exam_score,
            "final_exam_attempts": enrollment.final_exam_attempts,
            "completed": enrollment.completed,
            "completed_at": enrollment.completed_at,
            "expires_at": enrollment.expires_at,
            "units": units,
        }
