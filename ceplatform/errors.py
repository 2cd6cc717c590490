"""
ceplatform/errors.py
Centralized error handling for the progression engine

Rules:
- Every rejection carries a stable, machine-readable reason code
- Regulatory gating errors carry the exact date the action becomes permitted
- Integrity violations are rejected idempotently ("already done"), never
  allowed to corrupt state
- Bad input never surfaces as a 500

Envelope returned for every failure:
{
    "success": false,
    "error": "Forbidden",
    "message": "Retest available on 2026-11-16",
    "code": "COOLDOWN_ACTIVE",
    "details": {} (optional, e.g. {"eligible_at": "2026-11-16"})
}

Status codes:
- 400: Invalid input
- 401: No token, or the token failed verification
- 403: Ownership / scope violation, precondition or limit gate
- 404: Unknown enrollment, bank, attempt or lesson
- 409: Integrity violation (already completed, duplicate)
- 422: Validation error (pydantic)
- 503: Configuration problem on the authoring side (bank too small)
"""

import logging
from datetime import date, datetime
from typing import Optional, Dict, Any

from fastapi import status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ErrorCode:
    """Reason codes clients switch on"""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"

    AUTH_REQUIRED = "AUTH_REQUIRED"
    AUTH_INVALID = "AUTH_INVALID"

    FORBIDDEN = "FORBIDDEN"
    OWNERSHIP_VIOLATION = "OWNERSHIP_VIOLATION"

    NOT_FOUND = "NOT_FOUND"
    ENROLLMENT_NOT_FOUND = "ENROLLMENT_NOT_FOUND"
    COURSE_NOT_FOUND = "COURSE_NOT_FOUND"
    UNIT_NOT_FOUND = "UNIT_NOT_FOUND"
    LESSON_NOT_FOUND = "LESSON_NOT_FOUND"
    BANK_NOT_FOUND = "BANK_NOT_FOUND"
    ATTEMPT_NOT_FOUND = "ATTEMPT_NOT_FOUND"

    # Precondition violations
    UNIT_LOCKED = "UNIT_LOCKED"
    ENROLLMENT_EXPIRED = "ENROLLMENT_EXPIRED"
    BANK_NOT_IN_COURSE = "BANK_NOT_IN_COURSE"
    LESSONS_INCOMPLETE = "LESSONS_INCOMPLETE"
    MINIMUM_TIME_NOT_MET = "MINIMUM_TIME_NOT_MET"
    EXAM_LOCKED = "EXAM_LOCKED"
    POLICY_NOT_ACKNOWLEDGED = "POLICY_NOT_ACKNOWLEDGED"

    # Limit violations
    ATTEMPT_LIMIT_EXCEEDED = "ATTEMPT_LIMIT_EXCEEDED"
    COOLDOWN_ACTIVE = "COOLDOWN_ACTIVE"
    COURSE_REPEAT_REQUIRED = "COURSE_REPEAT_REQUIRED"
    FINAL_EXAM_ALREADY_PASSED = "FINAL_EXAM_ALREADY_PASSED"
    ATTEMPT_TIME_EXPIRED = "ATTEMPT_TIME_EXPIRED"

    # Integrity violations
    ATTEMPT_ALREADY_COMPLETED = "ATTEMPT_ALREADY_COMPLETED"
    ANSWER_ALREADY_SUBMITTED = "ANSWER_ALREADY_SUBMITTED"
    DUPLICATE_OPEN_ATTEMPT = "DUPLICATE_OPEN_ATTEMPT"
    UNKNOWN_QUESTION = "UNKNOWN_QUESTION"
    INVALID_OPTION = "INVALID_OPTION"
    RESERVATION_CONFLICT = "RESERVATION_CONFLICT"

    # Resource exhaustion
    INSUFFICIENT_QUESTIONS = "INSUFFICIENT_QUESTIONS"
    EXAM_FORM_UNAVAILABLE = "EXAM_FORM_UNAVAILABLE"

    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorResponse(BaseModel):
    """Shape of the failure envelope, used in OpenAPI responses"""
    success: bool = False
    error: str
    message: str
    code: str
    details: Optional[Dict[str, Any]] = None


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class APIError(Exception):
    """Raised anywhere below the routes; rendered into the envelope by main.py"""

    def __init__(
        self,
        status_code: int,
        error: str,
        message: str,
        code: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.status_code = status_code
        self.error = error
        self.message = message
        self.code = code
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "success": False,
            "error": self.error,
            "message": self.message,
            "code": self.code
        }
        if self.details:
            result["details"] = _jsonable(self.details)
        return result

    def to_response(self) -> JSONResponse:
        """JSONResponse carrying this error's status code"""
        return JSONResponse(status_code=self.status_code, content=self.to_dict())


class BadRequestError(APIError):
    """400 - malformed or contradictory request"""
    def __init__(self, message: str, code: str = ErrorCode.INVALID_INPUT, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="Bad Request",
            message=message,
            code=code,
            details=details
        )


class ForbiddenError(APIError):
    """403 - caller may not act on this resource"""
    def __init__(self, message: str, code: str = ErrorCode.FORBIDDEN, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            error="Forbidden",
            message=message,
            code=code,
            details=details
        )


class NotFoundError(APIError):
    """404"""
    def __init__(self, resource: str, identifier: Any = None, code: str = ErrorCode.NOT_FOUND):
        message = f"{resource} not found"
        if identifier is not None:
            message = f"{resource} with id '{identifier}' not found"
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            error="Not Found",
            message=message,
            code=code
        )


class PreconditionError(APIError):
    """403 - A gating precondition blocks the action (never retried)"""
    def __init__(self, message: str, code: str, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            error="Precondition Failed",
            message=message,
            code=code,
            details=details
        )


class LimitError(APIError):
    """403 - A regulatory limit blocks the action; carries eligible_at where one exists"""
    def __init__(
        self,
        message: str,
        code: str,
        eligible_at: Optional[date] = None,
        details: Optional[Dict] = None
    ):
        details = dict(details or {})
        if eligible_at is not None:
            details["eligible_at"] = eligible_at
        self.eligible_at = eligible_at
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            error="Limit Reached",
            message=message,
            code=code,
            details=details or None
        )


class IntegrityViolationError(APIError):
    """409 Conflict - The action was already done or would corrupt state"""
    def __init__(self, message: str, code: str, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error="Conflict",
            message=message,
            code=code,
            details=details
        )


class ResourceExhaustedError(APIError):
    """503 - Content configuration cannot satisfy the request"""
    def __init__(self, message: str, code: str, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error="Content Configuration Error",
            message=message,
            code=code,
            details=details
        )


# =============================================================================
# Named engine errors
# =============================================================================

class UnitLocked(PreconditionError):
    def __init__(self, unit_id: int, sequence: Optional[int] = None):
        super().__init__(
            "This unit is locked. Complete the previous unit's quiz to unlock it.",
            ErrorCode.UNIT_LOCKED,
            {"unit_id": unit_id, "sequence": sequence}
        )


class EnrollmentExpired(PreconditionError):
    def __init__(self, enrollment_id: int, expired_at: datetime):
        super().__init__(
            "This enrollment has expired.",
            ErrorCode.ENROLLMENT_EXPIRED,
            {"enrollment_id": enrollment_id, "expired_at": expired_at}
        )


class BankNotInCourse(PreconditionError):
    def __init__(self, bank_id: int, course_id: int):
        super().__init__(
            "This question bank is not part of the enrolled course.",
            ErrorCode.BANK_NOT_IN_COURSE,
            {"bank_id": bank_id, "course_id": course_id}
        )


class LessonsIncomplete(PreconditionError):
    def __init__(self, unit_id: int, lessons_completed: int, total_lessons: int):
        super().__init__(
            "Complete every lesson in this unit before taking the quiz.",
            ErrorCode.LESSONS_INCOMPLETE,
            {"unit_id": unit_id, "lessons_completed": lessons_completed, "total_lessons": total_lessons}
        )


class MinimumTimeNotMet(PreconditionError):
    def __init__(self, lesson_id: int, time_spent_seconds: int, required_seconds: int):
        super().__init__(
            f"At least {required_seconds} seconds must be spent on this lesson before it can be completed.",
            ErrorCode.MINIMUM_TIME_NOT_MET,
            {
                "lesson_id": lesson_id,
                "time_spent_seconds": time_spent_seconds,
                "required_seconds": required_seconds,
            }
        )


class ExamLocked(PreconditionError):
    def __init__(self, incomplete_unit_ids):
        super().__init__(
            "The final exam unlocks after every unit is completed.",
            ErrorCode.EXAM_LOCKED,
            {"incomplete_unit_ids": list(incomplete_unit_ids)}
        )


class PolicyNotAcknowledged(PreconditionError):
    def __init__(self, enrollment_id: int):
        super().__init__(
            "The course exam policy must be acknowledged before starting the final exam.",
            ErrorCode.POLICY_NOT_ACKNOWLEDGED,
            {"enrollment_id": enrollment_id}
        )


class AttemptLimitExceeded(LimitError):
    def __init__(self, max_attempts: int, course_repeat_required: bool = False):
        super().__init__(
            f"The maximum of {max_attempts} final exam attempts has been used.",
            ErrorCode.ATTEMPT_LIMIT_EXCEEDED,
            details={"max_attempts": max_attempts, "course_repeat_required": course_repeat_required}
        )


class CooldownActive(LimitError):
    def __init__(self, eligible_at: date, cooldown_days: int):
        super().__init__(
            f"A {cooldown_days} day waiting period applies after an unsuccessful attempt.",
            ErrorCode.COOLDOWN_ACTIVE,
            eligible_at=eligible_at,
            details={"cooldown_days": cooldown_days}
        )


class CourseRepeatRequired(LimitError):
    def __init__(self, window_closed_at: Optional[date] = None):
        super().__init__(
            "The retake window has closed. The course must be repeated with a new enrollment.",
            ErrorCode.COURSE_REPEAT_REQUIRED,
            details={"window_closed_at": window_closed_at}
        )


class FinalExamAlreadyPassed(LimitError):
    def __init__(self, enrollment_id: int):
        super().__init__(
            "The final exam has already been passed.",
            ErrorCode.FINAL_EXAM_ALREADY_PASSED,
            details={"enrollment_id": enrollment_id}
        )


class AttemptTimeExpired(LimitError):
    def __init__(self, attempt_id: int, deadline: datetime):
        super().__init__(
            "The time limit for this attempt has passed. Complete the attempt to record your score.",
            ErrorCode.ATTEMPT_TIME_EXPIRED,
            details={"attempt_id": attempt_id, "deadline": deadline}
        )


class AttemptAlreadyCompleted(IntegrityViolationError):
    def __init__(self, attempt_id: int):
        super().__init__(
            "This attempt is already completed.",
            ErrorCode.ATTEMPT_ALREADY_COMPLETED,
            {"attempt_id": attempt_id}
        )


class AnswerAlreadySubmitted(IntegrityViolationError):
    def __init__(self, attempt_id: int, question_id: int):
        super().__init__(
            "This question was already answered in this attempt.",
            ErrorCode.ANSWER_ALREADY_SUBMITTED,
            {"attempt_id": attempt_id, "question_id": question_id}
        )


class DuplicateOpenAttempt(IntegrityViolationError):
    def __init__(self, attempt_id: int, bank_id: int):
        super().__init__(
            "An attempt for this quiz is already open. Resume or complete it first.",
            ErrorCode.DUPLICATE_OPEN_ATTEMPT,
            {"attempt_id": attempt_id, "bank_id": bank_id}
        )


class UnknownQuestion(IntegrityViolationError):
    def __init__(self, attempt_id: int, question_id: int):
        super().__init__(
            "This question is not part of the attempt.",
            ErrorCode.UNKNOWN_QUESTION,
            {"attempt_id": attempt_id, "question_id": question_id}
        )


class InvalidOption(BadRequestError):
    def __init__(self, question_id: int, selected_option: int, option_count: int):
        super().__init__(
            "Selected option is out of range for this question.",
            ErrorCode.INVALID_OPTION,
            {"question_id": question_id, "selected_option": selected_option, "option_count": option_count}
        )


class ReservationConflict(IntegrityViolationError):
    def __init__(self, enrollment_id: int, retries: int):
        super().__init__(
            "Could not reserve a final exam attempt. Please try again.",
            ErrorCode.RESERVATION_CONFLICT,
            {"enrollment_id": enrollment_id, "retries": retries}
        )


class InsufficientQuestions(ResourceExhaustedError):
    def __init__(self, bank_id: int, available: int, requested: int):
        super().__init__(
            "The question bank does not have enough active questions.",
            ErrorCode.INSUFFICIENT_QUESTIONS,
            {"bank_id": bank_id, "available": available, "requested": requested}
        )


class ExamFormUnavailable(ResourceExhaustedError):
    def __init__(self, course_id: int, exam_form: str):
        super().__init__(
            f"No active final exam bank exists for form {exam_form}.",
            ErrorCode.EXAM_FORM_UNAVAILABLE,
            {"course_id": course_id, "exam_form": exam_form}
        )


def get_error_summary() -> Dict[str, Any]:
    """Envelope shape and known codes, served at /api/errors/health"""
    return {
        "service": "progression-engine-errors",
        "response_structure": {
            "success": "false",
            "error": "short status name",
            "message": "text safe to show a learner",
            "code": "one of error_codes",
            "details": "object (optional, eligible_at for regulatory gates)"
        },
        "error_codes": [
            attr for attr in dir(ErrorCode)
            if not attr.startswith('_')
        ]
    }
