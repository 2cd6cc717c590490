"""
ceplatform/schemas/progression.py
Request/response models for the progression API
"""
from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ceplatform.orm.unit_progress import UnitStatus


# ================= REQUESTS =================

class EnrollmentCreate(BaseModel):
    """Enrollment-created event from checkout. user_id defaults to the caller."""
    course_id: int = Field(..., gt=0)
    user_id: Optional[int] = Field(default=None, gt=0, description="Admin/service callers only")


class LessonTimeRequest(BaseModel):
    seconds: int = Field(..., ge=0, le=86400, description="Seconds since the last heartbeat")


class StartQuizRequest(BaseModel):
    enrollment_id: int = Field(..., gt=0)
    bank_id: int = Field(..., gt=0)


class SubmitAnswerRequest(BaseModel):
    question_id: int = Field(..., gt=0)
    selected_option: int = Field(..., ge=0, description="Zero-based option index")


class CompleteQuizRequest(BaseModel):
    time_spent_seconds: Optional[int] = Field(default=None, ge=0)


class AdminResetRequest(BaseModel):
    reason: str = Field(..., min_length=3, max_length=500)


class UnitOverrideRequest(BaseModel):
    status: UnitStatus
    reason: str = Field(..., min_length=3, max_length=500)


# ================= RESPONSES =================

class EnrollmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    course_id: int
    enrolled_at: datetime
    expires_at: Optional[datetime] = None
    progress: int
    hours_completed: int
    current_unit_index: int
    final_exam_passed: bool
    final_exam_attempts: int
    policy_acknowledged_at: Optional[datetime] = None
    completed: bool
    completed_at: Optional[datetime] = None
    reset_count: int = 0
    created: Optional[bool] = None


class LessonProgressResponse(BaseModel):
    enrollment_id: int
    lesson_id: int
    time_spent_seconds: int
    completed: bool
    total_time_seconds: Optional[int] = None
    progress: Optional[int] = None
    hours_completed: Optional[int] = None


class SanitizedQuestion(BaseModel):
    """A question as shown to the learner: no correct option, no explanation."""
    id: int
    prompt: str
    options: List[str]


class QuizSessionResponse(BaseModel):
    attempt_id: int
    enrollment_id: int
    bank_id: int
    bank_type: str
    exam_form: Optional[str] = None
    attempt_number: Optional[int] = None
    total_questions: int
    passing_score: int
    time_limit_minutes: Optional[int] = None
    started_at: datetime
    deadline: Optional[datetime] = None
    questions: List[SanitizedQuestion]
    answered_question_ids: List[int] = Field(default_factory=list)


class AnswerFeedback(BaseModel):
    is_correct: bool
    correct_option: int
    explanation: Optional[str] = None


class SubmitAnswerResponse(BaseModel):
    attempt_id: int
    question_id: int
    selected_option: int
    recorded: bool
    feedback: Optional[AnswerFeedback] = None


class AttemptView(BaseModel):
    id: int
    enrollment_id: int
    bank_id: int
    total_questions: int
    correct_answers: int
    score: int
    passed: bool
    exam_form: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    time_spent_seconds: Optional[int] = None


class EligibilityResponse(BaseModel):
    permitted: bool
    reason: Optional[str] = None
    form_to_use: Optional[str] = None
    attempts_used: int
    attempts_remaining: int
    max_attempts: int
    retest_eligible_date: Optional[date] = None
    course_repeat_required: bool = False
    window_closes_on: Optional[date] = None
    enrollment_id: Optional[int] = None
    jurisdiction: Optional[str] = None
    exam_unlocked: Optional[bool] = None
    policy_acknowledgment_required: Optional[bool] = None
    policy_acknowledged: Optional[bool] = None
    expired: Optional[bool] = None


class CompleteQuizResponse(BaseModel):
    attempt: AttemptView
    score: int
    passed: bool
    passing_score: int
    unlocked_unit_id: Optional[int] = None
    course_completed: bool = False
    eligibility: Optional[EligibilityResponse] = None


class UnitProgressView(BaseModel):
    unit_id: int
    sequence: int
    title: str
    status: str
    is_locked: bool
    lessons_completed: int
    total_lessons: int
    quiz_passed: bool
    quiz_score: Optional[int] = None
    quiz_attempts: int
    time_spent_seconds: int


class CourseProgressResponse(BaseModel):
    enrollment_id: int
    course_id: int
    progress: int
    hours_completed: int
    total_time_seconds: int
    current_unit_index: int
    final_exam_passed: bool
    final_exam_score: Optional[int] = None
    final_exam_attempts: int
    completed: bool
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    units: List[UnitProgressView]


class IntegrityViolation(BaseModel):
    model_config = ConfigDict(extra="allow")

    check: str
    message: str


class IntegrityReport(BaseModel):
    enrollment_id: int
    ok: bool
    violations: List[IntegrityViolation]
    checked_at: datetime


class UnitOverrideResponse(BaseModel):
    enrollment_id: int
    unit_id: int
    status: str
    quiz_passed: bool
