"""
ceplatform/routes/enrollments.py
Enrollment, lesson and progress endpoints

- POST /api/enrollments                                  create (idempotent)
- POST /api/enrollments/{id}/acknowledge-policy          course policy disclosure
- POST /api/enrollments/{id}/lessons/{lesson_id}/time     time heartbeat
- POST /api/enrollments/{id}/lessons/{lesson_id}/complete lesson completion
- GET  /api/enrollments/{id}/progress                     course progress
- GET  /api/enrollments/{id}/final-exam/eligibility       retake eligibility
- GET  /api/enrollments/{id}/banks/{bank_id}/attempts     attempt history
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, status

from ceplatform.errors import ForbiddenError, ErrorCode
from ceplatform.orm.user import User, UserRole
from ceplatform.routes.deps import get_coordinator, get_enrollment_service
from ceplatform.schemas.progression import (
    AttemptView,
    CourseProgressResponse,
    EligibilityResponse,
    EnrollmentCreate,
    EnrollmentResponse,
    LessonProgressResponse,
    LessonTimeRequest,
)
from ceplatform.security.identity import get_current_user
from ceplatform.services.enrollment_service import EnrollmentService
from ceplatform.services.progression_coordinator import ProgressionCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/enrollments", tags=["enrollments"])


@router.post("", response_model=EnrollmentResponse, status_code=status.HTTP_201_CREATED)
async def create_enrollment(
    payload: EnrollmentCreate,
    current_user: User = Depends(get_current_user),
    service: EnrollmentService = Depends(get_enrollment_service)
):
    """
    Register a learner in a course.

    Learners enroll themselves; admins (the checkout integration) may enroll
    any user. Repeating the call returns the existing active enrollment.
    """
    user_id = payload.user_id or current_user.id
    if user_id != current_user.id and current_user.role != UserRole.admin:
        raise ForbiddenError("You may only enroll yourself", code=ErrorCode.OWNERSHIP_VIOLATION)

    enrollment, created = await service.create_enrollment(user_id, payload.course_id)
    response = EnrollmentResponse.model_validate(enrollment)
    response.created = created
    return response


@router.post("/{enrollment_id}/acknowledge-policy", response_model=EnrollmentResponse)
async def acknowledge_policy(
    enrollment_id: int,
    current_user: User = Depends(get_current_user),
    service: EnrollmentService = Depends(get_enrollment_service)
):
    enrollment = await service.acknowledge_policy(current_user.id, enrollment_id)
    return EnrollmentResponse.model_validate(enrollment)


@router.post("/{enrollment_id}/lessons/{lesson_id}/time", response_model=LessonProgressResponse)
async def record_lesson_time(
    enrollment_id: int,
    lesson_id: int,
    payload: LessonTimeRequest,
    current_user: User = Depends(get_current_user),
    coordinator: ProgressionCoordinator = Depends(get_coordinator)
):
    return await coordinator.record_lesson_time(current_user.id, enrollment_id, lesson_id, payload.seconds)


@router.post("/{enrollment_id}/lessons/{lesson_id}/complete", response_model=LessonProgressResponse)
async def complete_lesson(
    enrollment_id: int,
    lesson_id: int,
    current_user: User = Depends(get_current_user),
    coordinator: ProgressionCoordinator = Depends(get_coordinator)
):
    return await coordinator.complete_lesson(current_user.id, enrollment_id, lesson_id)


@router.get("/{enrollment_id}/progress", response_model=CourseProgressResponse)
async def get_progress(
    enrollment_id: int,
    current_user: User = Depends(get_current_user),
    coordinator: ProgressionCoordinator = Depends(get_coordinator)
):
    return await coordinator.get_progress(current_user.id, enrollment_id)


@router.get("/{enrollment_id}/final-exam/eligibility", response_model=EligibilityResponse)
async def get_final_exam_eligibility(
    enrollment_id: int,
    current_user: User = Depends(get_current_user),
    coordinator: ProgressionCoordinator = Depends(get_coordinator)
):
    return await coordinator.get_eligibility(current_user.id, enrollment_id)


@router.get("/{enrollment_id}/banks/{bank_id}/attempts", response_model=List[AttemptView])
async def get_attempt_history(
    enrollment_id: int,
    bank_id: int,
    current_user: User = Depends(get_current_user),
    coordinator: ProgressionCoordinator = Depends(get_coordinator)
):
    return await coordinator.attempt_history(current_user.id, enrollment_id, bank_id)
