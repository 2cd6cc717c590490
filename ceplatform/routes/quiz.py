"""
ceplatform/routes/quiz.py
Unit quiz and final exam attempt endpoints

- POST /api/quizzes/start                          open an attempt (rate limited)
- GET  /api/quizzes/attempts/{attempt_id}          resume an open attempt
- POST /api/quizzes/attempts/{attempt_id}/answers  submit one answer
- POST /api/quizzes/attempts/{attempt_id}/complete score and close the attempt
"""
import logging

from fastapi import APIRouter, Depends, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from ceplatform.config.settings import EngineSettings
from ceplatform.orm.user import User
from ceplatform.routes.deps import get_coordinator
from ceplatform.schemas.progression import (
    CompleteQuizRequest,
    CompleteQuizResponse,
    QuizSessionResponse,
    StartQuizRequest,
    SubmitAnswerRequest,
    SubmitAnswerResponse,
)
from ceplatform.security.identity import get_current_user
from ceplatform.services.progression_coordinator import ProgressionCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/quizzes", tags=["quizzes"])

limiter = Limiter(key_func=get_remote_address)
_limits = {"quiz_start": EngineSettings.quiz_start_rate_limit}


def configure_limiter(settings: EngineSettings) -> Limiter:
    """Apply the app's rate limit settings and clear recorded hits."""
    _limits["quiz_start"] = settings.quiz_start_rate_limit
    limiter.enabled = settings.rate_limit_enabled
    limiter.reset()
    return limiter


def _quiz_start_limit() -> str:
    return _limits["quiz_start"]


@router.post("/start", response_model=QuizSessionResponse)
@limiter.limit(_quiz_start_limit)
async def start_quiz(
    request: Request,
    payload: StartQuizRequest,
    current_user: User = Depends(get_current_user),
    coordinator: ProgressionCoordinator = Depends(get_coordinator)
):
    """
    Start a unit quiz or the final exam.

    The final exam consumes one regulated attempt; questions come back
    without correct answers or explanations.
    """
    return await coordinator.start_quiz(current_user.id, payload.enrollment_id, payload.bank_id)


@router.get("/attempts/{attempt_id}", response_model=QuizSessionResponse)
async def resume_quiz(
    attempt_id: int,
    current_user: User = Depends(get_current_user),
    coordinator: ProgressionCoordinator = Depends(get_coordinator)
):
    """Recover an open attempt after a page refresh."""
    return await coordinator.resume_quiz(current_user.id, attempt_id)


@router.post("/attempts/{attempt_id}/answers", response_model=SubmitAnswerResponse)
async def submit_answer(
    attempt_id: int,
    payload: SubmitAnswerRequest,
    current_user: User = Depends(get_current_user),
    coordinator: ProgressionCoordinator = Depends(get_coordinator)
):
    return await coordinator.submit_answer(
        current_user.id, attempt_id, payload.question_id, payload.selected_option
    )


@router.post("/attempts/{attempt_id}/complete", response_model=CompleteQuizResponse)
async def complete_quiz(
    attempt_id: int,
    payload: CompleteQuizRequest,
    current_user: User = Depends(get_current_user),
    coordinator: ProgressionCoordinator = Depends(get_coordinator)
):
    return await coordinator.complete_quiz(current_user.id, attempt_id, payload.time_spent_seconds)
