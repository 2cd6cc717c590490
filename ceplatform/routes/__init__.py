"""
ceplatform/routes/__init__.py
Route registration
"""
from fastapi import APIRouter

from ceplatform.errors import ErrorResponse
from ceplatform.routes import admin, enrollments, quiz

# Documented on every router; the handlers in main.py render these bodies
ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing or invalid bearer token"},
    403: {"model": ErrorResponse, "description": "Ownership, gating or retake limit"},
    404: {"model": ErrorResponse, "description": "Unknown resource"},
    409: {"model": ErrorResponse, "description": "Already completed or duplicate"},
}

router = APIRouter(responses=ERROR_RESPONSES)

router.include_router(enrollments.router)
router.include_router(quiz.router)
router.include_router(admin.router)
