"""
ceplatform/routes/deps.py
Request-scoped service construction

Services are built per request from the session and the objects the
application factory placed on app.state (settings, publisher, clock, rng).
"""
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ceplatform.config.settings import EngineSettings
from ceplatform.database import get_db
from ceplatform.services.admin_override_service import AdminOverrideService
from ceplatform.services.enrollment_service import EnrollmentService
from ceplatform.services.progression_coordinator import ProgressionCoordinator


def get_settings(request: Request) -> EngineSettings:
    return request.app.state.settings


def get_coordinator(request: Request, db: AsyncSession = Depends(get_db)) -> ProgressionCoordinator:
    state = request.app.state
    return ProgressionCoordinator(
        db,
        state.settings,
        publisher=state.publisher,
        rng=state.rng,
        clock=state.clock,
    )


def get_enrollment_service(request: Request, db: AsyncSession = Depends(get_db)) -> EnrollmentService:
    return EnrollmentService(db, request.app.state.settings, clock=request.app.state.clock)


def get_admin_service(request: Request, db: AsyncSession = Depends(get_db)) -> AdminOverrideService:
    state = request.app.state
    return AdminOverrideService(db, state.settings, publisher=state.publisher, clock=state.clock)
