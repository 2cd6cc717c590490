"""
ceplatform/routes/admin.py
Administrative progression endpoints (admin role only)

Every write here is audited in progress_audit_logs.
"""
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ceplatform.database import get_db
from ceplatform.orm.user import User
from ceplatform.routes.deps import get_admin_service
from ceplatform.schemas.progression import (
    AdminResetRequest,
    EnrollmentResponse,
    IntegrityReport,
    UnitOverrideRequest,
    UnitOverrideResponse,
)
from ceplatform.security.identity import require_admin
from ceplatform.services.admin_override_service import AdminOverrideService
from ceplatform.services.integrity_service import verify_enrollment_integrity

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.post("/enrollments/{enrollment_id}/reset", response_model=EnrollmentResponse)
async def reset_enrollment(
    enrollment_id: int,
    payload: AdminResetRequest,
    admin: User = Depends(require_admin),
    service: AdminOverrideService = Depends(get_admin_service)
):
    enrollment = await service.reset_enrollment(enrollment_id, admin.id, payload.reason)
    return EnrollmentResponse.model_validate(enrollment)


@router.post("/enrollments/{enrollment_id}/units/{unit_id}/status", response_model=UnitOverrideResponse)
async def override_unit_status(
    enrollment_id: int,
    unit_id: int,
    payload: UnitOverrideRequest,
    admin: User = Depends(require_admin),
    service: AdminOverrideService = Depends(get_admin_service)
):
    progress = await service.override_unit_status(
        enrollment_id, unit_id, payload.status, admin.id, payload.reason
    )
    return UnitOverrideResponse(
        enrollment_id=enrollment_id,
        unit_id=unit_id,
        status=progress.status.value,
        quiz_passed=progress.quiz_passed,
    )


@router.get("/enrollments/{enrollment_id}/integrity", response_model=IntegrityReport)
async def check_integrity(
    enrollment_id: int,
    request: Request,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    return await verify_enrollment_integrity(
        db, request.app.state.settings, enrollment_id, clock=request.app.state.clock
    )


@router.get("/enrollments/{enrollment_id}/audit")
async def get_audit_log(
    enrollment_id: int,
    admin: User = Depends(require_admin),
    service: AdminOverrideService = Depends(get_admin_service)
):
    entries = await service.audit_log(enrollment_id)
    return {"enrollment_id": enrollment_id, "entries": [e.to_dict() for e in entries]}
