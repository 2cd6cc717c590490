"""
ceplatform/security/identity.py
Bearer token identity

Tokens are issued by the external identity provider. This module only
verifies them (python-jose, shared secret from EngineSettings) and maps the
`sub` claim to a User row. create_access_token exists for tooling and tests.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from ceplatform.config.settings import EngineSettings
from ceplatform.database import get_db
from ceplatform.errors import APIError, ForbiddenError, ErrorCode
from ceplatform.orm.user import User, UserRole

logger = logging.getLogger(__name__)

ACCESS_TOKEN_EXPIRE_MINUTES = 60

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


class AuthError(APIError):
    """401 Unauthorized"""
    def __init__(self, message: str = "Invalid or expired token", code: str = ErrorCode.AUTH_INVALID):
        super().__init__(
            status_code=401,
            error="Unauthorized",
            message=message,
            code=code
        )


def create_access_token(
    user_id: int,
    settings: EngineSettings,
    role: Optional[str] = None,
    expires_delta: Optional[timedelta] = None
) -> str:
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {"sub": str(user_id), "exp": expire, "type": "access"}
    if role:
        to_encode["role"] = role
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: EngineSettings) -> Optional[dict]:
    """Decode and validate JWT token"""
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


async def get_current_user(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Authenticated user from the bearer token. 401 if missing or invalid."""
    if not token:
        raise AuthError("Authentication required", code=ErrorCode.AUTH_REQUIRED)

    payload = decode_token(token, request.app.state.settings)
    if not payload or payload.get("type") != "access":
        raise AuthError()

    subject = payload.get("sub")
    try:
        user_id = int(subject)
    except (TypeError, ValueError):
        raise AuthError()

    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        raise AuthError()

    return user


async def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != UserRole.admin:
        logger.warning(f"Access denied: User {current_user.id} with role {current_user.role} attempted admin action")
        raise ForbiddenError("This action requires the admin role", code=ErrorCode.FORBIDDEN)
    return current_user
