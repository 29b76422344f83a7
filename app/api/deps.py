from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from typing import Optional
from dataclasses import dataclass

from ..core.config import settings
from ..core.database import get_db, get_redis
from ..core.exceptions import ForbiddenError
from ..core.security import (
    security, verify_token, AuthenticationError, UserRole, TokenPayload
)
from ..models.user import User

@dataclass
class Requester:
    """The authenticated caller, reduced to the profile ids ownership checks use."""
    user_id: int
    role: UserRole
    patient_id: Optional[int] = None
    doctor_id: Optional[int] = None

async def get_current_user_token(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> TokenPayload:
    """Extract and verify JWT token from Authorization header."""
    token_payload = verify_token(credentials.credentials)
    if not token_payload:
        raise AuthenticationError("Invalid or expired token")

    if token_payload.token_type != "access":
        raise AuthenticationError("Invalid token type")

    return token_payload

async def get_current_user(
    token_payload: TokenPayload = Depends(get_current_user_token),
    db: Session = Depends(get_db)
) -> User:
    """Get current authenticated user from database."""
    if token_payload.user_id is None:
        raise AuthenticationError("Invalid token payload")

    user = db.query(User).filter(User.id == token_payload.user_id).first()
    if not user:
        raise AuthenticationError("User not found")

    if not user.is_active:
        raise AuthenticationError("User account is deactivated")

    return user

async def get_requester(
    current_user: User = Depends(get_current_user)
) -> Requester:
    """Resolve the current user to its doctor or patient profile."""
    profile_id = current_user.profile_id
    if profile_id is None:
        raise AuthenticationError("User has no profile")

    if current_user.role == UserRole.DOCTOR:
        return Requester(user_id=current_user.id, role=UserRole.DOCTOR, doctor_id=profile_id)
    return Requester(user_id=current_user.id, role=UserRole.PATIENT, patient_id=profile_id)

async def get_patient_requester(
    requester: Requester = Depends(get_requester)
) -> Requester:
    """Require a patient."""
    if requester.role != UserRole.PATIENT:
        raise ForbiddenError("Access denied. Required role: patient")
    return requester

async def get_doctor_requester(
    requester: Requester = Depends(get_requester)
) -> Requester:
    """Require a doctor."""
    if requester.role != UserRole.DOCTOR:
        raise ForbiddenError("Access denied. Required role: doctor")
    return requester

# Rate limiting dependency
async def rate_limit_check(
    request: Request,
    redis_client = Depends(get_redis)
) -> None:
    """Fixed-window rate limit per client IP for registration endpoints."""
    client_ip = request.client.host if request.client else "unknown"
    key = f"rate_limit:{client_ip}"

    current_requests = redis_client.get(key)
    if current_requests is None:
        redis_client.setex(key, settings.RATE_LIMIT_WINDOW_SECONDS, 1)
        return

    if int(current_requests) >= settings.RATE_LIMIT_REQUESTS:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests. Please try again later."
        )
    redis_client.incr(key)
