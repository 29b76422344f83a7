from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from ...core.database import get_db
from ...core.security import UserRole
from ...api.deps import get_current_user, rate_limit_check
from ...services.auth_service import AuthService
from ...schemas.auth import (
    DoctorRegister, PatientRegister, UserLogin, TokenResponse,
    UserResponse, RefreshTokenRequest
)
from ...models.user import User

router = APIRouter(prefix="/auth", tags=["Authentication"])

@router.post("/doctor/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def register_doctor(
    doctor_data: DoctorRegister,
    db: Session = Depends(get_db),
    _: None = Depends(rate_limit_check)
):
    """Register a new doctor."""
    auth_service = AuthService(db)
    user = auth_service.register_doctor(doctor_data)
    return UserResponse.model_validate(user)

@router.post("/doctor/login", response_model=TokenResponse)
async def login_doctor(
    login_data: UserLogin,
    db: Session = Depends(get_db)
):
    """Authenticate a doctor and return access tokens."""
    auth_service = AuthService(db)
    return auth_service.authenticate_user(login_data, UserRole.DOCTOR)

@router.post("/patient/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def register_patient(
    patient_data: PatientRegister,
    db: Session = Depends(get_db),
    _: None = Depends(rate_limit_check)
):
    """Register a new patient."""
    auth_service = AuthService(db)
    user = auth_service.register_patient(patient_data)
    return UserResponse.model_validate(user)

@router.post("/patient/login", response_model=TokenResponse)
async def login_patient(
    login_data: UserLogin,
    db: Session = Depends(get_db)
):
    """Authenticate a patient and return access tokens."""
    auth_service = AuthService(db)
    return auth_service.authenticate_user(login_data, UserRole.PATIENT)

@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(
    refresh_data: RefreshTokenRequest,
    db: Session = Depends(get_db)
):
    """Refresh access token using refresh token."""
    auth_service = AuthService(db)
    return auth_service.refresh_access_token(refresh_data.refresh_token)

@router.post("/logout")
async def logout(
    refresh_data: RefreshTokenRequest,
    db: Session = Depends(get_db)
):
    """Logout user by revoking refresh token."""
    auth_service = AuthService(db)
    success = auth_service.logout_user(refresh_data.refresh_token)

    return {"message": "Successfully logged out" if success else "Logout completed"}

@router.get("/me", response_model=UserResponse)
async def get_current_user_info(
    current_user: User = Depends(get_current_user)
):
    """Get current user information."""
    return UserResponse.model_validate(current_user)
