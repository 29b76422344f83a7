from sqlalchemy.orm import Session
from fastapi import HTTPException, status
from datetime import datetime, timedelta
from typing import Union
import hashlib
import logging

from ..core.config import settings
from ..models.doctor import Doctor
from ..models.patient import Patient
from ..models.user import User, RefreshToken
from ..core.security import (
    verify_password, get_password_hash, create_token_pair,
    verify_token, UserRole
)
from ..schemas.auth import (
    DoctorRegister, PatientRegister, UserLogin, TokenResponse, UserResponse
)

logger = logging.getLogger(__name__)

class AuthService:
    def __init__(self, db: Session):
        self.db = db

    def register_doctor(self, doctor_data: DoctorRegister) -> User:
        """Register a doctor account together with its profile."""
        user = self._create_user(doctor_data.email, doctor_data.password, UserRole.DOCTOR)

        doctor = Doctor(
            user=user,
            name=doctor_data.name,
            email=doctor_data.email,
            phone=doctor_data.phone,
            specialization=doctor_data.specialization,
            experience=doctor_data.experience,
            qualifications=doctor_data.qualifications,
            age=doctor_data.age,
            gender=doctor_data.gender,
            consultation_fee=doctor_data.consultation_fee,
            availability_days=doctor_data.availability.days,
            availability_time_slots=doctor_data.availability.time_slots,
            rating=0,
            total_patients=0
        )
        self.db.add(doctor)
        self.db.commit()
        self.db.refresh(user)

        logger.info(f"Registered doctor {doctor.id} ({doctor.specialization})")
        return user

    def register_patient(self, patient_data: PatientRegister) -> User:
        """Register a patient account together with its profile."""
        user = self._create_user(patient_data.email, patient_data.password, UserRole.PATIENT)

        patient = Patient(
            user=user,
            name=patient_data.name,
            email=patient_data.email,
            phone=patient_data.phone,
            age=patient_data.age,
            gender=patient_data.gender,
            blood_group=patient_data.blood_group,
            allergies=patient_data.allergies,
            emergency_contact=patient_data.emergency_contact,
            medical_history=patient_data.medical_history,
            current_medications=patient_data.current_medications
        )
        self.db.add(patient)
        self.db.commit()
        self.db.refresh(user)

        logger.info(f"Registered patient {patient.id}")
        return user

    def authenticate_user(self, login_data: UserLogin, role: UserRole) -> TokenResponse:
        """Authenticate a doctor or patient and return tokens."""
        user = self.db.query(User).filter(
            User.email == login_data.email
        ).first()

        if not user or user.role != role:
            self._handle_failed_login(user)
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid email or password"
            )

        # Check account lockout
        if user.locked_until and user.locked_until > datetime.utcnow():
            raise HTTPException(
                status_code=status.HTTP_423_LOCKED,
                detail="Account is temporarily locked"
            )

        if not verify_password(login_data.password, user.password_hash):
            self._handle_failed_login(user)
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid email or password"
            )

        if not user.is_active:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Account is deactivated"
            )

        # Reset failed login attempts
        user.failed_login_attempts = 0
        user.locked_until = None
        user.last_login = datetime.utcnow()

        return self._issue_tokens(user)

    def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        """Refresh access token using refresh token."""
        token_payload = verify_token(refresh_token)
        if not token_payload or token_payload.token_type != "refresh":
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid refresh token"
            )

        # Check if refresh token exists in database
        stored_token = self.db.query(RefreshToken).filter(
            RefreshToken.token_hash == _hash_token(refresh_token),
            RefreshToken.is_revoked == False,  # noqa: E712
            RefreshToken.expires_at > datetime.utcnow()
        ).first()

        if not stored_token:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or expired refresh token"
            )

        user = self.db.query(User).filter(
            User.id == token_payload.user_id
        ).first()

        if not user or not user.is_active:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="User not found or inactive"
            )

        return self._issue_tokens(user)

    def logout_user(self, refresh_token: str) -> bool:
        """Logout user by revoking refresh token."""
        stored_token = self.db.query(RefreshToken).filter(
            RefreshToken.token_hash == _hash_token(refresh_token)
        ).first()

        if not stored_token:
            return False

        stored_token.is_revoked = True
        self.db.commit()
        return True

    def _create_user(self, email: str, password: str, role: UserRole) -> User:
        existing_user = self.db.query(User).filter(User.email == email).first()

        if existing_user:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Email already registered"
            )

        user = User(
            email=email,
            password_hash=get_password_hash(password),
            role=role,
            is_active=True,
            failed_login_attempts=0
        )
        self.db.add(user)
        return user

    def _issue_tokens(self, user: User) -> TokenResponse:
        tokens = create_token_pair(user.id, user.email, user.role)

        # Only the most recent refresh token stays valid
        self.db.query(RefreshToken).filter(
            RefreshToken.user_id == user.id
        ).update({"is_revoked": True})

        token_payload = verify_token(tokens.refresh_token)
        self.db.add(RefreshToken(
            user_id=user.id,
            token_hash=_hash_token(tokens.refresh_token),
            expires_at=datetime.utcfromtimestamp(token_payload.exp)
        ))
        self.db.commit()
        self.db.refresh(user)

        return TokenResponse(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            expires_in=tokens.expires_in,
            user=UserResponse.model_validate(user)
        )

    def _handle_failed_login(self, user: Union[User, None]):
        """Count a failed attempt and lock the account past the threshold."""
        if not user:
            return

        user.failed_login_attempts = (user.failed_login_attempts or 0) + 1
        if user.failed_login_attempts >= settings.MAX_FAILED_LOGINS:
            user.locked_until = datetime.utcnow() + timedelta(minutes=settings.LOCKOUT_MINUTES)
            logger.warning(f"Locked user {user.id} after {user.failed_login_attempts} failed logins")

        self.db.commit()


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()
