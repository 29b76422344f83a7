from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from ..core.security import UserRole
from .doctor import Availability


def _check_password_strength(password: str) -> str:
    if len(password) < 8:
        raise ValueError("Password must be at least 8 characters long")
    if not any(ch.isdigit() for ch in password):
        raise ValueError("Password must contain at least one digit")
    if not any(ch.isalpha() for ch in password):
        raise ValueError("Password must contain at least one letter")
    return password


class DoctorRegister(BaseModel):
    name: str = Field(..., min_length=2, max_length=200)
    email: EmailStr
    phone: Optional[str] = Field(None, max_length=20)
    password: str
    specialization: str = Field(..., min_length=2, max_length=100)
    experience: Optional[int] = Field(None, ge=0, le=80)
    qualifications: List[str] = Field(default_factory=list)
    age: Optional[int] = Field(None, ge=21, le=100)
    gender: Optional[str] = Field(None, max_length=20)
    consultation_fee: float = Field(..., ge=0)
    availability: Availability = Field(default_factory=Availability)

    @field_validator("password")
    @classmethod
    def password_strength(cls, password: str) -> str:
        return _check_password_strength(password)


class PatientRegister(BaseModel):
    name: str = Field(..., min_length=2, max_length=200)
    email: EmailStr
    phone: str = Field(..., min_length=7, max_length=20)
    password: str
    age: Optional[int] = Field(None, ge=0, le=130)
    gender: Optional[str] = Field(None, max_length=20)
    blood_group: Optional[str] = Field(None, max_length=10)
    allergies: List[str] = Field(default_factory=list)
    emergency_contact: Dict[str, str] = Field(default_factory=dict)
    medical_history: List[str] = Field(default_factory=list)
    current_medications: List[str] = Field(default_factory=list)

    @field_validator("password")
    @classmethod
    def password_strength(cls, password: str) -> str:
        return _check_password_strength(password)


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class RefreshTokenRequest(BaseModel):
    refresh_token: str


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: EmailStr
    role: UserRole
    is_active: bool
    name: Optional[str] = None
    profile_id: Optional[int] = None
    created_at: Optional[datetime] = None


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse
