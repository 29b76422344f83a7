from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..models.appointment import AppointmentStatus, ConsultationType
from .doctor import DoctorContact, DoctorSummary, Pagination
from .patient import PatientDetail, PatientSummary


def _to_local_naive(value: datetime) -> datetime:
    # Day boundaries are computed in server local time
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


class AppointmentCreate(BaseModel):
    doctor_id: int
    appointment_date: datetime
    time_slot: str = Field(..., min_length=1, max_length=50)
    symptoms: Optional[str] = Field(None, max_length=2000)
    consultation_type: ConsultationType = ConsultationType.VIDEO

    @field_validator("appointment_date")
    @classmethod
    def local_date(cls, value: datetime) -> datetime:
        return _to_local_naive(value)


class AppointmentReschedule(BaseModel):
    appointment_date: datetime
    time_slot: str = Field(..., min_length=1, max_length=50)

    @field_validator("appointment_date")
    @classmethod
    def local_date(cls, value: datetime) -> datetime:
        return _to_local_naive(value)


class AppointmentUpdate(BaseModel):
    """Fields either party may send; the service applies a per-role allow-list."""
    model_config = ConfigDict(extra="forbid")

    symptoms: Optional[str] = Field(None, max_length=2000)
    consultation_type: Optional[ConsultationType] = None
    meeting_link: Optional[str] = Field(None, max_length=255)
    doctor_notes: Optional[str] = Field(None, max_length=5000)

    @field_validator("consultation_type")
    @classmethod
    def consultation_type_not_null(cls, value: Optional[ConsultationType]) -> ConsultationType:
        # Omit the field to leave it unchanged; the column is NOT NULL
        if value is None:
            raise ValueError("consultation_type cannot be null")
        return value


class AppointmentStatusUpdate(BaseModel):
    status: AppointmentStatus


class RatingCreate(BaseModel):
    score: int = Field(..., ge=1, le=5)
    feedback: Optional[str] = Field(None, max_length=1000)


class Rating(BaseModel):
    score: int
    feedback: Optional[str] = None


class AppointmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    doctor_id: int
    patient_id: int
    appointment_date: datetime
    time_slot: str
    status: AppointmentStatus
    consultation_type: ConsultationType
    symptoms: Optional[str] = None
    doctor_notes: Optional[str] = None
    meeting_link: Optional[str] = None
    whatsapp_sent: bool = False
    rating: Optional[Rating] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class BookedAppointment(AppointmentResponse):
    doctor: DoctorSummary
    patient: PatientSummary


class AppointmentDetail(AppointmentResponse):
    doctor: DoctorContact
    patient: PatientDetail


class DoctorAppointmentItem(AppointmentResponse):
    patient: PatientDetail


class DoctorAppointmentsPage(BaseModel):
    appointments: List[DoctorAppointmentItem]
    pagination: Pagination
