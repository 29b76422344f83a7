from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Boolean, Text, Enum as SQLEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import enum

from ..core.database import Base

class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"

class ConsultationType(str, enum.Enum):
    VIDEO = "video"
    IN_PERSON = "in-person"
    PHONE = "phone"

# Statuses that hold a doctor's slot
ACTIVE_STATUSES = (AppointmentStatus.SCHEDULED, AppointmentStatus.ONGOING)

# Statuses from which an appointment can no longer be cancelled
TERMINAL_STATUSES = (AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED)

def _enum_values(enum_cls):
    return [member.value for member in enum_cls]

def slot_key(party_id: int, appointment_date, time_slot: str) -> str:
    """Key identifying one party's slot on one calendar day."""
    return f"{party_id}|{appointment_date.date().isoformat()}|{time_slot}"

class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, index=True)

    # Relationships
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False, index=True)

    # Appointment details
    appointment_date = Column(DateTime, nullable=False, index=True)
    time_slot = Column(String(50), nullable=False)
    status = Column(
        SQLEnum(AppointmentStatus, values_callable=_enum_values),
        default=AppointmentStatus.SCHEDULED,
        nullable=False
    )
    consultation_type = Column(
        SQLEnum(ConsultationType, values_callable=_enum_values),
        default=ConsultationType.VIDEO,
        nullable=False
    )
    symptoms = Column(Text, nullable=True)
    doctor_notes = Column(Text, nullable=True)
    meeting_link = Column(String(255), nullable=True)
    whatsapp_sent = Column(Boolean, default=False, nullable=False)

    # Rating, only set once the appointment is completed
    rating_score = Column(Integer, nullable=True)
    rating_feedback = Column(Text, nullable=True)

    # Non-null only while the appointment holds its slot (scheduled/ongoing).
    # The unique constraints reject a second active booking that slipped
    # past the conflict queries.
    doctor_slot_key = Column(String(120), unique=True, nullable=True)
    patient_slot_key = Column(String(120), unique=True, nullable=True)

    # Tracking
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    patient = relationship("Patient", back_populates="appointments")
    doctor = relationship("Doctor", back_populates="appointments")

    @property
    def rating(self):
        if self.rating_score is None:
            return None
        return {"score": self.rating_score, "feedback": self.rating_feedback}

    def hold_slot(self):
        self.doctor_slot_key = slot_key(self.doctor_id, self.appointment_date, self.time_slot)
        self.patient_slot_key = slot_key(self.patient_id, self.appointment_date, self.time_slot)

    def release_slot(self):
        self.doctor_slot_key = None
        self.patient_slot_key = None

    def __repr__(self):
        return f"<Appointment(id={self.id}, patient_id={self.patient_id}, doctor_id={self.doctor_id}, date='{self.appointment_date}', slot='{self.time_slot}')>"
