from datetime import date
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class Availability(BaseModel):
    days: List[str] = Field(default_factory=list)
    time_slots: List[str] = Field(default_factory=list)

    @field_validator("days")
    @classmethod
    def normalize_days(cls, days: List[str]) -> List[str]:
        normalized = []
        for day in days:
            name = day.strip().lower()
            if name not in WEEKDAYS:
                raise ValueError(f"Unknown weekday: {day}")
            if name not in normalized:
                normalized.append(name)
        return normalized

    @field_validator("time_slots")
    @classmethod
    def strip_slots(cls, slots: List[str]) -> List[str]:
        return [slot.strip() for slot in slots if slot.strip()]


class DoctorSummary(BaseModel):
    """Doctor projection embedded in a freshly booked appointment."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    specialization: str
    consultation_fee: float


class DoctorContact(DoctorSummary):
    email: str
    phone: Optional[str] = None


class DoctorPublic(DoctorContact):
    experience: Optional[int] = None
    qualifications: List[str] = Field(default_factory=list)
    age: Optional[int] = None
    gender: Optional[str] = None
    rating: float = 0
    total_patients: int = 0
    availability: Availability = Field(default_factory=Availability)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class DoctorListResponse(BaseModel):
    doctors: List[DoctorPublic]
    pagination: Pagination


class AvailableSlotsResponse(BaseModel):
    doctor_id: int
    date: date
    available_slots: List[str]
