from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from datetime import date
from typing import Optional

from ...core.database import get_db
from ...core.exceptions import ForbiddenError
from ...api.deps import Requester, get_doctor_requester
from ...models.appointment import AppointmentStatus
from ...services.appointment_service import AppointmentService
from ...services.doctor_service import DoctorService
from ...schemas.appointment import DoctorAppointmentItem, DoctorAppointmentsPage
from ...schemas.doctor import (
    AvailableSlotsResponse, DoctorListResponse, DoctorPublic, Pagination
)

router = APIRouter(prefix="/doctors", tags=["Doctors"])

@router.get("", response_model=DoctorListResponse)
async def list_doctors(
    specialization: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db)
):
    """List doctors, optionally filtered by specialization."""
    doctors, pagination = DoctorService(db).list_doctors(specialization, page, limit)
    return DoctorListResponse(
        doctors=[DoctorPublic.model_validate(doctor) for doctor in doctors],
        pagination=Pagination(**pagination)
    )

@router.get("/{doctor_id}", response_model=DoctorPublic)
async def get_doctor(
    doctor_id: int,
    db: Session = Depends(get_db)
):
    """Get a doctor's public profile."""
    return DoctorPublic.model_validate(DoctorService(db).get_doctor(doctor_id))

@router.get("/{doctor_id}/available-slots", response_model=AvailableSlotsResponse)
async def get_available_slots(
    doctor_id: int,
    on_date: date = Query(..., alias="date"),
    db: Session = Depends(get_db)
):
    """Free slots of a doctor on a given date."""
    slots = DoctorService(db).get_available_slots(doctor_id, on_date)
    return AvailableSlotsResponse(doctor_id=doctor_id, date=on_date, available_slots=slots)

@router.get("/{doctor_id}/appointments", response_model=DoctorAppointmentsPage)
async def get_doctor_appointments(
    doctor_id: int,
    status: Optional[AppointmentStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    requester: Requester = Depends(get_doctor_requester),
    db: Session = Depends(get_db)
):
    """Paginated appointments of the requesting doctor."""
    if requester.doctor_id != doctor_id:
        raise ForbiddenError("Doctors can only list their own appointments")

    appointments, pagination = AppointmentService(db).get_doctor_appointments(
        doctor_id, status=status, page=page, limit=limit
    )
    return DoctorAppointmentsPage(
        appointments=[DoctorAppointmentItem.model_validate(a) for a in appointments],
        pagination=Pagination(**pagination)
    )
