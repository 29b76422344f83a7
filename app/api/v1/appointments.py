from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy.orm import Session
from typing import Dict

from ...core.database import get_db
from ...api.deps import (
    Requester, get_requester, get_patient_requester, get_doctor_requester
)
from ...services.appointment_service import AppointmentService
from ...services.notification_service import send_booking_confirmation
from ...schemas.appointment import (
    AppointmentCreate, AppointmentDetail, AppointmentReschedule,
    AppointmentResponse, AppointmentStatusUpdate, AppointmentUpdate,
    BookedAppointment, RatingCreate
)

router = APIRouter(prefix="/appointments", tags=["Appointments"])

@router.post("", response_model=BookedAppointment, status_code=status.HTTP_201_CREATED)
async def book_appointment(
    booking: AppointmentCreate,
    background_tasks: BackgroundTasks,
    requester: Requester = Depends(get_patient_requester),
    db: Session = Depends(get_db)
):
    """Book an appointment for the requesting patient."""
    appointment = AppointmentService(db).book_appointment(
        doctor_id=booking.doctor_id,
        patient_id=requester.patient_id,
        appointment_date=booking.appointment_date,
        time_slot=booking.time_slot,
        symptoms=booking.symptoms,
        consultation_type=booking.consultation_type
    )
    response = BookedAppointment.model_validate(appointment)

    background_tasks.add_task(send_booking_confirmation, appointment.id)
    return response

@router.get("/stats", response_model=Dict[str, int])
async def get_appointment_stats(
    requester: Requester = Depends(get_requester),
    db: Session = Depends(get_db)
):
    """Appointment counts per status for the requesting doctor or patient."""
    return AppointmentService(db).get_appointment_stats(
        patient_id=requester.patient_id,
        doctor_id=requester.doctor_id
    )

@router.get("/{appointment_id}", response_model=AppointmentDetail)
async def get_appointment(
    appointment_id: int,
    requester: Requester = Depends(get_requester),
    db: Session = Depends(get_db)
):
    """Get an appointment the requester takes part in."""
    appointment = AppointmentService(db).get_appointment(
        appointment_id,
        requester_patient_id=requester.patient_id,
        requester_doctor_id=requester.doctor_id
    )
    return AppointmentDetail.model_validate(appointment)

@router.put("/{appointment_id}", response_model=AppointmentResponse)
async def update_appointment(
    appointment_id: int,
    update: AppointmentUpdate,
    requester: Requester = Depends(get_requester),
    db: Session = Depends(get_db)
):
    """Update the fields the requester's role may edit."""
    appointment = AppointmentService(db).update_appointment(
        appointment_id,
        update.model_dump(exclude_unset=True),
        requester_patient_id=requester.patient_id,
        requester_doctor_id=requester.doctor_id
    )
    return AppointmentResponse.model_validate(appointment)

@router.patch("/{appointment_id}/cancel", response_model=AppointmentResponse)
async def cancel_appointment(
    appointment_id: int,
    requester: Requester = Depends(get_requester),
    db: Session = Depends(get_db)
):
    """Cancel a scheduled or ongoing appointment."""
    appointment = AppointmentService(db).cancel_appointment(
        appointment_id,
        requester_patient_id=requester.patient_id,
        requester_doctor_id=requester.doctor_id
    )
    return AppointmentResponse.model_validate(appointment)

@router.patch("/{appointment_id}/status", response_model=AppointmentResponse)
async def update_appointment_status(
    appointment_id: int,
    status_update: AppointmentStatusUpdate,
    requester: Requester = Depends(get_doctor_requester),
    db: Session = Depends(get_db)
):
    """Move an appointment to ongoing, completed or no-show."""
    appointment = AppointmentService(db).update_status(
        appointment_id, requester.doctor_id, status_update.status
    )
    return AppointmentResponse.model_validate(appointment)

@router.patch("/{appointment_id}/reschedule", response_model=AppointmentResponse)
async def reschedule_appointment(
    appointment_id: int,
    reschedule: AppointmentReschedule,
    background_tasks: BackgroundTasks,
    requester: Requester = Depends(get_requester),
    db: Session = Depends(get_db)
):
    """Move a scheduled appointment to another date or slot."""
    appointment = AppointmentService(db).reschedule_appointment(
        appointment_id,
        reschedule.appointment_date,
        reschedule.time_slot,
        requester_patient_id=requester.patient_id,
        requester_doctor_id=requester.doctor_id
    )
    response = AppointmentResponse.model_validate(appointment)

    background_tasks.add_task(send_booking_confirmation, appointment.id)
    return response

@router.post("/{appointment_id}/rate", response_model=AppointmentResponse)
async def rate_appointment(
    appointment_id: int,
    rating: RatingCreate,
    requester: Requester = Depends(get_requester),
    db: Session = Depends(get_db)
):
    """Rate a completed appointment."""
    appointment = AppointmentService(db).rate_appointment(
        appointment_id,
        requester.patient_id,
        rating.score,
        rating.feedback
    )
    return AppointmentResponse.model_validate(appointment)
