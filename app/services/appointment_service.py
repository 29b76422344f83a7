from sqlalchemy.orm import Session, joinedload
from sqlalchemy.exc import IntegrityError
from sqlalchemy import func
from datetime import datetime, time
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Tuple
import logging
import math
import uuid

from ..core.config import settings
from ..core.exceptions import (
    ForbiddenError, InvalidDateError, InvalidStateTransitionError,
    NotFoundError, SlotConflictError, ValidationFailedError
)
from ..models.appointment import (
    Appointment, AppointmentStatus, ConsultationType,
    ACTIVE_STATUSES, TERMINAL_STATUSES
)
from ..models.doctor import Doctor
from ..models.patient import Patient

logger = logging.getLogger(__name__)

# AppointmentStatus has no "confirmed" member, so the patient guard needs no
# extra status and matches the doctor guard
DOCTOR_BLOCKING_STATUSES = ACTIVE_STATUSES
PATIENT_BLOCKING_STATUSES = ACTIVE_STATUSES

PATIENT_UPDATABLE_FIELDS = frozenset({"symptoms", "consultation_type"})
DOCTOR_UPDATABLE_FIELDS = frozenset({"meeting_link", "doctor_notes"})

STATUS_TRANSITIONS = {
    AppointmentStatus.SCHEDULED: {
        AppointmentStatus.ONGOING,
        AppointmentStatus.COMPLETED,
        AppointmentStatus.NO_SHOW,
    },
    AppointmentStatus.ONGOING: {
        AppointmentStatus.COMPLETED,
        AppointmentStatus.NO_SHOW,
    },
}

STATS_KEYS = ("total", "scheduled", "completed", "cancelled", "ongoing", "no-show")


def day_bounds(value: datetime) -> Tuple[datetime, datetime]:
    """Return the first and last instant of the calendar day holding value."""
    day = value.date()
    return (
        datetime.combine(day, time.min),
        datetime.combine(day, time(23, 59, 59, 999000)),
    )


def average_rating(scores: Iterable[int]) -> float:
    """Mean of scores rounded half away from zero to one decimal; 0 when empty."""
    scores = list(scores)
    if not scores:
        return 0.0
    mean = Decimal(sum(scores)) / Decimal(len(scores))
    return float(mean.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def generate_meeting_link() -> str:
    return f"{settings.MEETING_BASE_URL.rstrip('/')}/consult-{uuid.uuid4().hex[:12]}"


class AppointmentService:
    def __init__(self, db: Session):
        self.db = db

    # Booking

    def book_appointment(
        self,
        doctor_id: int,
        patient_id: int,
        appointment_date: datetime,
        time_slot: str,
        symptoms: Optional[str] = None,
        consultation_type: ConsultationType = ConsultationType.VIDEO
    ) -> Appointment:
        """Book a slot for a patient with a doctor.

        The doctor-side conflict check runs before the patient-side one. The
        confirmation message is sent separately, see
        ``notification_service.send_booking_confirmation``.
        """
        doctor = self.db.query(Doctor).filter(Doctor.id == doctor_id).first()
        if not doctor:
            raise NotFoundError("Selected doctor not found")

        patient = self.db.query(Patient).filter(Patient.id == patient_id).first()
        if not patient:
            raise NotFoundError("Patient profile not found")

        self._ensure_future(appointment_date)
        self._ensure_slot_free(doctor_id, patient_id, appointment_date, time_slot)

        appointment = Appointment(
            doctor_id=doctor_id,
            patient_id=patient_id,
            appointment_date=appointment_date,
            time_slot=time_slot,
            symptoms=symptoms,
            consultation_type=consultation_type,
            status=AppointmentStatus.SCHEDULED,
            whatsapp_sent=False,
        )
        if consultation_type == ConsultationType.VIDEO:
            appointment.meeting_link = generate_meeting_link()
        appointment.hold_slot()

        self.db.add(appointment)
        self.db.query(Doctor).filter(Doctor.id == doctor_id).update(
            {Doctor.total_patients: Doctor.total_patients + 1},
            synchronize_session=False
        )
        self._commit_slot_change()
        self.db.refresh(appointment)

        logger.info(
            f"Booked appointment {appointment.id}: doctor={doctor_id} "
            f"patient={patient_id} date={appointment_date.date()} slot={time_slot}"
        )
        return appointment

    # Lifecycle

    def get_appointment(
        self,
        appointment_id: int,
        requester_patient_id: Optional[int] = None,
        requester_doctor_id: Optional[int] = None
    ) -> Appointment:
        appointment = self.db.query(Appointment).options(
            joinedload(Appointment.doctor),
            joinedload(Appointment.patient)
        ).filter(Appointment.id == appointment_id).first()

        if not appointment:
            raise NotFoundError("Appointment not found")

        self._authorize(
            appointment, requester_patient_id, requester_doctor_id,
            "You do not have permission to view this appointment"
        )
        return appointment

    def update_appointment(
        self,
        appointment_id: int,
        fields: Dict[str, object],
        requester_patient_id: Optional[int] = None,
        requester_doctor_id: Optional[int] = None
    ) -> Appointment:
        """Apply a partial update restricted to the requester's editable fields."""
        appointment = self._get_or_404(appointment_id)
        is_patient, is_doctor = self._authorize(
            appointment, requester_patient_id, requester_doctor_id,
            "You do not have permission to update this appointment"
        )

        if not fields:
            raise ValidationFailedError("No fields to update")

        allowed = set()
        if is_patient:
            allowed |= PATIENT_UPDATABLE_FIELDS
        if is_doctor:
            allowed |= DOCTOR_UPDATABLE_FIELDS

        rejected = sorted(set(fields) - allowed)
        if rejected:
            raise ValidationFailedError(
                f"Fields cannot be updated by this user: {', '.join(rejected)}"
            )

        for name, value in fields.items():
            setattr(appointment, name, value)

        if appointment.consultation_type == ConsultationType.VIDEO and not appointment.meeting_link:
            appointment.meeting_link = generate_meeting_link()

        self.db.commit()
        self.db.refresh(appointment)
        return appointment

    def cancel_appointment(
        self,
        appointment_id: int,
        requester_patient_id: Optional[int] = None,
        requester_doctor_id: Optional[int] = None
    ) -> Appointment:
        appointment = self._get_or_404(appointment_id)
        self._authorize(
            appointment, requester_patient_id, requester_doctor_id,
            "You do not have permission to cancel this appointment"
        )

        if appointment.status in TERMINAL_STATUSES:
            raise InvalidStateTransitionError(
                f"Appointment is already {appointment.status.value}"
            )

        appointment.status = AppointmentStatus.CANCELLED
        appointment.release_slot()
        self.db.commit()
        self.db.refresh(appointment)

        logger.info(f"Cancelled appointment {appointment.id}")
        return appointment

    def update_status(
        self,
        appointment_id: int,
        requester_doctor_id: Optional[int],
        new_status: AppointmentStatus
    ) -> Appointment:
        """Move an appointment along its lifecycle; only its doctor may do this."""
        appointment = self._get_or_404(appointment_id)
        if requester_doctor_id is None or appointment.doctor_id != requester_doctor_id:
            raise ForbiddenError("Only the assigned doctor can change the appointment status")

        allowed = STATUS_TRANSITIONS.get(appointment.status, set())
        if new_status not in allowed:
            raise InvalidStateTransitionError(
                f"Cannot change status from {appointment.status.value} to {new_status.value}"
            )

        appointment.status = new_status
        if new_status not in ACTIVE_STATUSES:
            appointment.release_slot()
        self.db.commit()
        self.db.refresh(appointment)

        logger.info(f"Appointment {appointment.id} is now {new_status.value}")
        return appointment

    def reschedule_appointment(
        self,
        appointment_id: int,
        appointment_date: datetime,
        time_slot: str,
        requester_patient_id: Optional[int] = None,
        requester_doctor_id: Optional[int] = None
    ) -> Appointment:
        appointment = self._get_or_404(appointment_id)
        self._authorize(
            appointment, requester_patient_id, requester_doctor_id,
            "You do not have permission to reschedule this appointment"
        )

        if appointment.status != AppointmentStatus.SCHEDULED:
            raise InvalidStateTransitionError(
                f"Only scheduled appointments can be rescheduled, this one is {appointment.status.value}"
            )

        self._ensure_future(appointment_date)
        self._ensure_slot_free(
            appointment.doctor_id, appointment.patient_id,
            appointment_date, time_slot, exclude_id=appointment.id
        )

        appointment.appointment_date = appointment_date
        appointment.time_slot = time_slot
        appointment.whatsapp_sent = False
        appointment.hold_slot()
        self._commit_slot_change()
        self.db.refresh(appointment)

        logger.info(
            f"Rescheduled appointment {appointment.id} to "
            f"{appointment_date.date()} {time_slot}"
        )
        return appointment

    def rate_appointment(
        self,
        appointment_id: int,
        requester_patient_id: Optional[int],
        score: int,
        feedback: Optional[str] = None
    ) -> Appointment:
        """Rate a completed appointment and refresh the doctor's aggregate rating."""
        appointment = self._get_or_404(appointment_id)

        if requester_patient_id is None or appointment.patient_id != requester_patient_id:
            raise ForbiddenError("You can only rate your own appointments")

        if appointment.status != AppointmentStatus.COMPLETED:
            raise InvalidStateTransitionError("You can only rate completed appointments")

        appointment.rating_score = score
        appointment.rating_feedback = feedback
        self.db.flush()

        scores = [
            row[0] for row in self.db.query(Appointment.rating_score).filter(
                Appointment.doctor_id == appointment.doctor_id,
                Appointment.status == AppointmentStatus.COMPLETED,
                Appointment.rating_score.isnot(None)
            ).all()
        ]
        new_rating = average_rating(scores)
        self.db.query(Doctor).filter(Doctor.id == appointment.doctor_id).update(
            {Doctor.rating: new_rating},
            synchronize_session=False
        )

        self.db.commit()
        self.db.refresh(appointment)

        logger.info(
            f"Appointment {appointment.id} rated {score}; doctor "
            f"{appointment.doctor_id} rating is now {new_rating} over {len(scores)} ratings"
        )
        return appointment

    # Queries

    def get_appointment_stats(
        self,
        patient_id: Optional[int] = None,
        doctor_id: Optional[int] = None
    ) -> Dict[str, int]:
        if (patient_id is None) == (doctor_id is None):
            raise ValidationFailedError("Provide exactly one of patient_id or doctor_id")

        if doctor_id is not None:
            condition = Appointment.doctor_id == doctor_id
        else:
            condition = Appointment.patient_id == patient_id

        rows = self.db.query(
            Appointment.status, func.count(Appointment.id)
        ).filter(condition).group_by(Appointment.status).all()

        stats = {key: 0 for key in STATS_KEYS}
        for status, count in rows:
            stats[status.value] = count
            stats["total"] += count
        return stats

    def get_doctor_appointments(
        self,
        doctor_id: int,
        status: Optional[AppointmentStatus] = None,
        page: int = 1,
        limit: int = 10
    ) -> Tuple[List[Appointment], Dict[str, int]]:
        if page < 1 or limit < 1:
            raise ValidationFailedError("page and limit must be positive")

        if not self.db.query(Doctor.id).filter(Doctor.id == doctor_id).first():
            raise NotFoundError("Doctor not found")

        query = self.db.query(Appointment).filter(Appointment.doctor_id == doctor_id)
        if status is not None:
            query = query.filter(Appointment.status == status)

        total = query.count()
        appointments = query.options(
            joinedload(Appointment.patient)
        ).order_by(
            Appointment.appointment_date.asc(),
            Appointment.time_slot.asc()
        ).offset((page - 1) * limit).limit(limit).all()

        pagination = {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit),
        }
        return appointments, pagination

    # Helpers

    def _get_or_404(self, appointment_id: int) -> Appointment:
        appointment = self.db.query(Appointment).filter(
            Appointment.id == appointment_id
        ).first()
        if not appointment:
            raise NotFoundError("Appointment not found")
        return appointment

    def _authorize(
        self,
        appointment: Appointment,
        requester_patient_id: Optional[int],
        requester_doctor_id: Optional[int],
        message: str
    ) -> Tuple[bool, bool]:
        """Return (is_patient, is_doctor); raise ForbiddenError if neither."""
        is_patient = (
            requester_patient_id is not None
            and appointment.patient_id == requester_patient_id
        )
        is_doctor = (
            requester_doctor_id is not None
            and appointment.doctor_id == requester_doctor_id
        )
        if not (is_patient or is_doctor):
            raise ForbiddenError(message)
        return is_patient, is_doctor

    def _ensure_future(self, appointment_date: datetime):
        if appointment_date <= datetime.now():
            raise InvalidDateError("Appointment date must be in the future")

    def _ensure_slot_free(
        self,
        doctor_id: int,
        patient_id: int,
        appointment_date: datetime,
        time_slot: str,
        exclude_id: Optional[int] = None
    ):
        if self._find_conflict(
            Appointment.doctor_id == doctor_id,
            appointment_date, time_slot, DOCTOR_BLOCKING_STATUSES, exclude_id
        ):
            raise SlotConflictError("This time slot is already booked")

        if self._find_conflict(
            Appointment.patient_id == patient_id,
            appointment_date, time_slot, PATIENT_BLOCKING_STATUSES, exclude_id
        ):
            raise SlotConflictError(
                "You already have another appointment scheduled at this time"
            )

    def _find_conflict(
        self,
        party_condition,
        appointment_date: datetime,
        time_slot: str,
        statuses,
        exclude_id: Optional[int] = None
    ) -> Optional[Appointment]:
        start, end = day_bounds(appointment_date)
        query = self.db.query(Appointment).filter(
            party_condition,
            Appointment.appointment_date >= start,
            Appointment.appointment_date <= end,
            Appointment.time_slot == time_slot,
            Appointment.status.in_(statuses)
        )
        if exclude_id is not None:
            query = query.filter(Appointment.id != exclude_id)
        return query.first()

    def _commit_slot_change(self):
        """Commit, mapping a slot-key collision to SlotConflictError."""
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.warning(f"Slot key collision on commit: {e.orig}")
            if "patient_slot_key" in str(e.orig):
                raise SlotConflictError(
                    "You already have another appointment scheduled at this time"
                ) from e
            raise SlotConflictError("This time slot is already booked") from e
