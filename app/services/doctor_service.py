from sqlalchemy.orm import Session
from sqlalchemy import func
from datetime import date, datetime, time
from typing import Dict, List, Optional, Tuple
import math

from ..core.exceptions import NotFoundError, ValidationFailedError
from ..models.appointment import Appointment, ACTIVE_STATUSES
from ..models.doctor import Doctor
from ..schemas.doctor import WEEKDAYS
from .appointment_service import day_bounds

class DoctorService:
    def __init__(self, db: Session):
        self.db = db

    def list_doctors(
        self,
        specialization: Optional[str] = None,
        page: int = 1,
        limit: int = 10
    ) -> Tuple[List[Doctor], Dict[str, int]]:
        """List doctors, best rated first."""
        if page < 1 or limit < 1:
            raise ValidationFailedError("page and limit must be positive")

        query = self.db.query(Doctor)
        if specialization:
            query = query.filter(
                func.lower(Doctor.specialization) == specialization.strip().lower()
            )

        total = query.count()
        doctors = query.order_by(
            Doctor.rating.desc(),
            Doctor.name.asc()
        ).offset((page - 1) * limit).limit(limit).all()

        return doctors, {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit),
        }

    def get_doctor(self, doctor_id: int) -> Doctor:
        doctor = self.db.query(Doctor).filter(Doctor.id == doctor_id).first()
        if not doctor:
            raise NotFoundError("Doctor not found")
        return doctor

    def get_available_slots(self, doctor_id: int, on_date: date) -> List[str]:
        """Slots from the doctor's weekly availability not held by an active appointment."""
        doctor = self.get_doctor(doctor_id)

        if WEEKDAYS[on_date.weekday()] not in (doctor.availability_days or []):
            return []

        start, end = day_bounds(datetime.combine(on_date, time.min))
        booked = {
            row[0] for row in self.db.query(Appointment.time_slot).filter(
                Appointment.doctor_id == doctor_id,
                Appointment.appointment_date >= start,
                Appointment.appointment_date <= end,
                Appointment.status.in_(ACTIVE_STATUSES)
            ).all()
        }
        return [slot for slot in (doctor.availability_time_slots or []) if slot not in booked]
