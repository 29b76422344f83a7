from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Float, JSON
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from ..core.database import Base

class Doctor(Base):
    __tablename__ = "doctors"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)

    # Personal information
    name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=False, unique=True, index=True)
    phone = Column(String(20), nullable=True)
    age = Column(Integer, nullable=True)
    gender = Column(String(20), nullable=True)

    # Professional information
    specialization = Column(String(100), nullable=False, index=True)
    experience = Column(Integer, nullable=True)
    qualifications = Column(JSON, default=list)
    consultation_fee = Column(Float, nullable=False, default=0)

    # Availability: weekday names and slot identifiers such as "10:00-10:30"
    availability_days = Column(JSON, default=list)
    availability_time_slots = Column(JSON, default=list)

    # Aggregates maintained by the appointment service
    rating = Column(Float, nullable=False, default=0)
    total_patients = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    user = relationship("User", back_populates="doctor")
    appointments = relationship("Appointment", back_populates="doctor")

    @property
    def availability(self):
        return {
            "days": self.availability_days or [],
            "time_slots": self.availability_time_slots or [],
        }

    def __repr__(self):
        return f"<Doctor(id={self.id}, name='{self.name}', specialization='{self.specialization}')>"
