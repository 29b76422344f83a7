from datetime import datetime
from typing import Callable, Optional
import logging

import httpx
from sqlalchemy.orm import Session, joinedload
from starlette.concurrency import run_in_threadpool

from ..core.config import settings
from ..core.database import SessionLocal
from ..models.appointment import Appointment

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when a confirmation could not be handed to the gateway."""


def format_confirmation(
    doctor_name: str,
    appointment_date: datetime,
    time_slot: str,
    meeting_link: Optional[str] = None
) -> str:
    lines = [
        "Your appointment is confirmed.",
        f"Doctor: {doctor_name}",
        f"Date: {appointment_date.strftime('%A, %d %B %Y')}",
        f"Time: {time_slot}",
    ]
    if meeting_link:
        lines.append(f"Join: {meeting_link}")
    return "\n".join(lines)


class WhatsAppNotifier:
    def __init__(
        self,
        api_url: Optional[str] = None,
        api_token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_url = api_url if api_url is not None else settings.WHATSAPP_API_URL
        self.api_token = api_token if api_token is not None else settings.WHATSAPP_API_TOKEN
        self.timeout = timeout if timeout is not None else settings.WHATSAPP_TIMEOUT_SECONDS
        self.transport = transport

    async def send_appointment_confirmation(
        self,
        phone: str,
        doctor_name: str,
        appointment_date: datetime,
        time_slot: str,
        meeting_link: Optional[str] = None
    ) -> None:
        """Send a booking confirmation; raises NotificationError on any failure."""
        if not self.api_url:
            raise NotificationError("WhatsApp gateway is not configured")

        headers = {}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"

        payload = {
            "to": phone,
            "message": format_confirmation(doctor_name, appointment_date, time_slot, meeting_link),
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.api_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise NotificationError(f"WhatsApp gateway unreachable: {e}") from e

        if response.status_code >= 300:
            raise NotificationError(
                f"WhatsApp gateway responded with {response.status_code}"
            )


notifier = WhatsAppNotifier()


def _load_confirmation(session_factory: Callable[[], Session], appointment_id: int) -> Optional[dict]:
    db = session_factory()
    try:
        appointment = db.query(Appointment).options(
            joinedload(Appointment.doctor),
            joinedload(Appointment.patient)
        ).filter(Appointment.id == appointment_id).first()
        if not appointment:
            return None
        return {
            "phone": appointment.patient.phone,
            "doctor_name": appointment.doctor.name,
            "appointment_date": appointment.appointment_date,
            "time_slot": appointment.time_slot,
            "meeting_link": appointment.meeting_link,
        }
    finally:
        db.close()


def _mark_sent(session_factory: Callable[[], Session], appointment_id: int) -> None:
    db = session_factory()
    try:
        db.query(Appointment).filter(Appointment.id == appointment_id).update(
            {Appointment.whatsapp_sent: True},
            synchronize_session=False
        )
        db.commit()
    finally:
        db.close()


async def send_booking_confirmation(
    appointment_id: int,
    session_factory: Callable[[], Session] = SessionLocal,
    sender: Optional[WhatsAppNotifier] = None
) -> bool:
    """Background task run after a booking response has been sent.

    Records the outcome on ``Appointment.whatsapp_sent``. The flag is advisory:
    failures are logged and never reach the client. Database calls run in the
    threadpool so the event loop only waits on the gateway.
    """
    sender = sender or notifier

    details = await run_in_threadpool(_load_confirmation, session_factory, appointment_id)
    if details is None:
        logger.warning(f"Skipping confirmation, appointment {appointment_id} no longer exists")
        return False

    try:
        await sender.send_appointment_confirmation(**details)
    except NotificationError as e:
        logger.warning(f"WhatsApp confirmation for appointment {appointment_id} failed: {e}")
        return False

    await run_in_threadpool(_mark_sent, session_factory, appointment_id)
    logger.info(f"WhatsApp confirmation sent for appointment {appointment_id}")
    return True
