from datetime import datetime, timedelta

from app.models.appointment import Appointment
from app.services import notification_service
from tests.conftest import future_date


def complete(client, doctor, appointment_id):
    response = client.patch(
        f"/api/v1/appointments/{appointment_id}/status",
        json={"status": "completed"},
        headers=doctor["headers"]
    )
    assert response.status_code == 200, response.text
    return response.json()


class TestBooking:

    def test_book_appointment(self, client, make_doctor, make_patient, book):
        """Booking returns the appointment with limited projections."""
        doctor = make_doctor()
        patient = make_patient()

        response = book(patient, doctor)
        assert response.status_code == 201

        data = response.json()
        assert data["status"] == "scheduled"
        assert data["time_slot"] == "10:00-10:30"
        assert data["consultation_type"] == "video"
        assert data["meeting_link"].startswith("https://")
        assert data["whatsapp_sent"] is False
        assert data["rating"] is None
        assert set(data["doctor"]) == {"id", "name", "specialization", "consultation_fee"}
        assert set(data["patient"]) == {"id", "name", "email", "phone"}

    def test_booking_increments_doctor_patient_count(self, client, make_doctor, make_patient, book):
        """Each booking bumps the doctor's patient counter."""
        doctor = make_doctor()
        book(make_patient(), doctor, slot="09:00-09:30")
        book(make_patient(), doctor, slot="10:00-10:30")

        profile = client.get(f"/api/v1/doctors/{doctor['id']}").json()
        assert profile["total_patients"] == 2

    def test_in_person_booking_has_no_meeting_link(self, client, make_doctor, make_patient, book):
        """Only video consultations get a meeting link."""
        response = book(make_patient(), make_doctor(), consultation_type="in-person")
        assert response.status_code == 201
        assert response.json()["meeting_link"] is None

    def test_book_unknown_doctor(self, client, make_patient, book):
        """Booking with a missing doctor is a 404."""
        response = book(make_patient(), {"id": 9999})
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_book_past_date(self, client, make_doctor, make_patient, book):
        """Appointment dates must be in the future."""
        response = book(make_patient(), make_doctor(), when=datetime.now() - timedelta(hours=1))
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_date"

    def test_book_requires_patient(self, client, make_doctor, book):
        """Doctors cannot book appointments."""
        doctor = make_doctor()
        response = book(doctor, doctor)
        assert response.status_code == 403

    def test_book_requires_authentication(self, client, make_doctor):
        """Anonymous booking is rejected."""
        response = client.post("/api/v1/appointments", json={
            "doctor_id": make_doctor()["id"],
            "appointment_date": future_date().isoformat(),
            "time_slot": "10:00-10:30",
        })
        assert response.status_code in (401, 403)

    def test_book_invalid_payload(self, client, make_doctor, make_patient, book):
        """Malformed bodies are reported as validation failures."""
        response = book(make_patient(), make_doctor(), time_slot="")
        assert response.status_code == 400
        assert response.json()["error"] == "validation_failed"

    def test_doctor_slot_conflict_then_cancel(self, client, make_doctor, make_patient, book):
        """A slot blocked by one booking frees up once it is cancelled."""
        doctor = make_doctor()
        first_patient = make_patient()
        second_patient = make_patient()
        third_patient = make_patient()

        first = book(first_patient, doctor)
        assert first.status_code == 201

        conflict = book(second_patient, doctor)
        assert conflict.status_code == 400
        assert conflict.json()["error"] == "slot_conflict"
        assert conflict.json()["detail"] == "This time slot is already booked"

        cancel = client.patch(
            f"/api/v1/appointments/{first.json()['id']}/cancel",
            headers=first_patient["headers"]
        )
        assert cancel.status_code == 200
        assert cancel.json()["status"] == "cancelled"

        retry = book(third_patient, doctor)
        assert retry.status_code == 201

    def test_same_slot_other_time_of_day_conflicts(self, client, make_doctor, make_patient, book):
        """Conflicts are per calendar day and slot, not per exact timestamp."""
        doctor = make_doctor()
        book(make_patient(), doctor, when=future_date(hour=8))

        response = book(make_patient(), doctor, when=future_date(hour=15))
        assert response.status_code == 400

    def test_same_slot_other_day_is_free(self, client, make_doctor, make_patient, book):
        """The same slot on another day does not conflict."""
        doctor = make_doctor()
        book(make_patient(), doctor, when=future_date(days=1))

        response = book(make_patient(), doctor, when=future_date(days=2))
        assert response.status_code == 201

    def test_patient_slot_conflict(self, client, make_doctor, make_patient, book):
        """A patient cannot hold two appointments in the same slot."""
        patient = make_patient()
        book(patient, make_doctor())

        response = book(patient, make_doctor())
        assert response.status_code == 400
        assert response.json()["error"] == "slot_conflict"
        assert "another appointment" in response.json()["detail"]

    def test_doctor_check_runs_before_patient_check(self, client, make_doctor, make_patient, book):
        """When both sides clash, the doctor-side message is reported."""
        doctor = make_doctor()
        patient = make_patient()
        book(patient, doctor)

        response = book(patient, doctor)
        assert response.json()["detail"] == "This time slot is already booked"

    def test_confirmation_sent_in_background(self, client, make_doctor, make_patient, book,
                                             db_session, monkeypatch):
        """A delivered confirmation sets the whatsapp_sent flag."""
        sent = []

        class FakeNotifier:
            async def send_appointment_confirmation(self, phone, doctor_name, appointment_date,
                                                    time_slot, meeting_link=None):
                sent.append((phone, doctor_name, time_slot, meeting_link))

        monkeypatch.setattr(notification_service, "notifier", FakeNotifier())
        patient = make_patient()

        response = book(patient, make_doctor(name="Dr. House"))
        assert response.status_code == 201

        assert len(sent) == 1
        phone, doctor_name, slot, link = sent[0]
        assert phone == response.json()["patient"]["phone"]
        assert (doctor_name, slot, link) == ("Dr. House", "10:00-10:30", response.json()["meeting_link"])
        stored = db_session.get(Appointment, response.json()["id"])
        assert stored.whatsapp_sent is True

    def test_notification_failure_does_not_fail_booking(self, client, make_doctor, make_patient,
                                                        book, db_session):
        """Without a configured gateway the booking still succeeds."""
        response = book(make_patient(), make_doctor())
        assert response.status_code == 201

        stored = db_session.get(Appointment, response.json()["id"])
        assert stored.whatsapp_sent is False


class TestAppointmentAccess:

    def test_get_appointment_as_patient_and_doctor(self, client, make_doctor, make_patient, book):
        """Both parties can read the appointment with contact projections."""
        doctor = make_doctor()
        patient = make_patient()
        appointment_id = book(patient, doctor).json()["id"]

        for party in (patient, doctor):
            response = client.get(f"/api/v1/appointments/{appointment_id}", headers=party["headers"])
            assert response.status_code == 200
            data = response.json()
            assert data["doctor"]["email"] == doctor["user"]["email"]
            assert data["patient"]["age"] == 30

    def test_get_appointment_forbidden(self, client, make_doctor, make_patient, book):
        """Outsiders get 403."""
        appointment_id = book(make_patient(), make_doctor()).json()["id"]

        for outsider in (make_patient(), make_doctor()):
            response = client.get(f"/api/v1/appointments/{appointment_id}", headers=outsider["headers"])
            assert response.status_code == 403
            assert response.json()["error"] == "forbidden"

    def test_get_missing_appointment(self, client, make_patient):
        """Unknown ids are 404."""
        response = client.get("/api/v1/appointments/12345", headers=make_patient()["headers"])
        assert response.status_code == 404

    def test_patient_updates_symptoms(self, client, make_doctor, make_patient, book):
        """Patients may edit symptoms and consultation type."""
        patient = make_patient()
        appointment_id = book(patient, make_doctor(), consultation_type="phone").json()["id"]

        response = client.put(
            f"/api/v1/appointments/{appointment_id}",
            json={"symptoms": "Headache", "consultation_type": "video"},
            headers=patient["headers"]
        )
        assert response.status_code == 200
        data = response.json()
        assert data["symptoms"] == "Headache"
        assert data["consultation_type"] == "video"
        assert data["meeting_link"] is not None

    def test_patient_cannot_update_doctor_fields(self, client, make_doctor, make_patient, book):
        """Doctor-only fields are rejected for patients."""
        patient = make_patient()
        appointment_id = book(patient, make_doctor()).json()["id"]

        response = client.put(
            f"/api/v1/appointments/{appointment_id}",
            json={"doctor_notes": "self-diagnosed"},
            headers=patient["headers"]
        )
        assert response.status_code == 400
        assert "doctor_notes" in response.json()["detail"]

    def test_update_cannot_touch_status(self, client, make_doctor, make_patient, book):
        """Status, ids and ratings are not part of the update surface."""
        patient = make_patient()
        appointment_id = book(patient, make_doctor()).json()["id"]

        for field, value in (("status", "completed"), ("doctor_id", 1), ("rating_score", 5)):
            response = client.put(
                f"/api/v1/appointments/{appointment_id}",
                json={field: value},
                headers=patient["headers"]
            )
            assert response.status_code == 400

        detail = client.get(f"/api/v1/appointments/{appointment_id}", headers=patient["headers"])
        assert detail.json()["status"] == "scheduled"

    def test_doctor_updates_notes(self, client, make_doctor, make_patient, book):
        """Doctors may edit notes and the meeting link."""
        doctor = make_doctor()
        appointment_id = book(make_patient(), doctor).json()["id"]

        response = client.put(
            f"/api/v1/appointments/{appointment_id}",
            json={"doctor_notes": "Bring ECG", "meeting_link": "https://meet.example.com/abc"},
            headers=doctor["headers"]
        )
        assert response.status_code == 200
        assert response.json()["doctor_notes"] == "Bring ECG"
        assert response.json()["meeting_link"] == "https://meet.example.com/abc"

    def test_empty_update_rejected(self, client, make_doctor, make_patient, book):
        """An update with no fields is a validation failure."""
        patient = make_patient()
        appointment_id = book(patient, make_doctor()).json()["id"]

        response = client.put(f"/api/v1/appointments/{appointment_id}", json={}, headers=patient["headers"])
        assert response.status_code == 400

    def test_null_consultation_type_rejected(self, client, make_doctor, make_patient, book):
        """Consultation type can be changed but not cleared."""
        patient = make_patient()
        appointment_id = book(patient, make_doctor(), consultation_type="phone").json()["id"]

        response = client.put(
            f"/api/v1/appointments/{appointment_id}",
            json={"consultation_type": None},
            headers=patient["headers"]
        )
        assert response.status_code == 400
        assert response.json()["error"] == "validation_failed"

        detail = client.get(f"/api/v1/appointments/{appointment_id}", headers=patient["headers"])
        assert detail.json()["consultation_type"] == "phone"


class TestLifecycle:

    def test_doctor_cancels(self, client, make_doctor, make_patient, book):
        """The doctor may cancel too."""
        doctor = make_doctor()
        appointment_id = book(make_patient(), doctor).json()["id"]

        response = client.patch(f"/api/v1/appointments/{appointment_id}/cancel", headers=doctor["headers"])
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

    def test_cancel_ongoing(self, client, make_doctor, make_patient, book):
        """Ongoing appointments can still be cancelled."""
        doctor = make_doctor()
        patient = make_patient()
        appointment_id = book(patient, doctor).json()["id"]
        client.patch(
            f"/api/v1/appointments/{appointment_id}/status",
            json={"status": "ongoing"}, headers=doctor["headers"]
        )

        response = client.patch(f"/api/v1/appointments/{appointment_id}/cancel", headers=patient["headers"])
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

    def test_cancel_terminal_rejected(self, client, make_doctor, make_patient, book):
        """Completed and cancelled appointments cannot be cancelled."""
        doctor = make_doctor()
        patient = make_patient()
        completed_id = book(patient, doctor, slot="09:00-09:30").json()["id"]
        complete(client, doctor, completed_id)
        cancelled_id = book(patient, doctor, slot="10:00-10:30").json()["id"]
        client.patch(f"/api/v1/appointments/{cancelled_id}/cancel", headers=patient["headers"])

        for appointment_id, status in ((completed_id, "completed"), (cancelled_id, "cancelled")):
            response = client.patch(
                f"/api/v1/appointments/{appointment_id}/cancel", headers=patient["headers"]
            )
            assert response.status_code == 400
            assert response.json()["error"] == "invalid_state_transition"
            assert response.json()["detail"] == f"Appointment is already {status}"

    def test_cancel_forbidden(self, client, make_doctor, make_patient, book):
        """Only participants may cancel."""
        appointment_id = book(make_patient(), make_doctor()).json()["id"]

        response = client.patch(
            f"/api/v1/appointments/{appointment_id}/cancel", headers=make_patient()["headers"]
        )
        assert response.status_code == 403

    def test_status_transitions(self, client, make_doctor, make_patient, book):
        """scheduled -> ongoing -> completed, and nothing after that."""
        doctor = make_doctor()
        appointment_id = book(make_patient(), doctor).json()["id"]
        url = f"/api/v1/appointments/{appointment_id}/status"

        assert client.patch(url, json={"status": "ongoing"}, headers=doctor["headers"]).json()["status"] == "ongoing"
        assert client.patch(url, json={"status": "completed"}, headers=doctor["headers"]).json()["status"] == "completed"

        response = client.patch(url, json={"status": "ongoing"}, headers=doctor["headers"])
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_state_transition"

    def test_status_cannot_be_set_to_cancelled(self, client, make_doctor, make_patient, book):
        """Cancellation goes through the cancel endpoint only."""
        doctor = make_doctor()
        appointment_id = book(make_patient(), doctor).json()["id"]

        response = client.patch(
            f"/api/v1/appointments/{appointment_id}/status",
            json={"status": "cancelled"}, headers=doctor["headers"]
        )
        assert response.status_code == 400

    def test_status_change_by_other_doctor(self, client, make_doctor, make_patient, book):
        """Only the assigned doctor changes status."""
        appointment_id = book(make_patient(), make_doctor()).json()["id"]

        response = client.patch(
            f"/api/v1/appointments/{appointment_id}/status",
            json={"status": "ongoing"}, headers=make_doctor()["headers"]
        )
        assert response.status_code == 403

    def test_no_show_frees_slot(self, client, make_doctor, make_patient, book):
        """A no-show no longer blocks the slot."""
        doctor = make_doctor()
        appointment_id = book(make_patient(), doctor).json()["id"]
        client.patch(
            f"/api/v1/appointments/{appointment_id}/status",
            json={"status": "no-show"}, headers=doctor["headers"]
        )

        assert book(make_patient(), doctor).status_code == 201

    def test_reschedule(self, client, make_doctor, make_patient, book):
        """Rescheduling moves the appointment and frees the old slot."""
        doctor = make_doctor()
        patient = make_patient()
        appointment_id = book(patient, doctor).json()["id"]
        new_date = future_date(days=3)

        response = client.patch(
            f"/api/v1/appointments/{appointment_id}/reschedule",
            json={"appointment_date": new_date.isoformat(), "time_slot": "11:00-11:30"},
            headers=patient["headers"]
        )
        assert response.status_code == 200
        assert response.json()["time_slot"] == "11:00-11:30"
        assert response.json()["appointment_date"].startswith(new_date.date().isoformat())

        assert book(make_patient(), doctor).status_code == 201

    def test_reschedule_into_booked_slot(self, client, make_doctor, make_patient, book):
        """Rescheduling is subject to the same conflict checks."""
        doctor = make_doctor()
        patient = make_patient()
        book(make_patient(), doctor, slot="11:00-11:30")
        appointment_id = book(patient, doctor).json()["id"]

        response = client.patch(
            f"/api/v1/appointments/{appointment_id}/reschedule",
            json={"appointment_date": future_date().isoformat(), "time_slot": "11:00-11:30"},
            headers=patient["headers"]
        )
        assert response.status_code == 400
        assert response.json()["error"] == "slot_conflict"

    def test_reschedule_to_same_slot_is_allowed(self, client, make_doctor, make_patient, book):
        """An appointment does not conflict with itself."""
        patient = make_patient()
        appointment_id = book(patient, make_doctor()).json()["id"]

        response = client.patch(
            f"/api/v1/appointments/{appointment_id}/reschedule",
            json={"appointment_date": future_date(hour=12).isoformat(), "time_slot": "10:00-10:30"},
            headers=patient["headers"]
        )
        assert response.status_code == 200

    def test_reschedule_completed_rejected(self, client, make_doctor, make_patient, book):
        """Only scheduled appointments can move."""
        doctor = make_doctor()
        patient = make_patient()
        appointment_id = book(patient, doctor).json()["id"]
        complete(client, doctor, appointment_id)

        response = client.patch(
            f"/api/v1/appointments/{appointment_id}/reschedule",
            json={"appointment_date": future_date(days=2).isoformat(), "time_slot": "09:00-09:30"},
            headers=patient["headers"]
        )
        assert response.status_code == 400


class TestRating:

    def test_rating_updates_doctor_average(self, client, make_doctor, make_patient, book):
        """Scores 4 and 5 average to 4.5."""
        doctor = make_doctor()
        patient = make_patient()
        first = book(patient, doctor, slot="09:00-09:30").json()["id"]
        second = book(patient, doctor, slot="10:00-10:30").json()["id"]
        complete(client, doctor, first)
        complete(client, doctor, second)

        response = client.post(
            f"/api/v1/appointments/{first}/rate",
            json={"score": 4, "feedback": "Good"}, headers=patient["headers"]
        )
        assert response.status_code == 200
        assert response.json()["rating"] == {"score": 4, "feedback": "Good"}

        client.post(f"/api/v1/appointments/{second}/rate", json={"score": 5}, headers=patient["headers"])

        profile = client.get(f"/api/v1/doctors/{doctor['id']}").json()
        assert profile["rating"] == 4.5

    def test_rating_rounds_to_one_decimal(self, client, make_doctor, make_patient, book):
        """Scores 5, 4, 4 average to 4.3."""
        doctor = make_doctor()
        patient = make_patient()
        slots = ["09:00-09:30", "10:00-10:30", "10:30-11:00"]
        for slot, score in zip(slots, (5, 4, 4)):
            appointment_id = book(patient, doctor, slot=slot).json()["id"]
            complete(client, doctor, appointment_id)
            client.post(
                f"/api/v1/appointments/{appointment_id}/rate",
                json={"score": score}, headers=patient["headers"]
            )

        assert client.get(f"/api/v1/doctors/{doctor['id']}").json()["rating"] == 4.3

    def test_rerating_overwrites(self, client, make_doctor, make_patient, book):
        """Rating the same appointment twice keeps only the latest score."""
        doctor = make_doctor()
        patient = make_patient()
        appointment_id = book(patient, doctor).json()["id"]
        complete(client, doctor, appointment_id)
        url = f"/api/v1/appointments/{appointment_id}/rate"

        client.post(url, json={"score": 2}, headers=patient["headers"])
        client.post(url, json={"score": 5}, headers=patient["headers"])

        assert client.get(f"/api/v1/doctors/{doctor['id']}").json()["rating"] == 5.0

    def test_rating_requires_completed(self, client, make_doctor, make_patient, book):
        """Scheduled appointments cannot be rated."""
        patient = make_patient()
        appointment_id = book(patient, make_doctor()).json()["id"]

        response = client.post(
            f"/api/v1/appointments/{appointment_id}/rate",
            json={"score": 5}, headers=patient["headers"]
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_state_transition"

    def test_rating_only_by_booking_patient(self, client, make_doctor, make_patient, book):
        """Neither the doctor nor another patient may rate."""
        doctor = make_doctor()
        appointment_id = book(make_patient(), doctor).json()["id"]
        complete(client, doctor, appointment_id)

        for other in (doctor, make_patient()):
            response = client.post(
                f"/api/v1/appointments/{appointment_id}/rate",
                json={"score": 5}, headers=other["headers"]
            )
            assert response.status_code == 403

    def test_rating_score_range(self, client, make_doctor, make_patient, book):
        """Scores outside 1..5 are rejected."""
        doctor = make_doctor()
        patient = make_patient()
        appointment_id = book(patient, doctor).json()["id"]
        complete(client, doctor, appointment_id)

        response = client.post(
            f"/api/v1/appointments/{appointment_id}/rate",
            json={"score": 6}, headers=patient["headers"]
        )
        assert response.status_code == 400


class TestQueries:

    def test_stats(self, client, make_doctor, make_patient, book):
        """Counts per status add up to the total."""
        doctor = make_doctor()
        patient = make_patient()
        ids = [book(patient, doctor, slot=slot).json()["id"] for slot in
               ("09:00-09:30", "10:00-10:30", "10:30-11:00")]
        client.patch(f"/api/v1/appointments/{ids[0]}/cancel", headers=patient["headers"])
        complete(client, doctor, ids[1])

        for party in (patient, doctor):
            stats = client.get("/api/v1/appointments/stats", headers=party["headers"]).json()
            assert stats == {
                "total": 3, "scheduled": 1, "completed": 1,
                "cancelled": 1, "ongoing": 0, "no-show": 0
            }

    def test_stats_empty(self, client, make_patient):
        """All counters default to zero."""
        stats = client.get("/api/v1/appointments/stats", headers=make_patient()["headers"]).json()
        assert stats["total"] == 0
        assert set(stats) == {"total", "scheduled", "completed", "cancelled", "ongoing", "no-show"}

    def test_doctor_appointments_sorted_and_paginated(self, client, make_doctor, make_patient, book):
        """Listing is ordered by date then slot."""
        doctor = make_doctor()
        book(make_patient(), doctor, when=future_date(days=2), slot="09:00-09:30")
        book(make_patient(), doctor, when=future_date(days=1), slot="10:30-11:00")
        book(make_patient(), doctor, when=future_date(days=1), slot="09:00-09:30")

        url = f"/api/v1/doctors/{doctor['id']}/appointments"
        page_one = client.get(url, params={"limit": 2}, headers=doctor["headers"]).json()
        assert page_one["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}
        assert [a["time_slot"] for a in page_one["appointments"]] == ["09:00-09:30", "10:30-11:00"]
        assert set(page_one["appointments"][0]["patient"]) == {"id", "name", "email", "phone", "age", "gender"}

        page_two = client.get(url, params={"limit": 2, "page": 2}, headers=doctor["headers"]).json()
        assert len(page_two["appointments"]) == 1
        assert page_two["appointments"][0]["appointment_date"].startswith(
            future_date(days=2).date().isoformat()
        )

    def test_doctor_appointments_status_filter(self, client, make_doctor, make_patient, book):
        """Status narrows the listing."""
        doctor = make_doctor()
        patient = make_patient()
        first = book(patient, doctor, slot="09:00-09:30").json()["id"]
        book(patient, doctor, slot="10:00-10:30")
        client.patch(f"/api/v1/appointments/{first}/cancel", headers=patient["headers"])

        response = client.get(
            f"/api/v1/doctors/{doctor['id']}/appointments",
            params={"status": "cancelled"}, headers=doctor["headers"]
        ).json()
        assert response["pagination"]["total"] == 1
        assert response["appointments"][0]["id"] == first

    def test_doctor_appointments_only_own(self, client, make_doctor):
        """Doctors cannot list another doctor's appointments."""
        doctor = make_doctor()
        other = make_doctor()

        response = client.get(f"/api/v1/doctors/{doctor['id']}/appointments", headers=other["headers"])
        assert response.status_code == 403
