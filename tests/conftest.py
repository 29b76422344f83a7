import os
from datetime import datetime, timedelta

# Must be set before the application is imported
os.environ["TESTING"] = "1"
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///./test.db")
os.environ.pop("WHATSAPP_API_URL", None)

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.core.database import Base, SessionLocal, engine, get_redis, init_db
from app.core.security import UserRole
from app.models.doctor import Doctor
from app.models.patient import Patient
from app.models.user import User

ALL_WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
DEFAULT_SLOTS = ["09:00-09:30", "10:00-10:30", "10:30-11:00", "11:00-11:30"]


class InMemoryRedis:
    """Counter store standing in for Redis in rate-limit checks."""

    def __init__(self):
        self.data = {}

    def setex(self, key, seconds, value):
        self.data[key] = str(value)
        return True

    def get(self, key):
        return self.data.get(key)

    def incr(self, key):
        self.data[key] = str(int(self.data.get(key, 0)) + 1)
        return int(self.data[key])


def future_date(days=1, hour=10, minute=0):
    """A naive local datetime `days` ahead at the given time."""
    base = datetime.now() + timedelta(days=days)
    return base.replace(hour=hour, minute=minute, second=0, microsecond=0)


def add_doctor(db, email="doc@example.com", name="Dr. Who"):
    """Insert a doctor directly, bypassing registration."""
    user = User(email=email, password_hash="x", role=UserRole.DOCTOR)
    doctor = Doctor(user=user, name=name, email=email, specialization="Cardiology",
                    consultation_fee=30, availability_days=[], availability_time_slots=[])
    db.add(doctor)
    db.commit()
    return doctor


def add_patient(db, email="pat@example.com", name="Pat"):
    user = User(email=email, password_hash="x", role=UserRole.PATIENT)
    patient = Patient(user=user, name=name, email=email, phone="+15550001111")
    db.add(patient)
    db.commit()
    return patient


@pytest.fixture
def redis_stub():
    stub = InMemoryRedis()
    app.dependency_overrides[get_redis] = lambda: stub
    yield stub
    app.dependency_overrides.pop(get_redis, None)


@pytest.fixture(scope="function")
def test_db():
    init_db()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session(test_db):
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def client(test_db, redis_stub):
    with TestClient(app, base_url="http://testserver") as test_client:
        yield test_client


@pytest.fixture
def make_doctor(client):
    """Register and log in a doctor; returns {"id", "headers", "user"}."""
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        data = {
            "name": f"Dr. Test {counter['n']}",
            "email": f"doctor{counter['n']}@example.com",
            "phone": "+15550000000",
            "password": "DoctorPass123",
            "specialization": "Cardiology",
            "experience": 10,
            "qualifications": ["MBBS", "MD"],
            "consultation_fee": 50.0,
            "availability": {"days": ALL_WEEKDAYS, "time_slots": DEFAULT_SLOTS},
        }
        data.update(overrides)
        response = client.post("/api/v1/auth/doctor/register", json=data)
        assert response.status_code == 201, response.text

        login = client.post(
            "/api/v1/auth/doctor/login",
            json={"email": data["email"], "password": data["password"]}
        )
        assert login.status_code == 200, login.text
        body = login.json()
        return {
            "id": body["user"]["profile_id"],
            "headers": {"Authorization": f"Bearer {body['access_token']}"},
            "user": body["user"],
        }

    return _make


@pytest.fixture
def make_patient(client):
    """Register and log in a patient; returns {"id", "headers", "user"}."""
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        data = {
            "name": f"Patient {counter['n']}",
            "email": f"patient{counter['n']}@example.com",
            "phone": f"+1555100000{counter['n']}",
            "password": "PatientPass123",
            "age": 30,
            "gender": "female",
        }
        data.update(overrides)
        response = client.post("/api/v1/auth/patient/register", json=data)
        assert response.status_code == 201, response.text

        login = client.post(
            "/api/v1/auth/patient/login",
            json={"email": data["email"], "password": data["password"]}
        )
        assert login.status_code == 200, login.text
        body = login.json()
        return {
            "id": body["user"]["profile_id"],
            "headers": {"Authorization": f"Bearer {body['access_token']}"},
            "user": body["user"],
        }

    return _make


@pytest.fixture
def book(client):
    """Book as a patient; returns the raw response."""

    def _book(patient, doctor, when=None, slot="10:00-10:30", **extra):
        payload = {
            "doctor_id": doctor["id"],
            "appointment_date": (when or future_date()).isoformat(),
            "time_slot": slot,
            "symptoms": "Chest pain",
        }
        payload.update(extra)
        return client.post("/api/v1/appointments", json=payload, headers=patient["headers"])

    return _book
