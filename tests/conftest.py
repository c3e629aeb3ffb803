from __future__ import annotations

import os
import tempfile
from datetime import date, datetime, timedelta

# Settings are read at import time; point everything at throwaway local resources first
_TMP_DIR = tempfile.mkdtemp(prefix="agenda-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'import.db')}"
os.environ["BOOKING_DRAFT_SECRET"] = "test-draft-secret"
os.environ["ADMIN_SECRET"] = "test-admin-secret"
os.environ["WHATSAPP_PROVIDER"] = "mock"
os.environ["BOOKING_RATE_LIMIT_PER_HOUR"] = "100000"
os.environ.pop("REDIS_URL", None)
os.environ.pop("ADMIN_ALLOWLIST_IPS", None)

import pytest
import pytz
from fastapi.testclient import TestClient

from main import create_app
from models.appointment import Appointment, AppointmentStatus
from models.customer import Customer
from models.organization import Organization, Professional, Service

BOGOTA = pytz.timezone("America/Bogota")
ADMIN_HEADERS = {"X-Admin-Secret": "test-admin-secret"}


def next_monday(weeks_ahead: int = 1) -> date:
    # Always in the future so "now" never trims the day when the real clock is used
    today = date.today()
    return today + timedelta(days=(7 - today.weekday()) % 7 + 7 * weeks_ahead)


def local(day: date, clock: str) -> datetime:
    hours, minutes = clock.split(":")
    return BOGOTA.localize(datetime(day.year, day.month, day.day, int(hours), int(minutes)))


def clock_of(value: datetime) -> str:
    return value.astimezone(BOGOTA).strftime("%H:%M")


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'agenda.db'}"


@pytest.fixture
def app(database_url):
    return create_app(database_url)


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def session_factory(app):
    return app.state.session_factory


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def org(db) -> Organization:
    organization = Organization(
        slug="barberia-centro",
        name="Barbería Centro",
        whatsapp_number="+573001112233",
        timezone="America/Bogota",
        settings={},
    )
    db.add(organization)
    db.commit()
    db.refresh(organization)
    return organization


@pytest.fixture
def services(db, org) -> dict:
    created = {
        "haircut": Service(organization_id=org.id, name="Corte", duration_minutes=30, price=25000),
        "color": Service(organization_id=org.id, name="Color", duration_minutes=60, price=80000),
        "spa": Service(organization_id=org.id, name="Spa", duration_minutes=90, price=120000),
    }
    db.add_all(created.values())
    db.commit()
    for service in created.values():
        db.refresh(service)
    return created


@pytest.fixture
def professionals(db, org) -> dict:
    created = {
        "ana": Professional(organization_id=org.id, name="Ana", color_code="#ff0000"),
        "bruno": Professional(organization_id=org.id, name="Bruno", color_code="#00ff00"),
    }
    db.add_all(created.values())
    db.commit()
    for professional in created.values():
        db.refresh(professional)
    return created


@pytest.fixture
def make_appointment(db, org):
    """Insert an appointment directly, bypassing the booking flow"""

    def _make(service, professional, start, status=AppointmentStatus.CONFIRMED, phone="+573009990000"):
        customer = db.query(Customer).filter(
            Customer.organization_id == org.id,
            Customer.whatsapp_number == phone,
        ).first()
        if not customer:
            customer = Customer(organization_id=org.id, full_name="Cliente Existente", whatsapp_number=phone)
            db.add(customer)
            db.flush()
        appointment = Appointment(
            organization_id=org.id,
            customer_id=customer.id,
            service_id=service.id,
            professional_id=professional.id,
            start_time=start,
            end_time=start + timedelta(minutes=service.duration_minutes),
            status=status,
        )
        db.add(appointment)
        db.commit()
        db.refresh(appointment)
        return appointment

    return _make
