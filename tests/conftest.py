"""pytest configuration: app over in-memory SQLite and shared clinic data."""
from __future__ import annotations

import sys
from datetime import date, datetime, time
from pathlib import Path

import pytest
from sqlalchemy.pool import StaticPool

# Ensure the project root is available on sys.path so tests can import the clinic package.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from clinic import create_app  # noqa: E402
from clinic.extensions import db  # noqa: E402
from clinic.models import Appointment, Service, Staff, StaffSchedule, User  # noqa: E402
from clinic.reference import new_reference_code  # noqa: E402
from clinic.timeutils import FixedClock  # noqa: E402

# Sunday noon; the next day is a Monday.
NOW = datetime(2030, 1, 6, 12, 0)
SUNDAY = date(2030, 1, 6)
MONDAY = date(2030, 1, 7)
TUESDAY = date(2030, 1, 8)


class TestingConfig:
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS = {
        "poolclass": StaticPool,
        "connect_args": {"check_same_thread": False},
    }
    CLINIC_TIMEZONE = "UTC"
    CLINIC_WORKDAY_START = "08:00"
    CLINIC_WORKDAY_END = "20:00"
    CLINIC_SLOT_STEP_MINUTES = 15
    CLINIC_MIN_NOTICE_MINUTES = 30
    CLINIC_CANCEL_NOTICE_MINUTES = 120
    CLINIC_ALLOW_PAST_DATES = False
    CLINIC_DEFAULT_CURRENCY = "EUR"
    CLINIC_PAYMENT_TOLERANCE_CENTS = 1
    CORS_ORIGINS = "*"


@pytest.fixture
def app():
    app = create_app(TestingConfig, clock=FixedClock(NOW))
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def settings(app):
    return app.extensions["clinic_settings"]


@pytest.fixture
def clock(app):
    return app.extensions["clinic_clock"]


@pytest.fixture
def customer(app) -> User:
    user = User(name="Carla Customer", email="carla@example.com", phone="555-0100")
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def make_service(app):
    def _make(name="Laser", duration_minutes=60, price_cents=5000, **fields) -> Service:
        service = Service(name=name, duration_minutes=duration_minutes, price_cents=price_cents, **fields)
        db.session.add(service)
        db.session.commit()
        return service

    return _make


@pytest.fixture
def make_staff(app):
    def _make(name, services=(), schedule=None, **fields) -> Staff:
        """``schedule`` maps weekday (0=Sunday) to a (start, end) pair of times."""
        staff = Staff(name=name, **fields)
        staff.services = list(services)
        for weekday, (start, end) in (schedule or {}).items():
            staff.schedules.append(StaffSchedule(weekday=weekday, start_time=start, end_time=end))
        db.session.add(staff)
        db.session.commit()
        return staff

    return _make


@pytest.fixture
def make_appointment(app):
    def _make(service, staff=None, starts_at=time(10, 0), day=MONDAY, status="confirmed",
              user=None, package=None, duration_minutes=None) -> Appointment:
        appointment = Appointment(
            service_id=service.service_id,
            staff_id=staff.staff_id if staff else None,
            user_id=user.user_id if user else None,
            service_package_id=package.package_id if package else None,
            date=day,
            starts_at=starts_at,
            duration_minutes=duration_minutes or service.duration_minutes,
            price_cents=service.price_cents,
            status=status,
            reference_code=new_reference_code(),
        )
        db.session.add(appointment)
        db.session.commit()
        return appointment

    return _make


@pytest.fixture
def laser(make_service) -> Service:
    return make_service()


@pytest.fixture
def alice(make_staff, laser) -> Staff:
    # Works Monday 09:00-17:00
    return make_staff("Alice", services=[laser], schedule={1: (time(9, 0), time(17, 0))})


@pytest.fixture
def bob(make_staff, laser) -> Staff:
    return make_staff("Bob", services=[laser], schedule={1: (time(9, 0), time(17, 0))})


@pytest.fixture
def session_service(make_service) -> Service:
    return make_service(
        name="Laser 6-pack", duration_minutes=60, price_cents=45000, is_package=True, total_sessions=6
    )


@pytest.fixture
def minutes_service(make_service) -> Service:
    return make_service(
        name="Massage minutes", duration_minutes=30, price_cents=20000, is_package=True, total_minutes=120
    )
