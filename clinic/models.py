"""Database models for the clinic booking backend."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import NamedTuple, Union

from sqlalchemy import func

from .errors import InvariantViolationError
from .extensions import db
from .timeutils import Interval, format_time


def utc_now() -> datetime:
    """Return a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _money(cents: int | None) -> float | None:
    return cents / 100.0 if cents is not None else None


APPOINTMENT_STATUSES = ("pending", "confirmed", "completed", "cancelled", "no_show")

# Statuses whose appointments hold their staff member and service.
BLOCKING_STATUSES = ("pending", "confirmed", "completed")

APPOINTMENT_LOG_ACTIONS = (
    "created",
    "status_changed",
    "assigned",
    "reassigned",
    "package_attached",
    "package_detached",
    "package_deducted",
    "package_restored",
    "notes_updated",
    "rescheduled",
    "deleted",
)

PACKAGE_STATUSES = ("active", "exhausted", "expired", "cancelled")

PAYMENT_METHODS = ("cash", "card", "bank", "other")


# Which staff members can perform which services.
staff_services = db.Table(
    "staff_services",
    db.Column("staff_id", db.Integer, db.ForeignKey("staff.staff_id"), primary_key=True),
    db.Column("service_id", db.Integer, db.ForeignKey("services.service_id"), primary_key=True),
)


class User(db.Model):
    __tablename__ = "users"

    user_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=True)
    phone = db.Column(db.String(30), unique=True, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    def to_dict_basic(self) -> dict[str, object]:
        return {
            "id": self.user_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
        }


class Service(db.Model):
    """Bookable service. Package services define sessions or minutes."""

    __tablename__ = "services"

    service_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text)
    duration_minutes = db.Column(db.Integer, nullable=False, default=60)
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_bookable = db.Column(db.Boolean, nullable=False, default=True)
    is_package = db.Column(db.Boolean, nullable=False, default=False)
    total_sessions = db.Column(db.Integer, nullable=True)
    total_minutes = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    staff = db.relationship("Staff", secondary=staff_services, back_populates="services")

    @property
    def is_session_package(self) -> bool:
        return bool(self.is_package and (self.total_sessions or 0) > 0)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.service_id,
            "name": self.name,
            "description": self.description,
            "duration_minutes": self.duration_minutes,
            "price_cents": self.price_cents,
            "price": _money(self.price_cents),
            "is_active": bool(self.is_active),
            "is_bookable": bool(self.is_bookable),
            "is_package": bool(self.is_package),
            "total_sessions": self.total_sessions,
            "total_minutes": self.total_minutes,
        }


class Staff(db.Model):
    __tablename__ = "staff"

    staff_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255))
    phone = db.Column(db.String(30))
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    user = db.relationship("User")
    services = db.relationship("Service", secondary=staff_services, back_populates="staff")
    schedules = db.relationship("StaffSchedule", back_populates="staff", cascade="all, delete-orphan")
    time_off = db.relationship("StaffTimeOff", back_populates="staff", cascade="all, delete-orphan")

    def covers_service(self, service_id: int) -> bool:
        return any(service.service_id == service_id for service in self.services)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.staff_id,
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "is_active": bool(self.is_active),
        }


class StaffSchedule(db.Model):
    """Weekly working window for a staff member, one per weekday."""

    __tablename__ = "staff_schedules"
    __table_args__ = (
        db.UniqueConstraint("staff_id", "weekday", name="uq_staff_schedules_staff_weekday"),
        db.CheckConstraint("start_time < end_time", name="ck_staff_schedules_window"),
    )

    schedule_id = db.Column(db.Integer, primary_key=True)
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.staff_id"), nullable=False)
    weekday = db.Column(db.Integer, nullable=False)  # 0=Sunday, 1=Monday, etc.
    start_time = db.Column(db.Time, nullable=False)
    end_time = db.Column(db.Time, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    staff = db.relationship("Staff", back_populates="schedules")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.schedule_id,
            "staff_id": self.staff_id,
            "weekday": self.weekday,
            "start_time": format_time(self.start_time),
            "end_time": format_time(self.end_time),
            "is_active": bool(self.is_active),
        }


class StaffTimeOff(db.Model):
    """Date-specific carve-out. Null start and end means the whole day."""

    __tablename__ = "staff_time_off"

    time_off_id = db.Column(db.Integer, primary_key=True)
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.staff_id"), nullable=False, index=True)
    date = db.Column(db.Date, nullable=False)
    start_time = db.Column(db.Time, nullable=True)
    end_time = db.Column(db.Time, nullable=True)
    reason = db.Column(db.String(255))

    staff = db.relationship("Staff", back_populates="time_off")

    @property
    def is_full_day(self) -> bool:
        return self.start_time is None and self.end_time is None


class Appointment(db.Model):
    __tablename__ = "appointments"
    __table_args__ = (
        db.Index("ix_appointments_date_staff", "date", "staff_id", "status"),
        db.Index("ix_appointments_date_service", "date", "service_id", "status"),
    )

    appointment_id = db.Column(db.Integer, primary_key=True)
    service_id = db.Column(db.Integer, db.ForeignKey("services.service_id"), nullable=False)
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.staff_id"), nullable=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=True)
    service_package_id = db.Column(db.Integer, db.ForeignKey("service_packages.package_id"), nullable=True)
    date = db.Column(db.Date, nullable=False)
    starts_at = db.Column(db.Time, nullable=False)
    # Snapshots taken from the service at booking time.
    duration_minutes = db.Column(db.Integer, nullable=False)
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(
        db.Enum(
            *APPOINTMENT_STATUSES,
            name="appointment_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default="pending",
        server_default="pending",
    )
    reference_code = db.Column(db.String(16), unique=True, nullable=False)
    customer_name = db.Column(db.String(100))
    customer_email = db.Column(db.String(255))
    customer_phone = db.Column(db.String(30))
    notes = db.Column(db.Text)
    admin_notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)
    deleted_at = db.Column(db.DateTime, nullable=True)

    service = db.relationship("Service")
    staff = db.relationship("Staff")
    client = db.relationship("User")
    package = db.relationship("ServicePackage", back_populates="appointments")
    logs = db.relationship(
        "AppointmentLog",
        back_populates="appointment",
        order_by="AppointmentLog.log_id",
    )
    payments = db.relationship("PackagePayment", back_populates="appointment")

    @property
    def interval(self) -> Interval:
        return Interval.from_parts(self.date, self.starts_at, self.duration_minutes)

    @property
    def amount_paid_cents(self) -> int:
        return sum(p.amount_cents for p in self.payments if p.voided_at is None)

    @property
    def remaining_to_pay_cents(self) -> int:
        # Package sessions are paid on the package, not per appointment.
        if self.service_package_id:
            return 0
        return max((self.price_cents or 0) - self.amount_paid_cents, 0)

    def to_dict(self) -> dict[str, object]:
        interval = self.interval
        return {
            "id": self.appointment_id,
            "reference_code": self.reference_code,
            "service_id": self.service_id,
            "service": {
                "id": self.service.service_id,
                "name": self.service.name,
            } if self.service else None,
            "staff_id": self.staff_id,
            "staff": {
                "id": self.staff.staff_id,
                "name": self.staff.name,
            } if self.staff else None,
            "user_id": self.user_id,
            "service_package_id": self.service_package_id,
            "date": self.date.isoformat(),
            "starts_at": format_time(self.starts_at),
            "ends_at": interval.end.strftime("%H:%M:%S"),
            "duration_minutes": self.duration_minutes,
            "price_cents": self.price_cents,
            "price": _money(self.price_cents),
            "amount_paid_cents": self.amount_paid_cents,
            "remaining_to_pay_cents": self.remaining_to_pay_cents,
            "status": self.status,
            "customer": {
                "name": self.customer_name,
                "email": self.customer_email,
                "phone": self.customer_phone,
            },
            "notes": self.notes,
            "admin_notes": self.admin_notes,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class AppointmentLog(db.Model):
    """Append-only audit trail for an appointment."""

    __tablename__ = "appointment_logs"

    log_id = db.Column(db.Integer, primary_key=True)
    appointment_id = db.Column(
        db.Integer, db.ForeignKey("appointments.appointment_id"), nullable=False, index=True
    )
    action = db.Column(
        db.Enum(
            *APPOINTMENT_LOG_ACTIONS,
            name="appointment_log_action",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
    )
    meta = db.Column(db.JSON, nullable=True, default=dict)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    appointment = db.relationship("Appointment", back_populates="logs")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.log_id,
            "appointment_id": self.appointment_id,
            "action": self.action,
            "meta": self.meta or {},
            "performed_by": self.user_id,
            "created_at": _iso(self.created_at),
        }


class Sessions(NamedTuple):
    count: int


class Minutes(NamedTuple):
    count: int


PackageBalance = Union[Sessions, Minutes]


class ServicePackage(db.Model):
    """Prepaid bundle of sessions or minutes owned by a customer."""

    __tablename__ = "service_packages"
    __table_args__ = (
        db.CheckConstraint(
            "(remaining_sessions IS NULL) <> (remaining_minutes IS NULL)",
            name="ck_service_packages_one_balance",
        ),
        db.Index("ix_service_packages_owner", "user_id", "service_id", "status"),
    )

    package_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    service_id = db.Column(db.Integer, db.ForeignKey("services.service_id"), nullable=False)
    service_name = db.Column(db.String(150))
    snapshot_total_sessions = db.Column(db.Integer, nullable=True)
    snapshot_total_minutes = db.Column(db.Integer, nullable=True)
    remaining_sessions = db.Column(db.Integer, nullable=True)
    remaining_minutes = db.Column(db.Integer, nullable=True)
    price_total_cents = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="EUR")
    status = db.Column(
        db.Enum(
            *PACKAGE_STATUSES,
            name="package_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default="active",
        server_default="active",
    )
    starts_on = db.Column(db.Date, nullable=True)
    expires_on = db.Column(db.Date, nullable=True)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    owner = db.relationship("User")
    service = db.relationship("Service")
    appointments = db.relationship("Appointment", back_populates="package")
    logs = db.relationship("PackageLog", back_populates="package", order_by="PackageLog.log_id")
    payments = db.relationship("PackagePayment", back_populates="package")

    @property
    def balance(self) -> PackageBalance:
        sessions, minutes = self.remaining_sessions, self.remaining_minutes
        if sessions is not None and minutes is None:
            return Sessions(sessions)
        if minutes is not None and sessions is None:
            return Minutes(minutes)
        raise InvariantViolationError(
            "Package must track exactly one of sessions or minutes",
            package_id=self.package_id,
        )

    @balance.setter
    def balance(self, value: PackageBalance) -> None:
        if isinstance(value, Sessions):
            self.remaining_sessions, self.remaining_minutes = value.count, None
        elif isinstance(value, Minutes):
            self.remaining_sessions, self.remaining_minutes = None, value.count
        else:
            raise TypeError(f"Unsupported package balance: {value!r}")

    @property
    def amount_paid_cents(self) -> int:
        paid = (
            db.session.query(func.coalesce(func.sum(PackagePayment.amount_cents), 0))
            .filter(
                PackagePayment.service_package_id == self.package_id,
                PackagePayment.voided_at.is_(None),
            )
            .scalar()
        )
        return int(paid or 0)

    @property
    def remaining_to_pay_cents(self) -> int:
        return max((self.price_total_cents or 0) - self.amount_paid_cents, 0)

    def to_dict(self) -> dict[str, object]:
        paid = self.amount_paid_cents
        return {
            "id": self.package_id,
            "user_id": self.user_id,
            "service_id": self.service_id,
            "service_name": self.service_name,
            "type": "sessions" if self.remaining_sessions is not None else "minutes",
            "snapshot_total_sessions": self.snapshot_total_sessions,
            "snapshot_total_minutes": self.snapshot_total_minutes,
            "remaining_sessions": self.remaining_sessions,
            "remaining_minutes": self.remaining_minutes,
            "price_total_cents": self.price_total_cents,
            "amount_paid_cents": paid,
            "remaining_to_pay_cents": max((self.price_total_cents or 0) - paid, 0),
            "currency": self.currency,
            "status": self.status,
            "starts_on": _iso(self.starts_on),
            "expires_on": _iso(self.expires_on),
            "notes": self.notes,
        }


class PackageLog(db.Model):
    """Ledger entry for a package deduction, or the audit row of a rollback."""

    __tablename__ = "package_logs"

    log_id = db.Column(db.Integer, primary_key=True)
    service_package_id = db.Column(
        db.Integer, db.ForeignKey("service_packages.package_id"), nullable=False, index=True
    )
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.staff_id"), nullable=True)
    appointment_id = db.Column(db.Integer, db.ForeignKey("appointments.appointment_id"), nullable=True)
    appointment_ref = db.Column(db.String(16), nullable=True)
    used_sessions = db.Column(db.Integer, nullable=True)
    used_minutes = db.Column(db.Integer, nullable=True)
    # Set on rollback rows: the deduction they reversed.
    reverses_log_id = db.Column(db.Integer, db.ForeignKey("package_logs.log_id"), nullable=True)
    used_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    note = db.Column(db.Text)

    package = db.relationship("ServicePackage", back_populates="logs")

    @property
    def is_rollback(self) -> bool:
        return self.reverses_log_id is not None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.log_id,
            "package_id": self.service_package_id,
            "staff_id": self.staff_id,
            "appointment_id": self.appointment_id,
            "appointment_ref": self.appointment_ref,
            "used_sessions": self.used_sessions,
            "used_minutes": self.used_minutes,
            "reverses_log_id": self.reverses_log_id,
            "used_at": _iso(self.used_at),
            "note": self.note,
        }


class PackagePayment(db.Model):
    """Payment against a package or, for one-time services, an appointment."""

    __tablename__ = "package_payments"
    __table_args__ = (
        db.CheckConstraint(
            "(service_package_id IS NULL) <> (appointment_id IS NULL)",
            name="ck_package_payments_single_target",
        ),
    )

    payment_id = db.Column(db.Integer, primary_key=True)
    service_package_id = db.Column(
        db.Integer, db.ForeignKey("service_packages.package_id"), nullable=True, index=True
    )
    appointment_id = db.Column(
        db.Integer, db.ForeignKey("appointments.appointment_id"), nullable=True, index=True
    )
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=True)
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.staff_id"), nullable=True)
    recorded_by = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=True)
    method = db.Column(
        db.Enum(
            *PAYMENT_METHODS,
            name="payment_method",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
    )
    amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    notes = db.Column(db.Text)
    voided_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    package = db.relationship("ServicePackage", back_populates="payments")
    appointment = db.relationship("Appointment", back_populates="payments")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.payment_id,
            "package_id": self.service_package_id,
            "appointment_id": self.appointment_id,
            "user_id": self.user_id,
            "staff_id": self.staff_id,
            "method": self.method,
            "amount_cents": self.amount_cents,
            "amount": _money(self.amount_cents),
            "currency": self.currency,
            "notes": self.notes,
            "voided_at": _iso(self.voided_at),
            "created_at": _iso(self.created_at),
        }
