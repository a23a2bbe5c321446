"""Appointment booking, the status state machine and lifecycle operations.

Every mutating function here writes its own ``AppointmentLog`` entries;
callers never write logs themselves.
"""
from __future__ import annotations

from datetime import datetime
from typing import NamedTuple

from flask import current_app

from .config import ClinicSettings
from .errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from .extensions import db
from .models import APPOINTMENT_STATUSES, Appointment, AppointmentLog, Minutes, Service, Sessions, Staff, User, utc_now
from .packages import (check_validity, create_package, deduct_minutes, deduct_sessions, find_reusable_package,
                       lock_package, restore_deduction)
from .reference import new_reference_code
from .scheduling import assert_no_overlap, eligible_staff, ensure_bookable, fetch_staff_intervals, load_staff_days, no_overlap
from .timeutils import Clock, Interval, add_minutes, format_time, parse_date, parse_time
from .transactions import atomic

TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"confirmed", "cancelled", "no_show"}),
    "confirmed": frozenset({"completed", "cancelled", "no_show"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
    "no_show": frozenset(),
}

OPEN_STATUSES = ("pending", "confirmed")

AUTO_PACKAGE_NOTE = "Auto-created from online booking"


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


# Marks a field of an update command as "not provided", as opposed to None.
UNSET = _Unset()


class AppointmentUpdate(NamedTuple):
    notes: object = UNSET
    admin_notes: object = UNSET


class TransitionResult(NamedTuple):
    appointment: Appointment
    events: list[str]


# ---------------------------------------------------------------------------
# Lookups and logging
# ---------------------------------------------------------------------------

def get_appointment(appointment_id: int, *, lock: bool = False) -> Appointment:
    query = Appointment.query.filter(
        Appointment.appointment_id == appointment_id,
        Appointment.deleted_at.is_(None),
    )
    if lock:
        query = query.with_for_update().populate_existing()
    appointment = query.one_or_none()
    if appointment is None:
        raise NotFoundError("Appointment not found", appointment_id=appointment_id)
    return appointment


def find_by_reference(code: str) -> Appointment:
    code = (code or "").strip().upper()
    appointment = Appointment.query.filter(
        Appointment.reference_code == code,
        Appointment.deleted_at.is_(None),
    ).one_or_none()
    if appointment is None:
        raise NotFoundError("Appointment not found", reference_code=code)
    return appointment


def _log(appointment: Appointment, action: str, meta: dict | None, actor_id: int | None) -> AppointmentLog:
    entry = AppointmentLog(
        appointment_id=appointment.appointment_id,
        action=action,
        meta=meta or {},
        user_id=actor_id,
    )
    db.session.add(entry)
    return entry


def _require_open(appointment: Appointment, action: str) -> None:
    if appointment.status not in OPEN_STATUSES:
        raise ValidationError(
            f"Only pending or confirmed appointments can be {action}",
            status=appointment.status,
        )


def _require_staff(staff_id: int, service_id: int) -> Staff:
    staff = db.session.get(Staff, staff_id)
    if staff is None or not staff.is_active:
        raise NotFoundError("Staff not found", staff_id=staff_id)
    if not staff.covers_service(service_id):
        raise ValidationError(
            "Staff member does not perform this service",
            staff_id=staff_id,
            service_id=service_id,
        )
    return staff


def _require_working(staff_id: int, interval: Interval) -> None:
    day = interval.start.date()
    if not load_staff_days([staff_id], day)[staff_id].covers(interval):
        raise ConflictError(
            "Staff member is not working at the requested time.",
            reason="staff_unavailable",
            staff_id=staff_id,
        )


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

def assert_transition_allowed(from_status: str, to_status: str) -> None:
    if to_status not in TRANSITIONS.get(from_status, frozenset()):
        raise InvalidTransitionError(from_status, to_status)


def _deduct_for_completion(appointment: Appointment, actor_id: int | None) -> list[str]:
    """Charge the attached package once per appointment."""
    if not appointment.service_package_id:
        return []

    already = AppointmentLog.query.filter_by(
        appointment_id=appointment.appointment_id, action="package_deducted"
    ).first()
    if already is not None:
        return []

    package = lock_package(appointment.service_package_id)
    balance = package.balance
    note = f"Completed appointment {appointment.reference_code}"
    if isinstance(balance, Sessions):
        deduct_sessions(
            package.package_id,
            1,
            staff_id=appointment.staff_id,
            note=note,
            appointment_id=appointment.appointment_id,
            appointment_ref=appointment.reference_code,
        )
        meta = {"package_id": package.package_id, "used_sessions": 1}
    else:
        deduct_minutes(
            package.package_id,
            appointment.duration_minutes,
            staff_id=appointment.staff_id,
            note=note,
            appointment_id=appointment.appointment_id,
            appointment_ref=appointment.reference_code,
        )
        meta = {"package_id": package.package_id, "used_minutes": appointment.duration_minutes}

    _log(appointment, "package_deducted", meta, actor_id)
    return ["package_deducted"]


def transition(
    appointment_id: int,
    to_status: str,
    *,
    actor_id: int | None = None,
    note: str | None = None,
) -> TransitionResult:
    """Move an appointment along the transition table.

    Confirming re-runs the overlap guard; completing deducts the attached
    package. The returned events name the side effects that ran.
    """
    if to_status not in APPOINTMENT_STATUSES:
        raise ValidationError(f"Unknown status: {to_status}", field="status")

    with atomic():
        appointment = get_appointment(appointment_id, lock=True)
        from_status = appointment.status
        assert_transition_allowed(from_status, to_status)

        if to_status == "confirmed":
            assert_no_overlap(
                appointment.date,
                appointment.starts_at,
                appointment.duration_minutes,
                appointment.service_id,
                appointment.staff_id,
                ignore_appointment_id=appointment.appointment_id,
            )

        appointment.status = to_status
        meta = {"from": from_status, "to": to_status}
        if note:
            meta["note"] = note
        _log(appointment, "status_changed", meta, actor_id)
        events = ["status_changed"]

        if to_status == "completed":
            events.extend(_deduct_for_completion(appointment, actor_id))

    current_app.logger.info(
        "Appointment %s status %s -> %s", appointment.reference_code, from_status, to_status
    )
    return TransitionResult(appointment, events)


def confirm(appointment_id: int, *, actor_id: int | None = None, note: str | None = None) -> TransitionResult:
    return transition(appointment_id, "confirmed", actor_id=actor_id, note=note)


def complete(appointment_id: int, *, actor_id: int | None = None, note: str | None = None) -> TransitionResult:
    return transition(appointment_id, "completed", actor_id=actor_id, note=note)


def cancel(appointment_id: int, *, actor_id: int | None = None, note: str | None = None) -> TransitionResult:
    return transition(appointment_id, "cancelled", actor_id=actor_id, note=note)


def mark_no_show(appointment_id: int, *, actor_id: int | None = None, note: str | None = None) -> TransitionResult:
    return transition(appointment_id, "no_show", actor_id=actor_id, note=note)


def revert_completion(
    appointment_id: int, *, actor_id: int | None = None, note: str | None = None
) -> TransitionResult:
    """Administrative correction of a mistaken completion.

    Gives the package deduction back, then moves the appointment to
    cancelled. This edge is deliberately absent from ``TRANSITIONS``.
    """
    with atomic():
        appointment = get_appointment(appointment_id, lock=True)
        if appointment.status != "completed":
            raise InvalidTransitionError(
                appointment.status,
                "cancelled",
                "Only completed appointments can be reverted",
            )

        events = []
        if appointment.service_package_id:
            package = lock_package(appointment.service_package_id)
            before = package.balance
            package = restore_deduction(
                package.package_id,
                appointment_id=appointment.appointment_id,
                appointment_ref=appointment.reference_code,
                note=note or f"Completion of {appointment.reference_code} reverted",
            )
            after = package.balance
            if after != before:
                restored = after.count - before.count
                key = "restored_sessions" if isinstance(after, Sessions) else "restored_minutes"
                _log(appointment, "package_restored", {"package_id": package.package_id, key: restored}, actor_id)
                events.append("package_restored")

        appointment.status = "cancelled"
        meta = {"from": "completed", "to": "cancelled", "administrative": True}
        if note:
            meta["note"] = note
        _log(appointment, "status_changed", meta, actor_id)
        events.append("status_changed")

    current_app.logger.info("Appointment %s completion reverted", appointment.reference_code)
    return TransitionResult(appointment, events)


def cancel_by_customer(
    appointment_id: int,
    user_id: int,
    *,
    settings: ClinicSettings,
    clock: Clock,
    note: str | None = None,
) -> TransitionResult:
    appointment = get_appointment(appointment_id)
    if appointment.user_id is None or appointment.user_id != user_id:
        raise NotFoundError("Appointment not found", appointment_id=appointment_id)

    assert_transition_allowed(appointment.status, "cancelled")

    starts = datetime.combine(appointment.date, appointment.starts_at)
    if starts < add_minutes(clock.now(), settings.cancel_notice_minutes):
        raise ValidationError(
            f"Appointments can only be cancelled at least {settings.cancel_notice_minutes} minutes in advance",
            appointment_id=appointment_id,
        )
    return transition(appointment_id, "cancelled", actor_id=user_id, note=note)


# ---------------------------------------------------------------------------
# Booking
# ---------------------------------------------------------------------------

def _check_booking_window(interval: Interval, settings: ClinicSettings, clock: Clock) -> None:
    if not settings.allow_past_dates:
        earliest = add_minutes(clock.now(), settings.min_notice_minutes)
        if interval.start < earliest:
            raise ValidationError(
                f"Appointments must be booked at least {settings.min_notice_minutes} minutes in advance",
                field="starts_at",
            )

    day = interval.start.date()
    workday_start = datetime.combine(day, settings.workday_start)
    workday_end = datetime.combine(day, settings.workday_end)
    if interval.start < workday_start or interval.end > workday_end:
        raise ValidationError("Requested time is outside working hours", field="starts_at")


def _pick_staff(candidates: list[Staff], service: Service, interval: Interval) -> Staff:
    """First candidate, in staff-list order, that passes a locked overlap check."""
    day = interval.start.date()
    staff_ids = [staff.staff_id for staff in candidates]
    staff_days = load_staff_days(staff_ids, day)
    staff_intervals = fetch_staff_intervals(staff_ids, day)

    last_conflict = None
    for staff in candidates:
        if not staff_days[staff.staff_id].covers(interval):
            continue
        if not no_overlap(staff_intervals.get(staff.staff_id, []), interval):
            last_conflict = ConflictError(
                "Time slot overlaps an existing appointment.", axis="staff", staff_id=staff.staff_id
            )
            continue
        try:
            assert_no_overlap(
                day,
                interval.start.time(),
                service.duration_minutes,
                service.service_id,
                staff.staff_id,
            )
        except ConflictError as exc:
            if exc.context.get("axis") == "service":
                raise
            last_conflict = exc
            continue
        return staff

    if last_conflict is not None:
        raise last_conflict
    raise ConflictError("No staff member is available at the requested time.", reason="no_staff_available")


def book_appointment(
    service_id: int,
    day,
    starts_at,
    *,
    settings: ClinicSettings,
    clock: Clock,
    user_id: int | None = None,
    staff_id: int | None = None,
    customer_name: str | None = None,
    customer_email: str | None = None,
    customer_phone: str | None = None,
    notes: str | None = None,
    actor_id: int | None = None,
) -> Appointment:
    """Customer booking: validate the slot, pick staff, snapshot the service.

    Booking a sessions package service links the appointment to the
    customer's oldest usable package, creating one when there is none.
    """
    day = parse_date(day)
    starts_at = parse_time(starts_at)

    with atomic():
        service = ensure_bookable(db.session.get(Service, service_id))
        customer = None
        if user_id is not None:
            customer = db.session.get(User, user_id)
            if customer is None:
                raise NotFoundError("Customer not found", user_id=user_id)

        interval = Interval.from_parts(day, starts_at, service.duration_minutes)
        _check_booking_window(interval, settings, clock)

        if staff_id is not None:
            _require_staff(staff_id, service.service_id)
        candidates = eligible_staff(service, staff_id)
        if not candidates:
            raise ConflictError("No staff member performs this service.", reason="no_staff_available")
        staff = _pick_staff(candidates, service, interval)

        package = None
        if service.is_session_package and user_id is not None:
            package = find_reusable_package(user_id, service.service_id, clock.today())
            if package is None:
                package = create_package(
                    user_id,
                    service,
                    currency=settings.default_currency,
                    starts_on=clock.today(),
                    notes=AUTO_PACKAGE_NOTE,
                )

        appointment = Appointment(
            service_id=service.service_id,
            staff_id=staff.staff_id,
            user_id=user_id,
            service_package_id=package.package_id if package else None,
            date=day,
            starts_at=starts_at,
            duration_minutes=service.duration_minutes,
            price_cents=service.price_cents,
            status="pending",
            reference_code=new_reference_code(),
            customer_name=customer_name or (customer.name if customer else None),
            customer_email=customer_email or (customer.email if customer else None),
            customer_phone=customer_phone or (customer.phone if customer else None),
            notes=notes,
        )
        db.session.add(appointment)
        db.session.flush()

        actor = actor_id if actor_id is not None else user_id
        _log(
            appointment,
            "created",
            {"source": "booking", "staff_id": staff.staff_id, "status": "pending"},
            actor,
        )
        if package is not None:
            _log(appointment, "package_attached", {"package_id": package.package_id}, actor)

    current_app.logger.info(
        "Booked appointment %s for service %s on %s %s",
        appointment.reference_code, service_id, day.isoformat(), format_time(starts_at),
    )
    return appointment


def create_appointment(
    service_id: int,
    day,
    starts_at,
    *,
    staff_id: int | None = None,
    user_id: int | None = None,
    duration_minutes: int | None = None,
    price_cents: int | None = None,
    status: str = "pending",
    service_package_id: int | None = None,
    customer_name: str | None = None,
    customer_email: str | None = None,
    customer_phone: str | None = None,
    notes: str | None = None,
    admin_notes: str | None = None,
    actor_id: int | None = None,
) -> Appointment:
    """Staff-initiated booking. Skips the notice and working-hours checks but
    never the overlap guard."""
    day = parse_date(day)
    starts_at = parse_time(starts_at)
    if status not in OPEN_STATUSES:
        raise ValidationError("status must be pending or confirmed", field="status")

    with atomic():
        service = db.session.get(Service, service_id)
        if service is None:
            raise NotFoundError("Service not found", service_id=service_id)
        if user_id is not None and db.session.get(User, user_id) is None:
            raise NotFoundError("Customer not found", user_id=user_id)
        if staff_id is not None:
            _require_staff(staff_id, service.service_id)

        duration = service.duration_minutes if duration_minutes is None else int(duration_minutes)
        price = service.price_cents if price_cents is None else int(price_cents)
        if price < 0:
            raise ValidationError("price_cents must not be negative", field="price_cents")

        assert_no_overlap(day, starts_at, duration, service.service_id, staff_id)

        appointment = Appointment(
            service_id=service.service_id,
            staff_id=staff_id,
            user_id=user_id,
            date=day,
            starts_at=starts_at,
            duration_minutes=duration,
            price_cents=price,
            status=status,
            reference_code=new_reference_code(),
            customer_name=customer_name,
            customer_email=customer_email,
            customer_phone=customer_phone,
            notes=notes,
            admin_notes=admin_notes,
        )
        db.session.add(appointment)
        db.session.flush()
        _log(
            appointment,
            "created",
            {"source": "admin", "staff_id": staff_id, "status": status},
            actor_id,
        )

        if service_package_id is not None:
            attach_package(appointment.appointment_id, service_package_id, actor_id=actor_id)

    current_app.logger.info("Created appointment %s for service %s", appointment.reference_code, service_id)
    return appointment


# ---------------------------------------------------------------------------
# Lifecycle edits
# ---------------------------------------------------------------------------

def reschedule(
    appointment_id: int,
    day,
    starts_at,
    *,
    actor_id: int | None = None,
    staff_id: int | None = None,
) -> Appointment:
    """Move an open appointment. Duration stays the booking snapshot and the
    status is left as it is."""
    day = parse_date(day)
    starts_at = parse_time(starts_at)

    with atomic():
        appointment = get_appointment(appointment_id, lock=True)
        _require_open(appointment, "rescheduled")

        target_staff_id = staff_id if staff_id is not None else appointment.staff_id
        interval = Interval.from_parts(day, starts_at, appointment.duration_minutes)
        if target_staff_id is not None:
            if target_staff_id != appointment.staff_id:
                _require_staff(target_staff_id, appointment.service_id)
            _require_working(target_staff_id, interval)

        assert_no_overlap(
            day,
            starts_at,
            appointment.duration_minutes,
            appointment.service_id,
            target_staff_id,
            ignore_appointment_id=appointment.appointment_id,
        )

        previous = {
            "date": appointment.date.isoformat(),
            "starts_at": format_time(appointment.starts_at),
            "staff_id": appointment.staff_id,
        }
        appointment.date = day
        appointment.starts_at = starts_at
        appointment.staff_id = target_staff_id
        _log(
            appointment,
            "rescheduled",
            {
                "from": previous,
                "to": {"date": day.isoformat(), "starts_at": format_time(starts_at), "staff_id": target_staff_id},
            },
            actor_id,
        )

    current_app.logger.info("Rescheduled appointment %s", appointment.reference_code)
    return appointment


def reassign_staff(appointment_id: int, staff_id: int, *, actor_id: int | None = None) -> Appointment:
    with atomic():
        appointment = get_appointment(appointment_id, lock=True)
        _require_open(appointment, "reassigned")
        previous = appointment.staff_id
        if previous == staff_id:
            return appointment

        _require_staff(staff_id, appointment.service_id)
        _require_working(staff_id, appointment.interval)
        assert_no_overlap(
            appointment.date,
            appointment.starts_at,
            appointment.duration_minutes,
            appointment.service_id,
            staff_id,
            ignore_appointment_id=appointment.appointment_id,
        )

        appointment.staff_id = staff_id
        action = "assigned" if previous is None else "reassigned"
        _log(appointment, action, {"from_staff_id": previous, "to_staff_id": staff_id}, actor_id)

    return appointment


def update_appointment(
    appointment_id: int, update: AppointmentUpdate, *, actor_id: int | None = None
) -> Appointment:
    """Apply the provided fields; ``UNSET`` leaves a field alone, None clears it."""
    with atomic():
        appointment = get_appointment(appointment_id, lock=True)
        diff = {}
        for field, value in update._asdict().items():
            if value is UNSET:
                continue
            current = getattr(appointment, field)
            if value != current:
                diff[field] = {"from": current, "to": value}
                setattr(appointment, field, value)
        if diff:
            _log(appointment, "notes_updated", diff, actor_id)
    return appointment


def delete_appointment(appointment_id: int, *, actor_id: int | None = None) -> Appointment:
    with atomic():
        appointment = get_appointment(appointment_id, lock=True)
        appointment.deleted_at = utc_now()
        _log(appointment, "deleted", {"status": appointment.status}, actor_id)

    current_app.logger.info("Deleted appointment %s", appointment.reference_code)
    return appointment


def attach_package(appointment_id: int, package_id: int, *, actor_id: int | None = None) -> Appointment:
    """Link an open appointment to a package of the same customer and service."""
    with atomic():
        appointment = get_appointment(appointment_id, lock=True)
        _require_open(appointment, "linked to a package")
        if appointment.service_package_id == package_id:
            return appointment
        if appointment.service_package_id is not None:
            raise ValidationError(
                "Appointment already has a package; detach it first",
                package_id=appointment.service_package_id,
            )

        package = lock_package(package_id)
        if appointment.user_id is None or package.user_id != appointment.user_id:
            raise ValidationError("Package belongs to another customer", package_id=package_id)
        if package.service_id != appointment.service_id:
            raise ValidationError("Package is for a different service", package_id=package_id)
        if package.status != "active":
            raise ValidationError("Package is not active", package_id=package_id, status=package.status)
        check_validity(package, appointment.date)
        balance = package.balance
        if isinstance(balance, Sessions) and balance.count <= 0:
            raise ValidationError("Package has no sessions left", package_id=package_id)

        appointment.service_package_id = package.package_id
        meta = {"package_id": package.package_id}
        if isinstance(balance, Minutes):
            meta["remaining_minutes"] = balance.count
        _log(appointment, "package_attached", meta, actor_id)

    return appointment


def detach_package(appointment_id: int, *, actor_id: int | None = None) -> Appointment:
    with atomic():
        appointment = get_appointment(appointment_id, lock=True)
        if appointment.service_package_id is None:
            raise ValidationError("Appointment has no package", appointment_id=appointment_id)
        if appointment.status == "completed":
            raise ValidationError(
                "Cannot detach a package from a completed appointment; revert the completion first",
                appointment_id=appointment_id,
            )

        package_id = appointment.service_package_id
        appointment.service_package_id = None
        _log(appointment, "package_detached", {"package_id": package_id}, actor_id)

    return appointment
