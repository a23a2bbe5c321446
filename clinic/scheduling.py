"""Staff availability, slot generation and the double-booking guard.

Availability answers "may this staff member work this interval"; the
overlap guard answers "is the staff member or the service already taken".
Slot generation prefetches everything it needs for the day once and then
runs both checks as pure functions over the in-memory data.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import NamedTuple

from sqlalchemy import or_

from .config import ALLOWED_SLOT_STEPS, ClinicSettings
from .errors import ConflictError, NotFoundError, ValidationError
from .extensions import db
from .models import BLOCKING_STATUSES, Appointment, Service, Staff, StaffSchedule, StaffTimeOff
from .timeutils import (DAY_END, DAY_START, Clock, Interval, add_minutes, overlaps, parse_date,
                        parse_time, weekday_index)


class Slot(NamedTuple):
    start: datetime
    end: datetime

    def to_dict(self) -> dict[str, str]:
        return {
            "time": self.start.strftime("%H:%M:%S"),
            "start_iso": self.start.isoformat(),
            "end_iso": self.end.isoformat(),
        }


# ---------------------------------------------------------------------------
# Availability resolver
# ---------------------------------------------------------------------------

class StaffDay:
    """A staff member's working window and time off for one date."""

    def __init__(self, staff_id: int, day: date, window: StaffSchedule | None, time_off: list[StaffTimeOff]):
        self.staff_id = staff_id
        self.day = day
        self.window = window
        self.time_off = time_off

    def covers(self, interval: Interval) -> bool:
        window = self.window
        if window is None or not window.is_active:
            return False

        window_start = datetime.combine(self.day, window.start_time)
        window_end = datetime.combine(self.day, window.end_time)
        if window_start > interval.start or window_end < interval.end:
            return False

        for off in self.time_off:
            if off.is_full_day:
                return False
            off_start = datetime.combine(self.day, off.start_time or DAY_START)
            off_end = datetime.combine(self.day, off.end_time or DAY_END)
            if overlaps(interval.start, interval.end, off_start, off_end):
                return False
        return True


def load_staff_days(staff_ids: list[int], day: date) -> dict[int, StaffDay]:
    """Fetch windows and time off for several staff members in two queries."""
    if not staff_ids:
        return {}

    windows = {
        row.staff_id: row
        for row in StaffSchedule.query.filter(
            StaffSchedule.staff_id.in_(staff_ids),
            StaffSchedule.weekday == weekday_index(day),
        )
    }
    time_off: dict[int, list[StaffTimeOff]] = {}
    for row in StaffTimeOff.query.filter(StaffTimeOff.staff_id.in_(staff_ids), StaffTimeOff.date == day):
        time_off.setdefault(row.staff_id, []).append(row)

    return {
        staff_id: StaffDay(staff_id, day, windows.get(staff_id), time_off.get(staff_id, []))
        for staff_id in staff_ids
    }


def is_staff_available(staff: Staff, day, start_time, end_time) -> bool:
    """True when the interval sits inside the staff member's working window
    for that weekday and does not touch any time off.

    Capability (staff performs the service) is checked by the caller.
    """
    day = parse_date(day)
    start = datetime.combine(day, parse_time(start_time, field="start_time"))
    end = datetime.combine(day, parse_time(end_time, field="end_time"))
    if end <= start:
        return False
    return load_staff_days([staff.staff_id], day)[staff.staff_id].covers(Interval(start, end))


# ---------------------------------------------------------------------------
# Interval prefetch
# ---------------------------------------------------------------------------

def _blocking_appointments(day: date, ignore_appointment_id: int | None = None):
    # Neighbouring days too: a late booking can run past midnight.
    query = Appointment.query.filter(
        Appointment.date.between(day - timedelta(days=1), day + timedelta(days=1)),
        Appointment.deleted_at.is_(None),
        Appointment.status.in_(BLOCKING_STATUSES),
    )
    if ignore_appointment_id is not None:
        query = query.filter(Appointment.appointment_id != ignore_appointment_id)
    return query


def fetch_service_intervals(service_id: int, day: date, ignore_appointment_id: int | None = None) -> list[Interval]:
    rows = _blocking_appointments(day, ignore_appointment_id).filter(Appointment.service_id == service_id)
    return [appt.interval for appt in rows]


def fetch_staff_intervals(
    staff_ids: list[int], day: date, ignore_appointment_id: int | None = None
) -> dict[int, list[Interval]]:
    if not staff_ids:
        return {}
    intervals: dict[int, list[Interval]] = {}
    rows = _blocking_appointments(day, ignore_appointment_id).filter(Appointment.staff_id.in_(staff_ids))
    for appt in rows:
        intervals.setdefault(appt.staff_id, []).append(appt.interval)
    return intervals


def no_overlap(intervals: list[Interval], candidate: Interval) -> bool:
    return not any(existing.overlaps(candidate) for existing in intervals)


# ---------------------------------------------------------------------------
# Overlap guard
# ---------------------------------------------------------------------------

def lock_resources(staff_id: int | None, service_id: int) -> None:
    """Row-lock the staff member, then the service.

    Always staff first, then service, so two bookings never wait on each
    other in reverse order.
    """
    if staff_id is not None:
        staff = db.session.query(Staff).filter_by(staff_id=staff_id).with_for_update().one_or_none()
        if staff is None:
            raise NotFoundError("Staff not found", staff_id=staff_id)
    service = db.session.query(Service).filter_by(service_id=service_id).with_for_update().one_or_none()
    if service is None:
        raise NotFoundError("Service not found", service_id=service_id)


def assert_no_overlap(
    day,
    starts_at,
    duration_minutes: int,
    service_id: int,
    staff_id: int | None = None,
    ignore_appointment_id: int | None = None,
    *,
    lock: bool = True,
) -> None:
    """Raise ``ConflictError`` if the interval collides on the service or staff axis.

    Must run inside the transaction that writes the appointment; with
    ``lock`` the staff and service rows stay locked until that commit.
    """
    day = parse_date(day)
    starts_at = parse_time(starts_at)
    if duration_minutes is None or int(duration_minutes) <= 0:
        raise ValidationError("duration_minutes must be a positive integer", field="duration_minutes")

    candidate = Interval.from_parts(day, starts_at, int(duration_minutes))

    if lock:
        lock_resources(staff_id, service_id)

    axis_filter = Appointment.service_id == service_id
    if staff_id is not None:
        axis_filter = or_(axis_filter, Appointment.staff_id == staff_id)

    query = _blocking_appointments(day, ignore_appointment_id).filter(axis_filter)
    if lock:
        query = query.with_for_update()

    for existing in query.order_by(Appointment.starts_at):
        if existing.interval.overlaps(candidate):
            axis = "service" if existing.service_id == service_id else "staff"
            raise ConflictError(
                "Time slot overlaps an existing appointment.",
                axis=axis,
                conflicting_reference=existing.reference_code,
            )


# ---------------------------------------------------------------------------
# Slot generation
# ---------------------------------------------------------------------------

def ensure_bookable(service: Service | None) -> Service:
    if service is None or not service.is_active or not service.is_bookable:
        raise NotFoundError("Service not available")
    return service


def eligible_staff(service: Service, staff_id: int | None = None) -> list[Staff]:
    """Active staff who perform the service, in staff-list order."""
    if staff_id is not None:
        staff = Staff.query.filter_by(staff_id=staff_id, is_active=True).first()
        if staff is None or not staff.covers_service(service.service_id):
            return []
        return [staff]

    return (
        Staff.query.filter(
            Staff.is_active.is_(True),
            Staff.services.any(Service.service_id == service.service_id),
        )
        .order_by(Staff.staff_id)
        .all()
    )


def next_aligned(moment: datetime, step_minutes: int) -> datetime:
    """First step-aligned minute at or after ``moment``."""
    aligned = moment.replace(second=0, microsecond=0)
    if aligned < moment:
        aligned += timedelta(minutes=1)
    remainder = aligned.minute % step_minutes
    if remainder:
        aligned += timedelta(minutes=step_minutes - remainder)
    return aligned


def resolve_workday(day: date, settings: ClinicSettings, clock: Clock, step_minutes: int) -> Interval | None:
    """Bookable window for ``day``, or None when the day is in the past."""
    now = clock.now()
    if day < now.date() and not settings.allow_past_dates:
        return None

    start = datetime.combine(day, settings.workday_start)
    end = datetime.combine(day, settings.workday_end)

    if day == now.date():
        earliest = next_aligned(add_minutes(now, settings.min_notice_minutes), step_minutes)
        if earliest > start:
            start = earliest
    return Interval(start, end)


def generate_slots(
    service: Service,
    day,
    *,
    settings: ClinicSettings,
    clock: Clock,
    staff_id: int | None = None,
    step_minutes: int | None = None,
) -> list[Slot]:
    """Start times where the whole service fits for at least one eligible
    staff member and the service itself is free.

    With ``staff_id`` only that staff member is considered. Without it the
    caller is not told which staff member would serve the slot; that is
    decided at booking time.
    """
    ensure_bookable(service)
    day = parse_date(day)
    step = int(step_minutes or settings.slot_step_minutes)
    if step not in ALLOWED_SLOT_STEPS:
        raise ValidationError(f"step must be one of {', '.join(map(str, ALLOWED_SLOT_STEPS))}", field="step")

    workday = resolve_workday(day, settings, clock, step)
    if workday is None:
        return []

    staff_list = eligible_staff(service, staff_id)
    if not staff_list:
        return []

    staff_ids = [staff.staff_id for staff in staff_list]
    staff_days = load_staff_days(staff_ids, day)
    staff_intervals = fetch_staff_intervals(staff_ids, day)
    service_intervals = fetch_service_intervals(service.service_id, day)

    duration = service.duration_minutes
    slots: list[Slot] = []
    cursor = workday.start
    while cursor < workday.end:
        candidate = Interval(cursor, add_minutes(cursor, duration))
        if candidate.end > workday.end:
            break

        if no_overlap(service_intervals, candidate) and any(
            staff_days[sid].covers(candidate) and no_overlap(staff_intervals.get(sid, []), candidate)
            for sid in staff_ids
        ):
            slots.append(Slot(candidate.start, candidate.end))

        cursor = add_minutes(cursor, step)

    return slots


def staff_for_service(
    service: Service,
    day=None,
    starts_at=None,
    *,
    settings: ClinicSettings,
    duration_minutes: int | None = None,
) -> list[tuple[Staff, bool | None]]:
    """Active staff performing the service, ordered by name.

    When a date and start time are given each entry carries an availability
    flag; otherwise the flag is None.
    """
    if not service.is_active:
        raise NotFoundError("Service not available")

    staff_list = (
        Staff.query.filter(
            Staff.is_active.is_(True),
            Staff.services.any(Service.service_id == service.service_id),
        )
        .order_by(Staff.name)
        .all()
    )
    if day is None or starts_at is None:
        return [(staff, None) for staff in staff_list]

    day = parse_date(day)
    duration = int(duration_minutes or service.duration_minutes)
    candidate = Interval.from_parts(day, parse_time(starts_at), duration)
    workday = Interval(
        datetime.combine(day, settings.workday_start),
        datetime.combine(day, settings.workday_end),
    )
    inside_hours = workday.start <= candidate.start and candidate.end <= workday.end

    staff_ids = [staff.staff_id for staff in staff_list]
    staff_days = load_staff_days(staff_ids, day)
    staff_intervals = fetch_staff_intervals(staff_ids, day)
    service_free = no_overlap(fetch_service_intervals(service.service_id, day), candidate)

    return [
        (
            staff,
            inside_hours
            and service_free
            and staff_days[staff.staff_id].covers(candidate)
            and no_overlap(staff_intervals.get(staff.staff_id, []), candidate),
        )
        for staff in staff_list
    ]
