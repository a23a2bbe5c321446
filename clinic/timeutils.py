"""Date/time parsing, the clinic clock, and the half-open interval test."""
from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import NamedTuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ValidationError

# Effective bounds of a time-off row with a missing side.
DAY_START = time(0, 0, 0)
DAY_END = time(23, 59, 59)


def parse_date(value: object, field: str = "date") -> date:
    """Parse ``YYYY-MM-DD`` (a full ISO datetime is truncated to its date)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} must be in YYYY-MM-DD format", field=field)

    text = value.strip()
    try:
        if len(text) > 10:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        return date.fromisoformat(text)
    except ValueError as exc:
        raise ValidationError(f"{field} must be in YYYY-MM-DD format", field=field) from exc


def normalize_time(value: str) -> str:
    """Normalize ``HH:MM`` to ``HH:MM:SS``; ``HH:MM:SS`` passes through."""
    text = value.strip()
    if len(text) == 5:
        return f"{text}:00"
    return text


def parse_time(value: object, field: str = "starts_at") -> time:
    """Parse ``HH:MM`` or ``HH:MM:SS`` into a ``time``."""
    if isinstance(value, time):
        return value.replace(microsecond=0)
    if not isinstance(value, str) or len(value.strip()) not in (5, 8):
        raise ValidationError(f"{field} must be in HH:MM or HH:MM:SS format", field=field)

    try:
        return datetime.strptime(normalize_time(value), "%H:%M:%S").time()
    except ValueError as exc:
        raise ValidationError(f"{field} must be in HH:MM or HH:MM:SS format", field=field) from exc


def format_time(value: time) -> str:
    return value.strftime("%H:%M:%S")


def weekday_index(day: date) -> int:
    """Weekday with 0=Sunday .. 6=Saturday."""
    return (day.weekday() + 1) % 7


def add_minutes(start: datetime, minutes: int) -> datetime:
    return start + timedelta(minutes=minutes)


def overlaps(start_a, end_a, start_b, end_b) -> bool:
    """Half-open ``[start, end)`` overlap: touching intervals do not overlap."""
    return start_a < end_b and start_b < end_a


class Interval(NamedTuple):
    start: datetime
    end: datetime

    @classmethod
    def from_parts(cls, day: date, starts_at: time, duration_minutes: int) -> "Interval":
        start = datetime.combine(day, starts_at)
        return cls(start, add_minutes(start, duration_minutes))

    def overlaps(self, other: "Interval") -> bool:
        return overlaps(self.start, self.end, other.start, other.end)


class Clock:
    """Current local time in the clinic's timezone.

    Returned values are naive local datetimes, matching how appointment
    dates and times are stored.
    """

    def __init__(self, tz_name: str = "UTC") -> None:
        try:
            self.tz = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {tz_name}") from exc
        self.tz_name = tz_name

    def now(self) -> datetime:
        return datetime.now(self.tz).replace(tzinfo=None, microsecond=0)

    def today(self) -> date:
        return self.now().date()


class FixedClock(Clock):
    """A clock frozen at one instant, for tests and replays."""

    def __init__(self, frozen: datetime, tz_name: str = "UTC") -> None:
        super().__init__(tz_name)
        self.frozen = frozen.replace(tzinfo=None, microsecond=0)

    def now(self) -> datetime:
        return self.frozen
