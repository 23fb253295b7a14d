"""
Timezone utilities for appointment scheduling.

Appointment dates and times are stored as wall-clock values in the booking
timezone; every rule that compares them with "now" converts to UTC first.
"""

from datetime import date, datetime, time, timezone

import pytz

from .config import settings


def get_booking_timezone(tz_name: str | None = None) -> pytz.BaseTzInfo:
    """Return the pytz timezone appointments are expressed in."""
    return pytz.timezone(tz_name or settings.booking_timezone)


def appointment_start_utc(
    booking_date: date, start_time: time, tz_name: str | None = None
) -> datetime:
    """
    Combine an appointment date and wall-clock time into a UTC datetime.

    Args:
        booking_date: Appointment date in the booking timezone
        start_time: Appointment start in the booking timezone
        tz_name: Optional override of the configured booking timezone

    Returns:
        Timezone-aware UTC datetime
    """
    tz = get_booking_timezone(tz_name)
    local = tz.localize(datetime.combine(booking_date, start_time.replace(tzinfo=None)))
    return local.astimezone(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def hours_between(start: datetime, end: datetime) -> float:
    return (ensure_utc(end) - ensure_utc(start)).total_seconds() / 3600.0
