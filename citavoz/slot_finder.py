"""
Free slot suggestions for a single day.

Sweeps a cursor through the day's appointments (sorted by start) and emits
the cursor as a candidate start time whenever the requested duration fits
before the next appointment. The number of suggestions is capped; the cap is
a presentation limit (max_suggested_slots setting), not a correctness one.
"""

from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional

from citavoz.appointment_models import Appointment
from citavoz.logging_helper import Log

DEFAULT_WORK_START_HOUR = 8
DEFAULT_WORK_END_HOUR = 18
DEFAULT_MAX_SLOTS = 5


def _calendar_date(moment: datetime, reference: datetime) -> date:
    # Compare calendar dates in the reference day's timezone when both are aware
    if moment.tzinfo is not None and reference.tzinfo is not None:
        return moment.astimezone(reference.tzinfo).date()
    return moment.date()


def appointments_on_day(reference_day: datetime, pool: Iterable[Appointment]) -> List[Appointment]:
    """Appointments whose start falls on reference_day's calendar date, sorted by start."""
    day = reference_day.date()
    same_day = [appt for appt in pool if _calendar_date(appt.start, reference_day) == day]
    return sorted(same_day, key=lambda appt: appt.start)


def find_available_slots(
    reference_day: datetime,
    pool: Iterable[Appointment],
    duration_minutes: int = 30,
    work_start_hour: int = DEFAULT_WORK_START_HOUR,
    work_end_hour: int = DEFAULT_WORK_END_HOUR,
    max_slots: Optional[int] = DEFAULT_MAX_SLOTS,
) -> List[datetime]:
    """
    Find candidate start times for a new appointment on reference_day.

    Args:
        reference_day: Any moment on the day to search (its tzinfo is kept)
        pool: Appointments to avoid; the caller scopes it (e.g. excluding
            the appointment being rescheduled)
        duration_minutes: Length of the appointment to place
        work_start_hour: First bookable hour (default 8)
        work_end_hour: Hour by which the appointment must end (default 18)
        max_slots: Maximum number of suggestions, earliest first
            (None for no cap)

    Returns:
        Start times in ascending order. Booked for duration_minutes, each one
        stays inside working hours and overlaps no appointment of that day.
    """
    if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int) or duration_minutes <= 0:
        raise ValueError(f"duration_minutes must be a positive integer, got {duration_minutes!r}")
    if not 0 <= work_start_hour < work_end_hour <= 24:
        raise ValueError(f"Invalid working hours: {work_start_hour}-{work_end_hour}")

    midnight = reference_day.replace(hour=0, minute=0, second=0, microsecond=0)
    work_start = midnight + timedelta(hours=work_start_hour)
    work_end = midnight + timedelta(hours=work_end_hour)
    duration = timedelta(minutes=duration_minutes)

    day_appointments = appointments_on_day(reference_day, pool)

    available: List[datetime] = []
    cursor = work_start
    for appointment in day_appointments:
        # Gap between the cursor and the next appointment
        if cursor + duration <= appointment.start and cursor + duration <= work_end:
            available.append(cursor)
        # Never move backwards when appointments overlap each other
        cursor = max(cursor, appointment.end)

    if cursor + duration <= work_end:
        available.append(cursor)

    if max_slots is not None:
        available = available[:max_slots]

    Log.kv({
        "stage": "slots",
        "day": reference_day.date().isoformat(),
        "duration_min": duration_minutes,
        "day_appointments": len(day_appointments),
        "slots": ",".join(slot.strftime("%H:%M") for slot in available) or "none",
    })
    return available
