from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from models import RecurrenceType


MAX_ADVANCE_ITERATIONS = 10_000

_MONTH_STEPS = {
    RecurrenceType.monthly: 1,
    RecurrenceType.quarterly: 3,
    RecurrenceType.yearly: 12,
}

_DAY_STEPS = {
    RecurrenceType.weekly: 7,
    RecurrenceType.fortnightly: 14,
}


class RecurrenceLimitExceeded(ValueError):
    pass


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int, *, desired_day: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1

    dim = days_in_month(year, month)
    if desired_day > dim:
        day = dim
    else:
        day = desired_day
    return date(year, month, day)


def interval_days(recurrence_type: RecurrenceType) -> Optional[int]:
    """Fixed length in days for weekly cadences, ``None`` for calendar ones."""
    return _DAY_STEPS.get(RecurrenceType(recurrence_type))


def next_occurrence(
    current: date,
    recurrence_type: RecurrenceType,
    *,
    anchor_day: Optional[int] = None,
) -> date:
    """Return the occurrence after ``current``.

    Calendar cadences keep ``anchor_day`` (defaulting to ``current.day``) and
    clamp to the last day of shorter months, so an anchor of 31 goes
    Jan 31 -> Feb 28 -> Mar 31.
    """
    recurrence_type = RecurrenceType(recurrence_type)
    if recurrence_type in _DAY_STEPS:
        return current + timedelta(days=_DAY_STEPS[recurrence_type])
    if recurrence_type in _MONTH_STEPS:
        return add_months(
            current,
            _MONTH_STEPS[recurrence_type],
            desired_day=anchor_day or current.day,
        )
    raise ValueError("One-time expenses have no next occurrence")


def advance_past_date(
    current_due: date,
    recurrence_type: RecurrenceType,
    reference_date: date,
    *,
    anchor_day: Optional[int] = None,
) -> date:
    """Advance ``current_due`` until it is strictly after ``reference_date``.

    A due date already after the reference is returned unchanged.
    """
    next_due = current_due
    iterations = 0
    while next_due <= reference_date:
        if iterations >= MAX_ADVANCE_ITERATIONS:
            raise RecurrenceLimitExceeded(
                f"Due date {current_due} did not pass {reference_date} "
                f"after {MAX_ADVANCE_ITERATIONS} {recurrence_type} steps"
            )
        candidate = next_occurrence(next_due, recurrence_type, anchor_day=anchor_day)
        if candidate <= next_due:
            raise RecurrenceLimitExceeded(
                f"Recurrence {recurrence_type} did not move forward from {next_due}"
            )
        next_due = candidate
        iterations += 1
    return next_due
