from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo

from config import get_settings
from models import RecurrenceType
from recurrence import interval_days


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def _month_end(first: date) -> date:
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    if not period or period == "all":
        return Period("all", date(1970, 1, 1), today)
    if period == "last_month":
        first_this = today.replace(day=1)
        last_month_end = first_this - date.resolution
        last_month_start = last_month_end.replace(day=1)
        return Period("last_month", last_month_start, last_month_end)
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)

    # this month
    first = today.replace(day=1)
    return Period("this_month", first, _month_end(first))


def month_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def month_period(key: str) -> Period:
    """Window for a ``YYYY-MM`` assignment period key."""
    try:
        year_str, month_str = key.split("-")
        first = date(int(year_str), int(month_str), 1)
    except ValueError as exc:
        raise ValueError(f"Invalid period key: {key!r}") from exc
    return Period(key, first, _month_end(first))


def to_local_date(value: Union[date, datetime]) -> date:
    """Calendar date of a timestamp in the configured household timezone.

    Naive datetimes are UTC, matching how ``UTCDateTime`` columns store them,
    so a value gives the same date before and after it is persisted.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(ZoneInfo(get_settings().timezone)).date()
    return value


def effective_date(
    settled_at: Optional[datetime], created_at: Optional[datetime]
) -> Optional[date]:
    """Settlement date when known, otherwise the date the bank created it."""
    if settled_at is not None:
        return to_local_date(settled_at)
    if created_at is not None:
        return to_local_date(created_at)
    return None


def parse_period_date(value: Union[None, str, date, datetime]) -> Optional[date]:
    """Normalise a stored ``for_period`` to a date-only value.

    Aware datetimes are read in UTC; unparseable strings yield ``None``.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).date()
        return value.date()
    if isinstance(value, date):
        return value
    text = value.strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def period_for_transaction(
    txn_date: date,
    recurrence_type: RecurrenceType,
    *,
    anchor: date,
) -> date:
    """Canonical ``for_period`` bucket for a payment on ``txn_date``.

    Weekly and fortnightly buckets are 7/14-day windows phased on ``anchor``
    (the expense's original due date), so two weekly expenses with different
    due weekdays never share a bucket. Monthly, quarterly and yearly buckets
    are calendar aligned. One-time expenses bucket on ``anchor`` itself.
    """
    recurrence_type = RecurrenceType(recurrence_type)
    length = interval_days(recurrence_type)
    if length is not None:
        offset = (txn_date - anchor).days // length
        return anchor + timedelta(days=offset * length)
    if recurrence_type == RecurrenceType.monthly:
        return txn_date.replace(day=1)
    if recurrence_type == RecurrenceType.quarterly:
        quarter_month = (txn_date.month - 1) // 3 * 3 + 1
        return date(txn_date.year, quarter_month, 1)
    if recurrence_type == RecurrenceType.yearly:
        return date(txn_date.year, 1, 1)
    return anchor
