"""Clock and calendar-day helpers. All dates are UTC."""

import re
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def utcnow() -> datetime:
    """Naive UTC now, matching how DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def date_string(value: date) -> str:
    return value.strftime("%Y-%m-%d")


def today_string(clock: Clock = utcnow) -> str:
    return date_string(clock().date())


def is_date_string(value: Optional[str]) -> bool:
    if not value or not _DATE_RE.match(value):
        return False
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        return False
    return True


def days_between(earlier: date, later: date) -> int:
    """Whole calendar days from earlier to later (not elapsed hours)."""
    return (later - earlier).days


def days_ago(clock: Clock, days: int) -> date:
    return clock().date() - timedelta(days=days)
