"""
Temporal bound validation for operator-supplied timestamps.

Bounds are compared on calendar days in local time: the time-of-day of the
candidate is kept for storage but ignored when checking it against the
optional minimum and maximum.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, time, tzinfo
from enum import Enum
from typing import Optional, Union
from zoneinfo import ZoneInfo

Instant = Union[datetime, date]

_MMDDYYYY = re.compile(r"^(\d{2})/(\d{2})/(\d{4})$")


class BoundKind(str, Enum):
    """Which bound a candidate violated."""
    BEFORE_MIN = "before_min"
    AFTER_MAX = "after_max"


@dataclass(frozen=True)
class BoundCheckResult:
    """Ok when ``kind`` is None; otherwise the violated bound and its kind."""
    kind: Optional[BoundKind] = None
    bound: Optional[Instant] = None

    @property
    def ok(self) -> bool:
        return self.kind is None


BOUNDS_OK = BoundCheckResult()


def resolve_local_timezone(name: Optional[str]) -> Optional[tzinfo]:
    """Resolve a configured IANA zone name; None means the host's local zone."""
    return ZoneInfo(name) if name else None


def local_day(value: Instant, tz: Optional[tzinfo] = None) -> date:
    """Calendar day of an instant in local time."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(tz).date()
        return value.date()
    return value


def check_bounds(
    candidate: Instant,
    min_bound: Optional[Instant] = None,
    max_bound: Optional[Instant] = None,
    tz: Optional[tzinfo] = None
) -> BoundCheckResult:
    """
    Check a timestamp against optional inclusive bounds (date-only comparison).

    The minimum is checked first, so only one violation is ever reported.
    """
    day = local_day(candidate, tz)
    if min_bound is not None and day < local_day(min_bound, tz):
        return BoundCheckResult(BoundKind.BEFORE_MIN, min_bound)
    if max_bound is not None and day > local_day(max_bound, tz):
        return BoundCheckResult(BoundKind.AFTER_MAX, max_bound)
    return BOUNDS_OK


def describe_violation(
    result: BoundCheckResult,
    subject: str = "Decampment",
    tz: Optional[tzinfo] = None
) -> Optional[str]:
    """User-facing reason for a failed bound check, or None when it passed."""
    if result.ok:
        return None
    bound = format_mmddyyyy(local_day(result.bound, tz))
    if result.kind == BoundKind.BEFORE_MIN:
        return f"{subject} cannot be before the disaster start ({bound})."
    return f"{subject} cannot be in the future (latest {bound})."


def format_mmddyyyy(value: Instant) -> str:
    """Format as MM/DD/YYYY with two-digit month and day."""
    return f"{value.month:02d}/{value.day:02d}/{value.year:04d}"


def parse_mmddyyyy(value: str) -> Optional[date]:
    """Parse MM/DD/YYYY; returns None for malformed or impossible dates (02/31/2024)."""
    match = _MMDDYYYY.match(value.strip())
    if not match:
        return None
    month, day, year = (int(g) for g in match.groups())
    try:
        return date(year, month, day)
    except ValueError:
        return None


def merge_date_and_time(date_only: Optional[Instant], time_only: Optional[Union[datetime, time]]) -> Optional[datetime]:
    """Combine a date with the hour and minute of another value (midnight when absent)."""
    if date_only is None:
        return None
    hour = time_only.hour if time_only is not None else 0
    minute = time_only.minute if time_only is not None else 0
    tz = date_only.tzinfo if isinstance(date_only, datetime) else None
    return datetime(date_only.year, date_only.month, date_only.day, hour, minute, tzinfo=tz)
