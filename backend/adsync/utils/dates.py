"""Local-time helpers for scheduling and date ranges.

The business runs on a fixed UTC offset (LOCAL_UTC_OFFSET_HOURS, +7 by
default) rather than the host locale, so the dispatcher's "current hour" and
the default "yesterday .. today" window are stable regardless of where the
worker runs.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Iterator, Optional, Tuple


def local_now(offset_hours: int, now: Optional[datetime] = None) -> datetime:
    """Return `now` (UTC, default current time) shifted to the fixed offset."""
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    return current.astimezone(timezone(timedelta(hours=offset_hours)))


def local_hour(offset_hours: int, now: Optional[datetime] = None) -> int:
    return local_now(offset_hours, now).hour


def local_today(offset_hours: int, now: Optional[datetime] = None) -> date:
    return local_now(offset_hours, now).date()


def local_yesterday(offset_hours: int, now: Optional[datetime] = None) -> date:
    return local_today(offset_hours, now) - timedelta(days=1)


def default_range(offset_hours: int, now: Optional[datetime] = None) -> Tuple[date, date]:
    """Default sync window: local yesterday .. local today (inclusive)."""
    return local_yesterday(offset_hours, now), local_today(offset_hours, now)


def iter_days(start: date, end: date) -> Iterator[date]:
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def parse_date(value) -> Optional[date]:
    """Accept a date, datetime or ISO string (YYYY-MM-DD...)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def parse_upstream_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse Graph API timestamps ("2025-01-01T10:00:00+0700") to naive UTC."""
    if not value:
        return None
    text = str(value)
    # Graph API omits the colon in the offset
    if len(text) >= 5 and text[-5] in "+-" and text[-3] != ":":
        text = f"{text[:-2]}:{text[-2:]}"
    parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def utcnow() -> datetime:
    """Naive UTC now, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware datetimes converted to naive UTC; naive ones are assumed UTC already."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
