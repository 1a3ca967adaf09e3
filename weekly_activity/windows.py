"""Weekly time windows used to partition repository activity history."""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional, TypeVar

T = TypeVar("T")

WINDOW_SPAN = timedelta(days=6)
WINDOW_STEP = timedelta(days=7)


@dataclass(frozen=True)
class TimeWindow:
    """A weekly bucket; both bounds are inclusive."""

    start: datetime
    end: datetime

    def query_end(self, now: datetime) -> datetime:
        """Upper bound to send upstream: the window end clamped to ``now``."""
        return min(self.end, as_utc(now))

    def contains(self, ts: datetime) -> bool:
        return self.start <= as_utc(ts) <= self.end


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to timezone-aware UTC (naive means UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp as returned by the GitHub API.

    Accepts the ``Z`` suffix and bare dates (YYYY-MM-DD, taken as midnight
    UTC).

    Raises:
        ValueError: If the value is not a valid ISO-8601 timestamp.
    """
    if not isinstance(value, str) or not value:
        raise ValueError(f"Invalid timestamp: {value!r}")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


def format_timestamp(value: datetime) -> str:
    """Format a datetime as ``YYYY-MM-DDTHH:MM:SSZ``."""
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


def generate_weekly_windows(
    start: datetime, now: Optional[datetime] = None
) -> list[TimeWindow]:
    """Build the contiguous weekly windows covering [start, now].

    Each window spans six days (inclusive) and the next one starts seven days
    after the previous start. The final window may end after ``now``; use
    ``TimeWindow.query_end`` when sending it upstream.

    Args:
        start: First window start.
        now: Reference time (default: current UTC time).

    Returns:
        Windows in chronological order; empty when ``start`` is after ``now``.
    """
    cursor = as_utc(start)
    limit = as_utc(now) if now is not None else utc_now()

    windows: list[TimeWindow] = []
    while cursor <= limit:
        windows.append(TimeWindow(start=cursor, end=cursor + WINDOW_SPAN))
        cursor += WINDOW_STEP
    return windows


def lookback_start(now: datetime, months: int = 3) -> datetime:
    """Return ``now`` moved back by whole calendar months.

    The day of month is clamped to the length of the target month, so
    2024-05-31 minus 3 months is 2024-02-29.
    """
    now = as_utc(now)
    month_index = now.year * 12 + (now.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(now.day, calendar.monthrange(year, month)[1])
    return now.replace(year=year, month=month, day=day)


def in_window(value: Optional[str], window: TimeWindow) -> bool:
    """Check whether an ISO timestamp string falls inside the window.

    Missing or unparsable timestamps are never inside a window.
    """
    if not value:
        return False
    try:
        return window.contains(parse_timestamp(value))
    except ValueError:
        return False


def filter_by_window(
    items: Iterable[T], window: TimeWindow, key: Callable[[T], Optional[str]]
) -> list[T]:
    """Keep the items whose ``key`` timestamp lies in [start, end] inclusive."""
    return [item for item in items if in_window(key(item), window)]
