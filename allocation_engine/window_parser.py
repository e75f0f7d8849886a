"""Window expression parsing.

Accepted grammars, tried in order:

1. Empty string: the last 24 hours.
2. Duration shorthand ("90m", "24h", "7d", "2w"): ending now.
3. Named calendar windows in UTC (today, yesterday, week/thisweek,
   lastweek, month/thismonth, lastmonth). Weeks start on Monday.
4. A comma-separated pair: RFC3339 timestamps, else YYYY-MM-DD dates
   (the end date covers its whole day), else Unix epoch seconds.
"""

import re
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from .errors import InvalidWindowFormat
from .models import TimeWindow

DURATION_PATTERN = re.compile(r"^(\d+)(m|h|d|w)$")

DURATION_UNITS = {
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}


def parse_duration(value: str) -> Optional[timedelta]:
    """Parse a duration shorthand such as "24h" or "7d".

    Args:
        value: Shorthand string

    Returns:
        timedelta, or None if the string is not shorthand
    """
    match = DURATION_PATTERN.match(value)
    if not match:
        return None
    return int(match.group(1)) * DURATION_UNITS[match.group(2)]


def _utc_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def _midnight(day: date) -> datetime:
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc)


def _named_window(name: str, now: datetime) -> Optional[TimeWindow]:
    today = _midnight(now.date())
    week_start = today - timedelta(days=now.weekday())
    month_start = today.replace(day=1)

    if name == "today":
        return TimeWindow(today, now)
    if name == "yesterday":
        return TimeWindow(today - timedelta(days=1), today)
    if name in ("week", "thisweek"):
        return TimeWindow(week_start, now)
    if name == "lastweek":
        return TimeWindow(week_start - timedelta(days=7), week_start)
    if name in ("month", "thismonth"):
        return TimeWindow(month_start, now)
    if name == "lastmonth":
        previous = (month_start - timedelta(days=1)).replace(day=1)
        return TimeWindow(previous, month_start)
    return None


def _parse_rfc3339(value: str) -> Optional[datetime]:
    # RFC3339 requires an explicit offset; naive timestamps are rejected
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if "T" not in value.upper() or parsed.tzinfo is None:
        return None
    return parsed.astimezone(timezone.utc)


def _parse_date(value: str) -> Optional[datetime]:
    try:
        return _midnight(datetime.strptime(value, "%Y-%m-%d").date())
    except ValueError:
        return None


def _parse_epoch(value: str) -> Optional[datetime]:
    if not re.fullmatch(r"-?\d+", value):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _range_window(window: str) -> Optional[TimeWindow]:
    parts = window.split(",")
    if len(parts) != 2:
        return None
    first, second = parts[0].strip(), parts[1].strip()

    start, end = _parse_rfc3339(first), _parse_rfc3339(second)
    if start is not None and end is not None:
        return TimeWindow(start, end)

    start, end = _parse_date(first), _parse_date(second)
    if start is not None and end is not None:
        return TimeWindow(start, end + timedelta(hours=24) - timedelta(seconds=1))

    start, end = _parse_epoch(first), _parse_epoch(second)
    if start is not None and end is not None:
        return TimeWindow(start, end)
    return None


def parse_window(window: Optional[str], now: Optional[datetime] = None) -> TimeWindow:
    """Resolve a window expression to a concrete [start, end) range.

    Args:
        window: Window expression
        now: Reference instant (defaults to the current UTC time)

    Returns:
        TimeWindow with start < end

    Raises:
        InvalidWindowFormat: If no grammar matches or the range is empty.
            Named windows that have not started yet are empty: "today" at
            00:00 UTC, "week" at Monday 00:00, "month" at 00:00 on the 1st.
    """
    now = _utc_now(now)
    window = (window or "").strip()

    if not window:
        return TimeWindow(now - timedelta(hours=24), now)

    duration = parse_duration(window)
    if duration is not None:
        if duration <= timedelta(0):
            raise InvalidWindowFormat(window, "duration must be positive")
        return TimeWindow(now - duration, now)

    result = _named_window(window, now)
    if result is None and "," in window:
        result = _range_window(window)
    if result is None:
        raise InvalidWindowFormat(window)

    if result.start >= result.end:
        raise InvalidWindowFormat(window, "start must be before end")
    return result
