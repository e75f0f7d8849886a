"""Split a query window into step sub-windows."""

from datetime import datetime, timedelta
from typing import List, Optional

from .models import TimeWindow
from .window_parser import parse_duration

STEP_ALIASES = {
    "hour": timedelta(hours=1),
    "hourly": timedelta(hours=1),
    "day": timedelta(hours=24),
    "daily": timedelta(hours=24),
    "week": timedelta(hours=168),
    "weekly": timedelta(hours=168),
}


def parse_step_duration(step: str) -> Optional[timedelta]:
    """Resolve a step expression ("1h", "daily", ...) to a duration.

    Returns:
        Positive timedelta, or None when the step is not recognized
    """
    step = (step or "").strip()
    duration = parse_duration(step)
    if duration is None:
        duration = STEP_ALIASES.get(step)
    if duration is None or duration <= timedelta(0):
        return None
    return duration


def calculate_steps(start: datetime, end: datetime, step: str = "", accumulate: str = "") -> List[TimeWindow]:
    """Partition [start, end) into consecutive step windows.

    A single window is returned when accumulating, when neither step nor
    accumulate is given, or when no step duration can be resolved. The
    final step is clipped to ``end``.

    Args:
        start: Window start
        end: Window end
        step: Step expression (takes precedence over accumulate)
        accumulate: "true", "false" or a step alias such as "day"

    Returns:
        Ordered list of TimeWindow
    """
    if accumulate == "true" or (not step and not accumulate):
        return [TimeWindow(start, end)]

    duration = parse_step_duration(step if step else accumulate)
    if duration is None:
        return [TimeWindow(start, end)]

    steps = []
    current = start
    while current < end:
        step_end = min(current + duration, end)
        steps.append(TimeWindow(current, step_end))
        current = step_end
    return steps
