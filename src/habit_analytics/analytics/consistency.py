"""Share of days in a trailing window with at least one habit logged."""

import math
from collections.abc import Iterable
from datetime import date, timedelta


def consistency_window(today: date, days: int) -> tuple[date, date]:
    """Inclusive ``(start, end)`` of the trailing window of ``days`` days."""
    return today - timedelta(days=max(days, 1) - 1), today


def consistency_score(active_days: Iterable[date], days: int, today: date) -> int:
    """Integer percentage of window days that have an entry.

    Days outside ``[today - (days - 1), today]`` are ignored. The result is
    rounded half up and not clamped.
    """
    if days <= 0:
        return 0
    start, end = consistency_window(today, days)
    distinct = {d for d in active_days if start <= d <= end}
    return math.floor(100 * len(distinct) / days + 0.5)
