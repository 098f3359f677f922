"""Consecutive-day streaks per habit kind and per category."""

from collections.abc import Iterable, Mapping
from datetime import date

from ..models import HABIT_CATEGORIES, HabitKind


def compute_streak(dates: Iterable[date], today: date, requires_today: bool = False) -> int:
    """Count consecutive days in the most recent run ending at or before today.

    Dates after ``today`` are ignored and repeated dates count once. Walking
    newest first, each date exactly one day before the run's current start
    extends it; the first larger gap ends it.

    Args:
        dates: Entry dates for one user and habit kind, in any order.
        today: Reference day.
        requires_today: If set, a run that does not include ``today`` is 0.

    Returns:
        Streak length, 0 when there are no entries.
    """
    ordered = sorted({d for d in dates if d <= today}, reverse=True)
    if not ordered:
        return 0
    if requires_today and ordered[0] != today:
        return 0

    streak = 1
    run_start = ordered[0]
    for d in ordered[1:]:
        if (run_start - d).days != 1:
            break
        streak += 1
        run_start = d
    return streak


def category_streaks(
    streaks: Mapping[HabitKind, int],
    categories: Mapping[str, tuple[HabitKind, ...]] = HABIT_CATEGORIES,
) -> dict[str, int]:
    """Best member streak for every category. Kinds without a streak count as 0."""
    return {
        category: max((streaks.get(kind, 0) for kind in kinds), default=0)
        for category, kinds in categories.items()
    }
