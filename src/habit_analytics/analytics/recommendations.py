"""Reminders for habits the user used to log but has not logged lately."""

from collections.abc import Mapping
from datetime import date

from ..models import HabitKind, Recommendation


def stale_habit_recommendations(
    last_logged: Mapping[HabitKind, date],
    today: date,
    stale_days: int = 3,
) -> list[Recommendation]:
    """One medium-priority recommendation per kind last logged over ``stale_days`` ago.

    Kinds absent from ``last_logged`` were never logged and are never
    recommended. Results are ordered stalest first.
    """
    recommendations = []
    for habit_type, last in last_logged.items():
        days_since = (today - last).days
        if days_since <= stale_days:
            continue
        recommendations.append(
            Recommendation(
                habit_type=habit_type,
                message=(
                    f"You haven't logged {habit_type.value.replace('_', ' ')} "
                    f"in the last {days_since} days"
                ),
                last_logged=last,
                days_since=days_since,
            )
        )
    recommendations.sort(key=lambda r: (-r.days_since, r.habit_type.value))
    return recommendations
