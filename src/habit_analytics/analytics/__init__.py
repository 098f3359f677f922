"""Habit analytics: streaks, consistency, trend, correlation and recommendations."""

from .consistency import consistency_score, consistency_window
from .correlation import CorrelationAnalyzer, aggregate_group, breaches_thresholds, group_rows
from .recommendations import stale_habit_recommendations
from .streaks import category_streaks, compute_streak
from .trend import classify_trend

__all__ = [
    "CorrelationAnalyzer",
    "aggregate_group",
    "breaches_thresholds",
    "category_streaks",
    "classify_trend",
    "compute_streak",
    "consistency_score",
    "consistency_window",
    "group_rows",
    "stale_habit_recommendations",
]
