"""Tests for streaks, consistency, trend and recommendations."""

from datetime import date, timedelta

from habit_analytics.analytics import (
    category_streaks,
    classify_trend,
    compute_streak,
    consistency_score,
    consistency_window,
    stale_habit_recommendations,
)
from habit_analytics.models import HabitKind, Trend

TODAY = date(2024, 6, 15)


def days_ago(*offsets: int) -> list[date]:
    return [TODAY - timedelta(days=n) for n in offsets]


class TestStreak:
    """Tests for compute_streak."""

    def test_gap_stops_streak(self):
        """Entries on today, -1, -2 and -5 give a streak of 3."""
        assert compute_streak(days_ago(0, 1, 2, 5), TODAY) == 3

    def test_no_entries(self):
        assert compute_streak([], TODAY) == 0

    def test_duplicates_counted_once(self):
        assert compute_streak(days_ago(0, 0, 1, 1, 2), TODAY) == 3

    def test_unordered_input(self):
        assert compute_streak(days_ago(2, 0, 1), TODAY) == 3

    def test_run_ending_before_today(self):
        """The most recent run counts even if it ended days ago."""
        assert compute_streak(days_ago(4, 5, 6, 10), TODAY) == 3

    def test_run_must_include_today_when_required(self):
        assert compute_streak(days_ago(1, 2, 3), TODAY, requires_today=True) == 0
        assert compute_streak(days_ago(0, 1, 2), TODAY, requires_today=True) == 3

    def test_future_dates_ignored(self):
        dates = [TODAY + timedelta(days=1)] + days_ago(0, 1)
        assert compute_streak(dates, TODAY) == 2

    def test_single_entry(self):
        assert compute_streak(days_ago(0), TODAY) == 1

    def test_category_streak_is_best_member(self):
        streaks = {
            HabitKind.MEDITATION: 2,
            HabitKind.JOURNALING: 5,
            HabitKind.WATER: 1,
        }

        result = category_streaks(streaks)

        assert result["stress"] == 5
        assert result["hydration"] == 1
        assert result["sleep"] == 0
        assert set(result) == {
            "hydration",
            "nutrition",
            "recovery",
            "sleep",
            "stress",
            "nature",
            "stimulants",
        }


class TestConsistency:
    """Tests for consistency_score."""

    def test_ten_of_thirty_days(self):
        """10 distinct days out of 30 rounds to 33."""
        active = days_ago(*range(0, 20, 2))
        assert consistency_score(active, 30, TODAY) == 33

    def test_no_days(self):
        assert consistency_score([], 7, TODAY) == 0

    def test_non_positive_window(self):
        assert consistency_score(days_ago(0), 0, TODAY) == 0

    def test_duplicate_days_count_once(self):
        assert consistency_score(days_ago(0, 0, 1), 7, TODAY) == 29

    def test_days_outside_window_ignored(self):
        """The window is [today - 6, today] for 7 days."""
        assert consistency_score(days_ago(6, 7, 30), 7, TODAY) == 14

    def test_rounds_half_up(self):
        assert consistency_score(days_ago(0), 8, TODAY) == 13

    def test_window_bounds(self):
        assert consistency_window(TODAY, 7) == (TODAY - timedelta(days=6), TODAY)


class TestTrend:
    """Tests for classify_trend."""

    def test_rising_numbers_improving(self):
        assert classify_trend([1, 1, 1, 5, 5, 5]) == Trend.IMPROVING

    def test_falling_numbers_declining(self):
        assert classify_trend([5.0, 5.0, 1.0, 1.0]) == Trend.DECLINING

    def test_booleans_equal_halves_stable(self):
        """Halves [T, F] and [T, F] both average 0.5."""
        assert classify_trend([True, False, True, False]) == Trend.STABLE

    def test_booleans_done_then_skipped_declining(self):
        """Halves [T, T] and [F, F] average 1.0 and 0.0."""
        assert classify_trend([True, True, False, False]) == Trend.DECLINING

    def test_single_or_empty_neutral(self):
        assert classify_trend([]) == Trend.NEUTRAL
        assert classify_trend([3.0]) == Trend.NEUTRAL

    def test_odd_length_first_half_takes_extra(self):
        """[2, 2, 2, 3, 3]: halves [2, 2, 2] and [3, 3]."""
        assert classify_trend([2, 2, 2, 3, 3]) == Trend.IMPROVING

    def test_small_change_is_stable(self):
        assert classify_trend([10.0, 10.0, 10.5, 10.5]) == Trend.STABLE

    def test_structured_values_average_to_zero(self):
        assert classify_trend([{"meal": "a"}, {"meal": "b"}]) == Trend.STABLE

    def test_mismatched_values_skipped(self):
        """Booleans mixed into a numeric series are dropped before splitting."""
        assert classify_trend([1.0, True, 1.0, 5.0, False, 5.0]) == Trend.IMPROVING

    def test_only_one_usable_value_is_neutral(self):
        assert classify_trend([1.0, True, False]) == Trend.NEUTRAL

    def test_custom_ratios(self):
        values = [10.0, 10.0, 10.5, 10.5]
        assert classify_trend(values, improving_ratio=1.01) == Trend.IMPROVING


class TestRecommendations:
    """Tests for stale_habit_recommendations."""

    def test_stale_habit_recommended_once(self):
        """A habit logged once 10 days ago appears exactly once."""
        last_logged = {
            HabitKind.SAUNA: TODAY - timedelta(days=10),
            HabitKind.WATER: TODAY,
        }

        recs = stale_habit_recommendations(last_logged, TODAY)

        assert [r.habit_type for r in recs] == [HabitKind.SAUNA]
        rec = recs[0]
        assert rec.priority == "medium"
        assert rec.type == "missing_habit"
        assert rec.days_since == 10
        assert "sauna" in rec.message
        assert "10 days" in rec.message

    def test_never_logged_not_recommended(self):
        recs = stale_habit_recommendations({HabitKind.SAUNA: TODAY - timedelta(days=10)}, TODAY)
        assert HabitKind.MEDITATION not in {r.habit_type for r in recs}

    def test_threshold_is_exclusive(self):
        """Exactly 3 days ago is not stale yet; 4 days ago is."""
        last_logged = {
            HabitKind.WATER: TODAY - timedelta(days=3),
            HabitKind.SLEEP: TODAY - timedelta(days=4),
        }

        recs = stale_habit_recommendations(last_logged, TODAY, stale_days=3)

        assert [r.habit_type for r in recs] == [HabitKind.SLEEP]

    def test_stalest_first(self):
        last_logged = {
            HabitKind.WATER: TODAY - timedelta(days=5),
            HabitKind.SLEEP: TODAY - timedelta(days=20),
        }

        recs = stale_habit_recommendations(last_logged, TODAY)

        assert [r.habit_type for r in recs] == [HabitKind.SLEEP, HabitKind.WATER]

    def test_to_dict(self):
        recs = stale_habit_recommendations({HabitKind.ACTIVE_REST: TODAY - timedelta(days=7)}, TODAY)

        data = recs[0].to_dict()
        assert data["habit"] == "active_rest"
        assert data["last_logged"] == "2024-06-08"
        assert "active rest" in data["message"]
