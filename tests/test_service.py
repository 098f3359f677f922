"""Tests for the habit service."""

from datetime import timedelta

import pytest

from conftest import TODAY, enqueued_names, make_reading
from habit_analytics.config import AnalyticsSettings
from habit_analytics.events import ALERT_CREATED, HABIT_TRACKED, WEEKLY_ANALYZED
from habit_analytics.models import AlertKind, HabitKind, HabitSubmission, Trend
from habit_analytics.service import HabitService
from habit_analytics.values import MalformedValueError, NumericValue


@pytest.fixture
def service(db, events, analytics_settings):
    return HabitService.from_database(db, events, analytics_settings, clock=lambda: TODAY)


def submit(habit_type: HabitKind, value, days_ago: int = 0, **kwargs) -> HabitSubmission:
    return HabitSubmission(
        habit_type=habit_type,
        value=value,
        date=TODAY - timedelta(days=days_ago),
        **kwargs,
    )


class TestTrackHabit:
    """Tests for HabitService.track_habit."""

    @pytest.mark.asyncio
    async def test_track_stores_and_announces(self, service, events):
        entry = await service.track_habit("u1", submit(HabitKind.WATER, 2.5, energy_level=7))

        assert entry.value == NumericValue(amount=2.5)
        assert entry.date == TODAY
        assert entry.energy_level == 7
        assert enqueued_names(events) == [HABIT_TRACKED]
        payload = events.enqueue.call_args.args[2]
        assert payload["habit_type"] == "water"
        assert payload["value"] == {"shape": "numeric", "amount": 2.5, "unit": None}

    @pytest.mark.asyncio
    async def test_date_defaults_to_today(self, service):
        entry = await service.track_habit(
            "u1", HabitSubmission(habit_type=HabitKind.SAUNA, value=15)
        )
        assert entry.date == TODAY

    @pytest.mark.asyncio
    async def test_malformed_value_rejected(self, service, events):
        with pytest.raises(MalformedValueError):
            await service.track_habit("u1", submit(HabitKind.CRYOTHERAPY, 3))

        assert await service.get_habits("u1") == []
        events.enqueue.assert_not_called()

    @pytest.mark.asyncio
    async def test_nan_amount_rejected_before_storing(self, service, events):
        with pytest.raises(MalformedValueError):
            await service.track_habit(
                "u1", HabitSubmission(habit_type=HabitKind.WATER, value=float("nan"))
            )

        assert await service.get_habits("u1") == []
        assert await service.habit_streak("u1", HabitKind.WATER) == 0
        events.enqueue.assert_not_called()

    @pytest.mark.asyncio
    async def test_resubmission_is_idempotent(self, service):
        """Same (user, date, kind) twice yields one row and no double-counted streak."""
        await service.track_habit("u1", submit(HabitKind.MEDITATION, 10))
        await service.track_habit("u1", submit(HabitKind.MEDITATION, 20))
        await service.track_habit("u1", submit(HabitKind.MEDITATION, 10, days_ago=1))

        entries = await service.get_habits("u1", habit_type=HabitKind.MEDITATION)
        assert len(entries) == 2
        assert entries[0].value == NumericValue(amount=20)
        assert await service.habit_streak("u1", HabitKind.MEDITATION) == 2

    @pytest.mark.asyncio
    async def test_stressful_habit_raises_alert_before_tracked_event(
        self, service, biometric_store, events
    ):
        await biometric_store.add_reading(make_reading("u1", TODAY, stress=88, hrv=40))

        await service.track_habit("u1", submit(HabitKind.CAFFEINE, 3))

        assert enqueued_names(events) == [ALERT_CREATED, HABIT_TRACKED]
        alert_payload = events.enqueue.call_args_list[0].args[2]
        assert alert_payload["severity"] == "critical"
        assert alert_payload["data"]["habit_type"] == "caffeine"


class TestAnalytics:
    """Tests for per-habit analytics and summaries."""

    @pytest.mark.asyncio
    async def test_habit_analytics(self, service):
        for days_ago, amount in [(5, 1), (4, 1), (3, 1), (2, 5), (1, 5), (0, 5)]:
            await service.track_habit("u1", submit(HabitKind.WATER, amount, days_ago=days_ago))

        analytics = await service.habit_analytics("u1", HabitKind.WATER, days=30)

        assert analytics.total_days == 6
        assert analytics.completion_rate == pytest.approx(20.0)
        assert analytics.streak == 6
        assert analytics.trend == Trend.IMPROVING
        assert analytics.last_entry == TODAY
        assert analytics.to_dict()["trend"] == "improving"

    @pytest.mark.asyncio
    async def test_habit_analytics_no_data(self, service):
        analytics = await service.habit_analytics("u1", HabitKind.SLEEP)

        assert analytics.total_days == 0
        assert analytics.streak == 0
        assert analytics.trend == Trend.NEUTRAL
        assert analytics.last_entry is None

    @pytest.mark.asyncio
    async def test_consistency(self, service):
        for days_ago in range(0, 20, 2):
            await service.track_habit("u1", submit(HabitKind.JOURNALING, True, days_ago=days_ago))

        assert await service.consistency("u1", 30) == 33
        assert await service.consistency("u2", 30) == 0

    @pytest.mark.asyncio
    async def test_summary(self, service):
        await service.track_habit("u1", submit(HabitKind.SLEEP, 7.5, quality_score=8))
        await service.track_habit("u1", submit(HabitKind.SLEEP, 7.0, days_ago=1))
        await service.track_habit("u1", submit(HabitKind.SAUNA, 20, days_ago=10))

        summary = await service.get_summary("u1", days=7)

        assert summary.consistency == 29
        assert summary.streaks["sleep"] == 2
        assert summary.streaks["recovery"] == 1
        assert [c["habit_type"] for c in summary.categories] == ["sleep"]
        assert [r.habit_type for r in summary.recommendations] == [HabitKind.SAUNA]

        payload = summary.to_dict()
        assert payload["window_days"] == 7
        assert payload["recommendations"][0]["habit"] == "sauna"

    @pytest.mark.asyncio
    async def test_summary_zero_day_window(self, service):
        await service.track_habit("u1", submit(HabitKind.SLEEP, 7.5))

        summary = await service.get_summary("u1", days=0)

        assert summary.window_days == 0
        assert summary.consistency == 0
        assert summary.categories == []

    @pytest.mark.asyncio
    async def test_summary_defaults_to_configured_window(self, service, analytics_settings):
        summary = await service.get_summary("u1")
        assert summary.window_days == analytics_settings.summary_days


class TestAnalyzeUser:
    """Tests for HabitService.analyze_user."""

    @pytest.mark.asyncio
    async def test_low_consistency_raises_missing_habits(self, service, alert_store, events):
        await service.track_habit("u1", submit(HabitKind.WATER, 2))
        events.reset_mock()

        result = await service.analyze_user("u1")

        assert result.summary.consistency == 14
        assert [a.alert_type for a in result.alerts] == [AlertKind.MISSING_HABITS]
        assert result.alerts[0].data["consistency"] == 14
        assert enqueued_names(events) == [ALERT_CREATED, WEEKLY_ANALYZED]

        stored = await alert_store.list_alerts("u1", AlertKind.MISSING_HABITS)
        assert len(stored) == 1

    @pytest.mark.asyncio
    async def test_consistent_week_no_alert(self, service, events):
        for days_ago in range(7):
            await service.track_habit("u1", submit(HabitKind.WATER, 2, days_ago=days_ago))
        events.reset_mock()

        result = await service.analyze_user("u1")

        assert result.summary.consistency == 100
        assert result.alerts == []
        assert enqueued_names(events) == [WEEKLY_ANALYZED]
        payload = events.enqueue.call_args.args[2]
        assert payload["consistency"] == 100
        assert payload["streaks"]["hydration"] == 7

    @pytest.mark.asyncio
    async def test_daily_correlation_check(self, db, events, biometric_store):
        settings = AnalyticsSettings(daily_correlation_check=True, low_consistency_threshold=0)
        service = HabitService.from_database(db, events, settings, clock=lambda: TODAY)
        await service.track_habit("u1", submit(HabitKind.SAUNA, 20, days_ago=2))
        # Reading synced after the habit was tracked
        await biometric_store.add_reading(
            make_reading("u1", TODAY - timedelta(days=2), stress=75)
        )
        events.reset_mock()

        result = await service.analyze_user("u1")

        assert [a.alert_type for a in result.alerts] == [AlertKind.STRESS_PATTERN]
