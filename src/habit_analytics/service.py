"""Habit service: submission, per-habit analytics, summaries and user analysis."""

from collections.abc import Callable
from datetime import date

import structlog
from opentelemetry import trace

from .alerts import AlertService
from .analytics import (
    CorrelationAnalyzer,
    category_streaks,
    classify_trend,
    compute_streak,
    consistency_score,
    consistency_window,
    stale_habit_recommendations,
)
from .config import AnalyticsSettings
from .events import HABIT_TRACKED, WEEKLY_ANALYZED, EventQueue
from .metrics import HABITS_TRACKED
from .models import (
    AlertKind,
    HabitAnalytics,
    HabitEntry,
    HabitKind,
    HabitSubmission,
    HabitSummary,
    Recommendation,
    UserAnalysis,
)
from .storage import AlertStore, Database, HabitStore
from .values import coerce_value

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)


class HabitService:
    """Entry point for habit submission and analysis of one user at a time."""

    def __init__(
        self,
        habits: HabitStore,
        alerts: AlertService,
        events: EventQueue,
        settings: AnalyticsSettings,
        clock: Callable[[], date] = date.today,
    ) -> None:
        """Initialize the service.

        Args:
            habits: Habit entry store.
            alerts: Alert creation service.
            events: Outbound event queue.
            settings: Analytics thresholds and windows.
            clock: Returns "today"; injectable for tests.
        """
        self._habits = habits
        self._alerts = alerts
        self._events = events
        self._settings = settings
        self._clock = clock
        self._analyzer = CorrelationAnalyzer(habits, alerts, settings)

    @classmethod
    def from_database(
        cls,
        db: Database,
        events: EventQueue,
        settings: AnalyticsSettings,
        clock: Callable[[], date] = date.today,
    ) -> "HabitService":
        """Build the service and its stores on one database."""
        alerts = AlertService(AlertStore(db), events, settings)
        return cls(HabitStore(db), alerts, events, settings, clock=clock)

    @property
    def analyzer(self) -> CorrelationAnalyzer:
        return self._analyzer

    def today(self) -> date:
        return self._clock()

    async def track_habit(self, user_id: str, submission: HabitSubmission) -> HabitEntry:
        """Store a habit entry, re-check correlations for its kind and announce it.

        Resubmitting the same (user, date, kind) replaces the earlier entry.

        Raises:
            MalformedValueError: If the value does not fit the habit kind.
            StorageError: If the database fails.
        """
        today = self.today()
        value = coerce_value(submission.habit_type, submission.value)
        entry = await self._habits.upsert(
            user_id=user_id,
            entry_date=submission.date or today,
            habit_type=submission.habit_type,
            value=value,
            duration_minutes=submission.duration_minutes,
            quality_score=submission.quality_score,
            energy_level=submission.energy_level,
            note=submission.note,
        )
        HABITS_TRACKED.labels(habit_type=entry.habit_type.value).inc()
        logger.info(
            "habit_tracked",
            user_id=user_id,
            habit_type=entry.habit_type.value,
            date=entry.date.isoformat(),
            entry_id=entry.id,
        )

        await self._analyzer.analyze(user_id, today, habit_type=entry.habit_type)

        self._events.enqueue(HABIT_TRACKED, user_id, entry.to_dict())
        return entry

    async def get_habits(
        self,
        user_id: str,
        start: date | None = None,
        end: date | None = None,
        habit_type: HabitKind | None = None,
    ) -> list[HabitEntry]:
        """Entries for a user, newest first."""
        return await self._habits.list_entries(user_id, start, end, habit_type)

    async def habit_streak(self, user_id: str, habit_type: HabitKind) -> int:
        dates = await self._habits.habit_dates(user_id, habit_type)
        return compute_streak(dates, self.today(), self._settings.streak_requires_today)

    async def category_streaks(self, user_id: str) -> dict[str, int]:
        """Best streak per habit category."""
        today = self.today()
        by_kind = await self._habits.dates_by_kind(user_id)
        streaks = {
            kind: compute_streak(dates, today, self._settings.streak_requires_today)
            for kind, dates in by_kind.items()
        }
        return category_streaks(streaks)

    async def consistency(self, user_id: str, days: int) -> int:
        """Percentage of the last ``days`` days with any habit logged."""
        if days <= 0:
            return 0
        today = self.today()
        start, end = consistency_window(today, days)
        active = await self._habits.distinct_dates(user_id, start, end)
        return consistency_score(active, days, today)

    async def recommendations(self, user_id: str) -> list[Recommendation]:
        last_logged = await self._habits.last_logged(user_id)
        return stale_habit_recommendations(
            last_logged, self.today(), self._settings.stale_habit_days
        )

    async def habit_analytics(
        self,
        user_id: str,
        habit_type: HabitKind,
        days: int = 30,
    ) -> HabitAnalytics:
        """Report on one habit kind over the last ``days`` days.

        Malformed stored values are skipped by the store and do not count.
        """
        today = self.today()
        start, end = consistency_window(today, days)
        entries = await self._habits.list_entries(
            user_id, start, end, habit_type, ascending=True
        )
        values = [entry.value.scalar() for entry in entries]

        return HabitAnalytics(
            habit_type=habit_type,
            total_days=len(entries),
            completion_rate=(len(entries) / days) * 100 if days > 0 else 0.0,
            streak=await self.habit_streak(user_id, habit_type),
            trend=classify_trend(
                values,
                improving_ratio=self._settings.trend_improving_ratio,
                declining_ratio=self._settings.trend_declining_ratio,
            ),
            last_entry=entries[-1].date if entries else None,
        )

    async def get_summary(self, user_id: str, days: int | None = None) -> HabitSummary:
        """Category averages, category streaks, consistency and recommendations."""
        if days is None:
            days = self._settings.summary_days
        start, end = consistency_window(self.today(), days)
        categories = await self._habits.category_averages(user_id, start, end) if days > 0 else []

        return HabitSummary(
            user_id=user_id,
            window_days=days,
            consistency=await self.consistency(user_id, days),
            categories=categories,
            streaks=await self.category_streaks(user_id),
            recommendations=await self.recommendations(user_id),
        )

    async def analyze_user(self, user_id: str) -> UserAnalysis:
        """Run the daily analysis for one user.

        Builds the weekly summary, raises a ``missing_habits`` alert when
        consistency is low, optionally re-checks correlations for every habit
        kind, then announces the summary.

        Raises:
            StorageError: If the database fails. Nothing is announced then.
        """
        with tracer.start_as_current_span("habits.analyze_user") as span:
            span.set_attribute("user.id", user_id)
            window = self._settings.weekly_window_days
            summary = await self.get_summary(user_id, window)
            span.set_attribute("habits.consistency", summary.consistency)

            result = UserAnalysis(summary=summary)
            if summary.consistency < self._settings.low_consistency_threshold:
                alert = await self._alerts.create_alert(
                    user_id,
                    AlertKind.MISSING_HABITS,
                    {"consistency": summary.consistency, "window_days": window},
                )
                result.alerts.append(alert)

            if self._settings.daily_correlation_check:
                result.alerts.extend(await self._analyzer.analyze(user_id, self.today()))

            self._events.enqueue(WEEKLY_ANALYZED, user_id, summary.to_dict())

        logger.info(
            "user_analyzed",
            user_id=user_id,
            consistency=summary.consistency,
            alerts=len(result.alerts),
            recommendations=len(summary.recommendations),
        )
        return result
