"""Habit/biometric correlation and stress-pattern alerting."""

from collections import defaultdict
from collections.abc import Iterable, Mapping
from datetime import date, timedelta
from typing import Any

import structlog

from ..alerts import AlertService
from ..config import AnalyticsSettings
from ..metrics import CORRELATION_GROUP_FAILURES
from ..models import AlertKind, HabitKind, HealthAlert
from ..storage import HabitStore
from ..types import CorrelationRow

logger = structlog.get_logger(__name__)

_FIELDS = {
    "avg_energy": "energy_level",
    "avg_hrv": "hrv_average",
    "avg_stress": "stress_level",
    "avg_sleep_score": "sleep_score",
}


def _mean(values: Iterable[Any]) -> float | None:
    # Nulls are ignored the way SQL AVG ignores them
    present = [float(v) for v in values if v is not None]
    if not present:
        return None
    return sum(present) / len(present)


def group_rows(rows: Iterable[Mapping[str, Any]]) -> dict[str, list[Mapping[str, Any]]]:
    """Group joined habit/biometric rows by habit kind."""
    groups: dict[str, list[Mapping[str, Any]]] = defaultdict(list)
    for row in rows:
        groups[row["habit_type"]].append(row)
    return dict(groups)


def aggregate_group(habit_type: str, rows: list[Mapping[str, Any]]) -> CorrelationRow:
    """Average energy, HRV, stress and sleep score over one group."""
    return CorrelationRow(
        habit_type=habit_type,
        avg_energy=_mean(r.get("energy_level") for r in rows),
        avg_hrv=_mean(r.get("hrv_average") for r in rows),
        avg_stress=_mean(r.get("stress_level") for r in rows),
        avg_sleep_score=_mean(r.get("sleep_score") for r in rows),
    )


def breaches_thresholds(row: CorrelationRow, settings: AnalyticsSettings) -> bool:
    """True when average stress is too high or average HRV too low."""
    avg_stress = row["avg_stress"]
    avg_hrv = row["avg_hrv"]
    if avg_stress is not None and avg_stress > settings.stress_alert_threshold:
        return True
    return avg_hrv is not None and avg_hrv < settings.hrv_alert_threshold


class CorrelationAnalyzer:
    """Joins habits with same-day readings and raises stress-pattern alerts."""

    def __init__(
        self,
        habits: HabitStore,
        alerts: AlertService,
        settings: AnalyticsSettings,
    ) -> None:
        self._habits = habits
        self._alerts = alerts
        self._settings = settings

    async def analyze(
        self,
        user_id: str,
        today: date,
        habit_type: HabitKind | None = None,
    ) -> list[HealthAlert]:
        """Check every habit kind (or just ``habit_type``) over the lookback window.

        A group that fails is logged and counted; the remaining groups are
        still checked.

        Returns:
            Alerts created by this run.

        Raises:
            StorageError: If the joined rows cannot be read at all.
        """
        start = today - timedelta(days=self._settings.correlation_lookback_days)
        rows = await self._habits.correlation_rows(user_id, start, today, habit_type)
        groups = group_rows(rows)

        created: list[HealthAlert] = []
        for group_type, group in sorted(groups.items()):
            try:
                alert = await self._check_group(user_id, group_type, group)
            except Exception as e:
                CORRELATION_GROUP_FAILURES.inc()
                logger.warning(
                    "correlation_group_failed",
                    user_id=user_id,
                    habit_type=group_type,
                    error=str(e),
                )
                continue
            if alert:
                created.append(alert)

        logger.debug(
            "correlation_analyzed",
            user_id=user_id,
            groups=len(groups),
            alerts=len(created),
            scope=habit_type.value if habit_type else "all",
        )
        return created

    async def _check_group(
        self,
        user_id: str,
        habit_type: str,
        rows: list[Mapping[str, Any]],
    ) -> HealthAlert | None:
        summary = aggregate_group(habit_type, rows)
        if not breaches_thresholds(summary, self._settings):
            return None

        data: dict[str, Any] = dict(summary)
        data["lookback_days"] = self._settings.correlation_lookback_days
        data["samples"] = len(rows)
        return await self._alerts.create_alert(user_id, AlertKind.STRESS_PATTERN, data)
