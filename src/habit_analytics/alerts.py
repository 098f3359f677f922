"""Health alert creation: severity, message, persistence and notification."""

import uuid
from collections.abc import Mapping
from datetime import datetime
from typing import Any

import structlog

from .config import AnalyticsSettings
from .events import ALERT_CREATED, EventQueue
from .metrics import ALERTS_CREATED
from .models import AlertKind, HealthAlert, Severity
from .storage import AlertStore

logger = structlog.get_logger(__name__)

_MESSAGES: dict[AlertKind, str] = {
    AlertKind.STRESS_PATTERN: (
        "Elevated stress detected around {habit_type}. "
        "Average stress {avg_stress}/100, average HRV {avg_hrv}ms"
    ),
    AlertKind.POOR_SLEEP: "Your sleep quality has dropped. Average: {avg_sleep_score}/100",
    AlertKind.LOW_HRV: "Your heart rate variability is low. Average: {avg_hrv}ms",
    AlertKind.MISSING_HABITS: "Your habit consistency is low this week ({consistency}%)",
}
_DEFAULT_MESSAGE = "Health alert detected"


def _fmt(value: Any) -> str:
    if value is None:
        return "n/a"
    if isinstance(value, float):
        return f"{value:.1f}"
    return str(value)


def format_message(alert_type: AlertKind, data: Mapping[str, Any]) -> str:
    """Render the message template for an alert kind.

    Missing or null fields render as ``n/a``.
    """
    template = _MESSAGES.get(alert_type)
    if template is None:
        return _DEFAULT_MESSAGE
    fields = {
        key: _fmt(data.get(key))
        for key in ("habit_type", "avg_stress", "avg_hrv", "avg_sleep_score", "consistency")
    }
    return template.format(**fields)


def severity_for(data: Mapping[str, Any], settings: AnalyticsSettings) -> Severity:
    """Severity from average stress; alerts without a stress average are info."""
    avg_stress = data.get("avg_stress")
    if avg_stress is None:
        return Severity.INFO
    if avg_stress > settings.critical_stress:
        return Severity.CRITICAL
    if avg_stress > settings.warning_stress:
        return Severity.WARNING
    return Severity.INFO


class AlertService:
    """Persists health alerts and announces them on the event queue."""

    def __init__(
        self,
        store: AlertStore,
        events: EventQueue,
        settings: AnalyticsSettings,
    ) -> None:
        self._store = store
        self._events = events
        self._settings = settings

    async def create_alert(
        self,
        user_id: str,
        alert_type: AlertKind,
        data: dict[str, Any],
        triggered_at: datetime | None = None,
    ) -> HealthAlert:
        """Create, persist and announce an alert.

        Args:
            user_id: Owner of the alert.
            alert_type: Alert kind.
            data: Supporting numbers, stored with the alert.
            triggered_at: Defaults to now.

        Returns:
            The persisted alert.

        Raises:
            StorageError: If the insert fails. Nothing is announced in that case.
        """
        alert = HealthAlert(
            id=uuid.uuid4().hex,
            user_id=user_id,
            alert_type=alert_type,
            severity=severity_for(data, self._settings),
            message=format_message(alert_type, data),
            data=data,
            triggered_at=triggered_at or datetime.now(),
        )
        await self._store.insert(alert)

        ALERTS_CREATED.labels(alert_type=alert_type.value, severity=alert.severity.value).inc()
        logger.info(
            "health_alert_created",
            user_id=user_id,
            alert_id=alert.id,
            alert_type=alert_type.value,
            severity=alert.severity.value,
        )

        self._events.enqueue(ALERT_CREATED, user_id, alert.to_dict())
        return alert
