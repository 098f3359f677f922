"""Pytest configuration and fixtures."""

from datetime import date, datetime, time
from pathlib import Path
import sys
from unittest.mock import MagicMock
import uuid

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from habit_analytics.config import AnalyticsSettings  # noqa: E402
from habit_analytics.events import EventQueue  # noqa: E402
from habit_analytics.models import BiometricReading  # noqa: E402
from habit_analytics.storage import (  # noqa: E402
    AlertStore,
    BiometricStore,
    Database,
    HabitStore,
    UserStore,
)

TODAY = date(2024, 6, 15)


@pytest.fixture
def today() -> date:
    """Fixed reference day for date-dependent analytics."""
    return TODAY


@pytest.fixture
def db(tmp_path: Path) -> Database:
    """Database in a temporary directory."""
    return Database(tmp_path / "habits.db", timeout=1.0, max_retries=3)


@pytest.fixture
def habit_store(db: Database) -> HabitStore:
    return HabitStore(db)


@pytest.fixture
def biometric_store(db: Database) -> BiometricStore:
    return BiometricStore(db)


@pytest.fixture
def alert_store(db: Database) -> AlertStore:
    return AlertStore(db)


@pytest.fixture
def user_store(db: Database) -> UserStore:
    return UserStore(db)


@pytest.fixture
def analytics_settings() -> AnalyticsSettings:
    return AnalyticsSettings()


@pytest.fixture
def events() -> MagicMock:
    """Event queue double recording enqueue calls."""
    return MagicMock(spec=EventQueue)


def enqueued_names(events: MagicMock) -> list[str]:
    """Event names passed to ``EventQueue.enqueue`` in call order."""
    return [call.args[0] for call in events.enqueue.call_args_list]


def make_reading(
    user_id: str,
    day: date,
    stress: float | None = None,
    hrv: float | None = None,
    sleep: float | None = None,
    hour: int = 8,
) -> BiometricReading:
    """Wearable reading taken at ``hour`` on ``day``."""
    return BiometricReading(
        id=uuid.uuid4().hex,
        user_id=user_id,
        timestamp=datetime.combine(day, time(hour=hour)),
        hrv_average=hrv,
        stress_level=stress,
        sleep_score=sleep,
    )
