"""Domain models for habits, biometric readings, alerts and summaries."""

import datetime as dt
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from .types import CategoryAverage, JSONObject


class HabitKind(str, Enum):
    """Closed set of self-reported habits."""

    WATER = "water"
    SLEEP = "sleep"
    CRYOTHERAPY = "cryotherapy"
    FASTING = "fasting"
    NUTRITION = "nutrition"
    MEDITATION = "meditation"
    EXERCISE = "exercise"
    SUNLIGHT = "sunlight"
    SOCIAL_CONTACT = "social_contact"
    SAUNA = "sauna"
    MASSAGE = "massage"
    BREATHING = "breathing"
    JOURNALING = "journaling"
    GROUNDING = "grounding"
    SUPPLEMENTS = "supplements"
    CAFFEINE = "caffeine"
    ALCOHOL = "alcohol"
    ACTIVE_REST = "active_rest"
    STRESS_MANAGEMENT = "stress_management"
    OTHER = "other"


# Category -> member habit kinds, used for per-category streaks
HABIT_CATEGORIES: dict[str, tuple[HabitKind, ...]] = {
    "hydration": (HabitKind.WATER,),
    "nutrition": (HabitKind.NUTRITION, HabitKind.FASTING, HabitKind.SUPPLEMENTS),
    "recovery": (
        HabitKind.CRYOTHERAPY,
        HabitKind.SAUNA,
        HabitKind.MASSAGE,
        HabitKind.ACTIVE_REST,
    ),
    "sleep": (HabitKind.SLEEP,),
    "stress": (
        HabitKind.MEDITATION,
        HabitKind.JOURNALING,
        HabitKind.BREATHING,
        HabitKind.SOCIAL_CONTACT,
    ),
    "nature": (HabitKind.SUNLIGHT, HabitKind.GROUNDING),
    "stimulants": (HabitKind.CAFFEINE, HabitKind.ALCOHOL),
}


class AlertKind(str, Enum):
    """Kinds of persisted health alerts."""

    STRESS_PATTERN = "stress_pattern"
    POOR_SLEEP = "poor_sleep"
    LOW_HRV = "low_hrv"
    MISSING_HABITS = "missing_habits"
    BIOMARKER_ABNORMAL = "biomarker_abnormal"
    RECOVERY_NEEDED = "recovery_needed"


class Severity(str, Enum):
    """Alert severity."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class Trend(str, Enum):
    """Coarse direction of a habit's recent values."""

    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"
    NEUTRAL = "neutral"


class HabitSubmission(BaseModel):
    """A habit entry as submitted by a user."""

    habit_type: HabitKind = Field(description="Habit kind")
    value: Any = Field(description="Raw value; shape depends on the habit kind")
    # Module-qualified so the field name does not shadow the type
    date: dt.date | None = Field(default=None, description="Day of the entry, defaults to today")
    duration_minutes: int | None = Field(default=None, ge=0, description="Duration in minutes")
    quality_score: int | None = Field(default=None, ge=1, le=10, description="Quality 1-10")
    energy_level: int | None = Field(default=None, ge=1, le=10, description="Energy 1-10")
    note: str | None = Field(default=None, max_length=2000, description="Free-text note")

    @field_validator("note")
    @classmethod
    def strip_note(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None


@dataclass
class HabitEntry:
    """A stored habit entry. One per (user, date, habit kind)."""

    id: str
    user_id: str
    date: date
    habit_type: HabitKind
    value: Any  # decoded HabitValue, see values.py
    duration_minutes: int | None = None
    quality_score: int | None = None
    energy_level: int | None = None
    note: str | None = None
    created_at: datetime | None = None

    def to_dict(self) -> JSONObject:
        """Convert entry to an event-safe dictionary."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "date": self.date.isoformat(),
            "habit_type": self.habit_type.value,
            "value": self.value.model_dump(mode="json"),
            "duration_minutes": self.duration_minutes,
            "quality_score": self.quality_score,
            "energy_level": self.energy_level,
            "note": self.note,
        }


@dataclass
class BiometricReading:
    """A wearable reading written by the device-sync collaborator."""

    id: str
    user_id: str
    timestamp: datetime
    hrv_average: float | None = None
    stress_level: float | None = None
    sleep_score: float | None = None
    body_battery: float | None = None

    # Activity fields, unused by analytics
    activity_type: str | None = None
    duration_seconds: int | None = None
    distance_meters: float | None = None
    avg_heart_rate: int | None = None
    calories: int | None = None


@dataclass
class HealthAlert:
    """A persisted, user-visible flag raised by the analyzer."""

    id: str
    user_id: str
    alert_type: AlertKind
    severity: Severity
    message: str
    data: JSONObject
    triggered_at: datetime
    acknowledged_at: datetime | None = None
    resolved_at: datetime | None = None

    def to_dict(self) -> JSONObject:
        """Convert alert to dictionary."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "alert_type": self.alert_type.value,
            "severity": self.severity.value,
            "message": self.message,
            "data": self.data,
            "triggered_at": self.triggered_at.isoformat(),
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


@dataclass(frozen=True)
class Recommendation:
    """A reminder for a habit that has gone stale. Never persisted."""

    habit_type: HabitKind
    message: str
    last_logged: date
    days_since: int
    priority: Literal["low", "medium", "high"] = "medium"
    type: str = "missing_habit"

    def to_dict(self) -> JSONObject:
        return {
            "type": self.type,
            "habit": self.habit_type.value,
            "message": self.message,
            "priority": self.priority,
            "last_logged": self.last_logged.isoformat(),
            "days_since": self.days_since,
        }


@dataclass
class HabitAnalytics:
    """Per-habit-kind report over a trailing window."""

    habit_type: HabitKind
    total_days: int
    completion_rate: float
    streak: int
    trend: Trend
    last_entry: date | None

    def to_dict(self) -> JSONObject:
        return {
            "habit_type": self.habit_type.value,
            "total_days": self.total_days,
            "completion_rate": round(self.completion_rate, 1),
            "streak": self.streak,
            "trend": self.trend.value,
            "last_entry": self.last_entry.isoformat() if self.last_entry else None,
        }


@dataclass
class HabitSummary:
    """Summary of a user's habits over a window, emitted by the daily pass."""

    user_id: str
    window_days: int
    consistency: int
    categories: list[CategoryAverage] = field(default_factory=list)
    streaks: dict[str, int] = field(default_factory=dict)
    recommendations: list[Recommendation] = field(default_factory=list)

    def to_dict(self) -> JSONObject:
        """Convert summary to the weekly-analysis event payload."""
        return {
            "user_id": self.user_id,
            "window_days": self.window_days,
            "summary": [dict(c) for c in self.categories],
            "streaks": dict(self.streaks),
            "consistency": self.consistency,
            "recommendations": [r.to_dict() for r in self.recommendations],
        }


@dataclass
class UserAnalysis:
    """Outcome of one user's daily analysis."""

    summary: HabitSummary
    alerts: list[HealthAlert] = field(default_factory=list)
