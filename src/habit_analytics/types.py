"""Shared type aliases and typed dictionaries."""

from __future__ import annotations

from typing import TypeAlias, TypedDict

JSONValue: TypeAlias = (
    str | int | float | bool | None | list["JSONValue"] | dict[str, "JSONValue"]
)
JSONObject: TypeAlias = dict[str, JSONValue]
TraceContextCarrier: TypeAlias = dict[str, str]


class CategoryAverage(TypedDict):
    """Per-habit-kind aggregate over a summary window."""

    habit_type: str
    count: int
    avg_quality: float | None
    avg_energy: float | None


class CorrelationRow(TypedDict):
    """Per-habit-kind habit/biometric averages used for alerting."""

    habit_type: str
    avg_energy: float | None
    avg_hrv: float | None
    avg_stress: float | None
    avg_sleep_score: float | None


class DailyPassStats(TypedDict):
    """Outcome of one daily analysis pass."""

    users: int
    analyzed: int
    failed: int
    alerts: int
