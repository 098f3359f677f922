"""Habit analytics service.

Stores self-reported habit entries, joins them with wearable biometric
readings, and computes streaks, consistency scores and trends. Raises health
alerts when habit/biometric averages cross thresholds and runs a once-a-day
analysis pass over every active user, announcing results on an outbound
event queue.

Modules:
    config: Configuration management using pydantic-settings
    storage: SQLite stores for users, habits, readings and alerts
    analytics: Streaks, consistency, trend, correlation and recommendations
    service: Habit submission and per-user analysis
    scheduler: Daily analysis pass
    events: Outbound event queue with log and webhook sinks

Example:
    Run the service with its daily scheduler::

        $ uv run habit-analytics

    Run the daily pass once::

        $ uv run habit-daily-pass
"""

__version__ = "0.1.0"

from .config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__"]
