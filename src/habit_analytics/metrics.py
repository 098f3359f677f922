"""Prometheus metrics definitions for the habit-analytics service."""

from prometheus_client import Counter, Gauge, Histogram, Info

# -- Service info --
SERVICE_INFO = Info("habit_analytics", "Habit analytics service info")

# -- Habits --
HABITS_TRACKED = Counter(
    "habit_analytics_habits_tracked_total",
    "Total habit entries upserted",
    ["habit_type"],
)
MALFORMED_VALUES = Counter(
    "habit_analytics_malformed_values_total",
    "Stored habit values skipped because they did not match their kind",
    ["habit_type"],
)

# -- Alerts --
ALERTS_CREATED = Counter(
    "habit_analytics_alerts_created_total",
    "Total health alerts persisted",
    ["alert_type", "severity"],
)
CORRELATION_GROUP_FAILURES = Counter(
    "habit_analytics_correlation_group_failures_total",
    "Habit-kind groups whose correlation check failed",
)

# -- Daily pass --
DAILY_PASS_DURATION = Histogram(
    "habit_analytics_daily_pass_duration_seconds",
    "Duration of the daily analysis pass",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0),
)
USERS_ANALYZED = Counter(
    "habit_analytics_users_analyzed_total",
    "Users analyzed by the daily pass",
    ["status"],
)
LAST_DAILY_PASS = Gauge(
    "habit_analytics_last_daily_pass_timestamp_seconds",
    "Unix time of the last completed daily pass",
)

# -- Storage --
STORAGE_RETRIES = Counter(
    "habit_analytics_storage_retries_total",
    "Retried storage operations after a locked database",
)

# -- Events --
EVENTS_ENQUEUED = Counter(
    "habit_analytics_events_enqueued_total",
    "Total events accepted by the outbound queue",
    ["event"],
)
EVENTS_DELIVERED = Counter(
    "habit_analytics_events_delivered_total",
    "Total event deliveries",
    ["sink", "status"],
)
EVENTS_DROPPED = Counter(
    "habit_analytics_events_dropped_total",
    "Events dropped before delivery",
    ["reason"],
)
EVENT_QUEUE_DEPTH = Gauge(
    "habit_analytics_event_queue_depth",
    "Current outbound event queue depth",
)

# -- DLQ --
DLQ_ENTRIES = Counter(
    "habit_analytics_dlq_entries_total",
    "Total DLQ entries added",
    ["category"],
)
