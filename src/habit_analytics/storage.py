"""SQLite-backed stores for users, habits, biometric readings and alerts.

All blocking sqlite3 work runs in the default executor, one connection per
operation. Writes that hit a locked database are retried with backoff before
surfacing as ``StorageError``.
"""

import asyncio
import json
import sqlite3
import uuid
from collections.abc import Callable
from datetime import date, datetime
from pathlib import Path
from typing import TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .metrics import MALFORMED_VALUES, STORAGE_RETRIES
from .models import (
    AlertKind,
    BiometricReading,
    HabitEntry,
    HabitKind,
    HealthAlert,
    Severity,
)
from .types import CategoryAverage
from .values import MalformedValueError, decode_value, encode_value

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT UNIQUE,
    name TEXT,
    created_at TEXT NOT NULL,
    last_login TEXT,
    deleted_at TEXT
);

CREATE TABLE IF NOT EXISTS user_habits (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    date TEXT NOT NULL,
    habit_type TEXT NOT NULL,
    value TEXT NOT NULL,
    duration_minutes INTEGER,
    quality_score INTEGER CHECK(quality_score BETWEEN 1 AND 10),
    energy_level INTEGER CHECK(energy_level BETWEEN 1 AND 10),
    note TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    FOREIGN KEY (user_id) REFERENCES users(id),
    UNIQUE(user_id, date, habit_type)
);

CREATE TABLE IF NOT EXISTS biometric_readings (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    reading_date TEXT NOT NULL,
    hrv_average REAL,
    stress_level REAL,
    sleep_score REAL,
    body_battery REAL,
    activity_type TEXT,
    duration_seconds INTEGER,
    distance_meters REAL,
    avg_heart_rate INTEGER,
    calories INTEGER,
    created_at TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES users(id)
);

CREATE TABLE IF NOT EXISTS health_alerts (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    alert_type TEXT NOT NULL,
    severity TEXT CHECK(severity IN ('info', 'warning', 'critical')),
    message TEXT NOT NULL,
    data TEXT,
    triggered_at TEXT NOT NULL,
    acknowledged_at TEXT,
    resolved_at TEXT,
    FOREIGN KEY (user_id) REFERENCES users(id)
);

CREATE INDEX IF NOT EXISTS idx_habits_user_date ON user_habits(user_id, date);
CREATE INDEX IF NOT EXISTS idx_readings_user_date ON biometric_readings(user_id, reading_date);
CREATE INDEX IF NOT EXISTS idx_alerts_user_type ON health_alerts(user_id, alert_type);
"""


class StorageError(Exception):
    """Raised when a database read or write fails."""

    def __init__(self, operation: str, cause: Exception) -> None:
        super().__init__(f"Storage operation '{operation}' failed: {cause}")
        self.operation = operation


def _is_locked(exc: BaseException) -> bool:
    return isinstance(exc, sqlite3.OperationalError) and "locked" in str(exc).lower()


def _record_retry(retry_state: RetryCallState) -> None:
    STORAGE_RETRIES.inc()
    logger.warning(
        "storage_retry",
        attempt=retry_state.attempt_number,
        error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
    )


class Database:
    """Connection factory and executor bridge for the SQLite database."""

    def __init__(
        self,
        db_path: Path | str,
        timeout: float = 5.0,
        max_retries: int = 3,
        schema: str = SCHEMA,
    ) -> None:
        """Initialize the database.

        Args:
            db_path: Path to SQLite database file.
            timeout: Seconds to wait on a locked database per attempt.
            max_retries: Attempts for operations failing on a locked database.
            schema: DDL script applied by ``initialize``.
        """
        self._db_path = Path(db_path)
        self._schema = schema
        self._timeout = timeout
        self._max_retries = max_retries
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        """Open a SQLite connection with safer concurrency settings."""
        conn = sqlite3.connect(self._db_path, timeout=self._timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(f"PRAGMA busy_timeout = {int(self._timeout * 1000)}")
        conn.execute("PRAGMA foreign_keys = OFF")
        return conn

    async def initialize(self) -> None:
        """Create tables and indexes if they do not exist."""
        async with self._init_lock:
            if self._initialized:
                return

            def init_db(conn: sqlite3.Connection) -> None:
                conn.executescript(self._schema)

            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            await self._execute("initialize", init_db)
            self._initialized = True
            logger.debug("database_initialized", path=str(self._db_path))

    async def run(self, operation: str, fn: Callable[[sqlite3.Connection], T]) -> T:
        """Run ``fn`` with a fresh connection inside one transaction.

        Args:
            operation: Name used in logs and errors.
            fn: Blocking function receiving the connection.

        Returns:
            Whatever ``fn`` returns.

        Raises:
            StorageError: If the operation fails after retries.
        """
        if not self._initialized:
            await self.initialize()
        return await self._execute(operation, fn)

    async def _execute(self, operation: str, fn: Callable[[sqlite3.Connection], T]) -> T:
        loop = asyncio.get_running_loop()

        def do_run() -> T:
            conn = self._connect()
            try:
                # Connection context manager commits on success, rolls back on error
                with conn:
                    return fn(conn)
            finally:
                conn.close()

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_retries),
                wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
                retry=retry_if_exception(_is_locked),
                before_sleep=_record_retry,
                reraise=True,
            ):
                with attempt:
                    return await loop.run_in_executor(None, do_run)
        except sqlite3.Error as e:
            logger.error("storage_error", operation=operation, error=str(e))
            raise StorageError(operation, e) from e
        # Should not reach here, but satisfy type checker
        raise StorageError(operation, RuntimeError("Retries exhausted"))


def _new_id() -> str:
    return uuid.uuid4().hex


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class UserStore:
    """Users and their soft-delete state."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def upsert_user(
        self,
        user_id: str,
        email: str | None = None,
        name: str | None = None,
    ) -> None:
        """Create a user or refresh its details and last login."""
        now = datetime.now().isoformat()

        def do_upsert(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO users (id, email, name, created_at, last_login)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    email = COALESCE(excluded.email, users.email),
                    name = COALESCE(excluded.name, users.name),
                    last_login = excluded.last_login
                """,
                (user_id, email, name, now, now),
            )

        await self._db.run("upsert_user", do_upsert)

    async def soft_delete(self, user_id: str) -> bool:
        """Mark a user deleted. Their rows stay but the daily pass skips them."""

        def do_delete(conn: sqlite3.Connection) -> bool:
            cursor = conn.execute(
                "UPDATE users SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                (datetime.now().isoformat(), user_id),
            )
            return cursor.rowcount > 0

        return await self._db.run("soft_delete_user", do_delete)

    async def list_active_users(self) -> list[str]:
        """Return ids of users that are not deleted."""

        def do_list(conn: sqlite3.Connection) -> list[str]:
            cursor = conn.execute(
                "SELECT id FROM users WHERE deleted_at IS NULL ORDER BY created_at, id"
            )
            return [row["id"] for row in cursor]

        return await self._db.run("list_active_users", do_list)


class HabitStore:
    """Per-user, per-day, per-kind habit entries."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def upsert(
        self,
        user_id: str,
        entry_date: date,
        habit_type: HabitKind,
        value: object,
        duration_minutes: int | None = None,
        quality_score: int | None = None,
        energy_level: int | None = None,
        note: str | None = None,
    ) -> HabitEntry:
        """Insert an entry or replace the one for the same (user, date, kind).

        The id of an existing entry is kept.

        Returns:
            The stored entry.
        """
        now = datetime.now().isoformat()
        encoded = encode_value(value)  # type: ignore[arg-type]

        def do_upsert(conn: sqlite3.Connection) -> sqlite3.Row:
            conn.execute(
                """
                INSERT INTO user_habits (
                    id, user_id, date, habit_type, value, duration_minutes,
                    quality_score, energy_level, note, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, date, habit_type) DO UPDATE SET
                    value = excluded.value,
                    duration_minutes = excluded.duration_minutes,
                    quality_score = excluded.quality_score,
                    energy_level = excluded.energy_level,
                    note = excluded.note,
                    updated_at = excluded.created_at
                """,
                (
                    _new_id(),
                    user_id,
                    entry_date.isoformat(),
                    habit_type.value,
                    encoded,
                    duration_minutes,
                    quality_score,
                    energy_level,
                    note,
                    now,
                ),
            )
            cursor = conn.execute(
                """
                SELECT * FROM user_habits
                WHERE user_id = ? AND date = ? AND habit_type = ?
                """,
                (user_id, entry_date.isoformat(), habit_type.value),
            )
            return cursor.fetchone()

        row = await self._db.run("upsert_habit", do_upsert)
        return self._row_to_entry(row)

    async def list_entries(
        self,
        user_id: str,
        start: date | None = None,
        end: date | None = None,
        habit_type: HabitKind | None = None,
        ascending: bool = False,
    ) -> list[HabitEntry]:
        """List entries for a user, newest first unless ``ascending``.

        Rows with an unknown kind or a malformed value are skipped.
        """
        clauses = ["user_id = ?"]
        args: list[object] = [user_id]
        if start:
            clauses.append("date >= ?")
            args.append(start.isoformat())
        if end:
            clauses.append("date <= ?")
            args.append(end.isoformat())
        if habit_type:
            clauses.append("habit_type = ?")
            args.append(habit_type.value)
        order = "ASC" if ascending else "DESC"

        def do_list(conn: sqlite3.Connection) -> list[sqlite3.Row]:
            cursor = conn.execute(
                f"SELECT * FROM user_habits WHERE {' AND '.join(clauses)} "
                f"ORDER BY date {order}, habit_type",
                args,
            )
            return cursor.fetchall()

        rows = await self._db.run("list_habits", do_list)

        entries: list[HabitEntry] = []
        for row in rows:
            try:
                entries.append(self._row_to_entry(row))
            except MalformedValueError as e:
                MALFORMED_VALUES.labels(habit_type=row["habit_type"]).inc()
                logger.warning(
                    "habit_value_malformed",
                    entry_id=row["id"],
                    habit_type=row["habit_type"],
                    error=str(e),
                )
            except ValueError as e:
                logger.warning(
                    "habit_type_unknown",
                    entry_id=row["id"],
                    habit_type=row["habit_type"],
                    error=str(e),
                )
        return entries

    async def habit_dates(self, user_id: str, habit_type: HabitKind) -> list[date]:
        """Dates with an entry for one kind, newest first."""

        def do_dates(conn: sqlite3.Connection) -> list[str]:
            cursor = conn.execute(
                """
                SELECT date FROM user_habits
                WHERE user_id = ? AND habit_type = ?
                ORDER BY date DESC
                """,
                (user_id, habit_type.value),
            )
            return [row["date"] for row in cursor]

        rows = await self._db.run("habit_dates", do_dates)
        return [date.fromisoformat(d) for d in rows]

    async def dates_by_kind(self, user_id: str) -> dict[HabitKind, list[date]]:
        """Entry dates grouped by habit kind, newest first within each kind."""

        def do_dates(conn: sqlite3.Connection) -> list[sqlite3.Row]:
            cursor = conn.execute(
                """
                SELECT habit_type, date FROM user_habits
                WHERE user_id = ?
                ORDER BY habit_type, date DESC
                """,
                (user_id,),
            )
            return cursor.fetchall()

        rows = await self._db.run("dates_by_kind", do_dates)

        result: dict[HabitKind, list[date]] = {}
        for row in rows:
            try:
                kind = HabitKind(row["habit_type"])
            except ValueError:
                continue
            result.setdefault(kind, []).append(date.fromisoformat(row["date"]))
        return result

    async def distinct_dates(self, user_id: str, start: date, end: date) -> list[date]:
        """Distinct days in [start, end] with at least one entry of any kind."""

        def do_dates(conn: sqlite3.Connection) -> list[str]:
            cursor = conn.execute(
                """
                SELECT DISTINCT date FROM user_habits
                WHERE user_id = ? AND date >= ? AND date <= ?
                ORDER BY date
                """,
                (user_id, start.isoformat(), end.isoformat()),
            )
            return [row["date"] for row in cursor]

        rows = await self._db.run("distinct_dates", do_dates)
        return [date.fromisoformat(d) for d in rows]

    async def last_logged(self, user_id: str) -> dict[HabitKind, date]:
        """Most recent entry date per habit kind ever logged."""

        def do_last(conn: sqlite3.Connection) -> list[sqlite3.Row]:
            cursor = conn.execute(
                """
                SELECT habit_type, MAX(date) AS last_date
                FROM user_habits
                WHERE user_id = ?
                GROUP BY habit_type
                """,
                (user_id,),
            )
            return cursor.fetchall()

        rows = await self._db.run("last_logged", do_last)

        result: dict[HabitKind, date] = {}
        for row in rows:
            try:
                result[HabitKind(row["habit_type"])] = date.fromisoformat(row["last_date"])
            except ValueError:
                logger.warning("habit_type_unknown", habit_type=row["habit_type"])
        return result

    async def category_averages(
        self, user_id: str, start: date, end: date
    ) -> list[CategoryAverage]:
        """Count, average quality and average energy per kind in [start, end]."""

        def do_averages(conn: sqlite3.Connection) -> list[sqlite3.Row]:
            cursor = conn.execute(
                """
                SELECT habit_type, COUNT(*) AS count,
                       AVG(quality_score) AS avg_quality,
                       AVG(energy_level) AS avg_energy
                FROM user_habits
                WHERE user_id = ? AND date >= ? AND date <= ?
                GROUP BY habit_type
                ORDER BY habit_type
                """,
                (user_id, start.isoformat(), end.isoformat()),
            )
            return cursor.fetchall()

        rows = await self._db.run("category_averages", do_averages)
        return [
            CategoryAverage(
                habit_type=row["habit_type"],
                count=row["count"],
                avg_quality=row["avg_quality"],
                avg_energy=row["avg_energy"],
            )
            for row in rows
        ]

    async def correlation_rows(
        self,
        user_id: str,
        start: date,
        end: date,
        habit_type: HabitKind | None = None,
    ) -> list[dict[str, object]]:
        """Habit rows left-joined with same-day biometric readings.

        Habit entries without a reading still appear with null biometric fields.
        """
        clauses = ["h.user_id = ?", "h.date >= ?", "h.date <= ?"]
        args: list[object] = [user_id, start.isoformat(), end.isoformat()]
        if habit_type:
            clauses.append("h.habit_type = ?")
            args.append(habit_type.value)

        def do_join(conn: sqlite3.Connection) -> list[dict[str, object]]:
            cursor = conn.execute(
                f"""
                SELECT h.habit_type, h.date, h.energy_level,
                       b.hrv_average, b.stress_level, b.sleep_score
                FROM user_habits h
                LEFT JOIN biometric_readings b
                    ON b.user_id = h.user_id AND b.reading_date = h.date
                WHERE {' AND '.join(clauses)}
                ORDER BY h.habit_type, h.date
                """,
                args,
            )
            return [dict(row) for row in cursor]

        return await self._db.run("correlation_rows", do_join)

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> HabitEntry:
        habit_type = HabitKind(row["habit_type"])
        return HabitEntry(
            id=row["id"],
            user_id=row["user_id"],
            date=date.fromisoformat(row["date"]),
            habit_type=habit_type,
            value=decode_value(habit_type, row["value"]),
            duration_minutes=row["duration_minutes"],
            quality_score=row["quality_score"],
            energy_level=row["energy_level"],
            note=row["note"],
            created_at=_parse_dt(row["created_at"]),
        )


class BiometricStore:
    """Wearable readings. Written by device sync, read by analytics."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def add_reading(self, reading: BiometricReading) -> None:
        """Store a reading. Its calendar day is taken from its own timestamp."""

        def do_insert(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT OR REPLACE INTO biometric_readings (
                    id, user_id, timestamp, reading_date, hrv_average, stress_level,
                    sleep_score, body_battery, activity_type, duration_seconds,
                    distance_meters, avg_heart_rate, calories, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    reading.id,
                    reading.user_id,
                    reading.timestamp.isoformat(),
                    reading.timestamp.date().isoformat(),
                    reading.hrv_average,
                    reading.stress_level,
                    reading.sleep_score,
                    reading.body_battery,
                    reading.activity_type,
                    reading.duration_seconds,
                    reading.distance_meters,
                    reading.avg_heart_rate,
                    reading.calories,
                    datetime.now().isoformat(),
                ),
            )

        await self._db.run("add_reading", do_insert)

    async def list_readings(self, user_id: str, start: date, end: date) -> list[BiometricReading]:
        """Readings whose calendar day falls in [start, end], oldest first."""

        def do_list(conn: sqlite3.Connection) -> list[sqlite3.Row]:
            cursor = conn.execute(
                """
                SELECT * FROM biometric_readings
                WHERE user_id = ? AND reading_date >= ? AND reading_date <= ?
                ORDER BY timestamp
                """,
                (user_id, start.isoformat(), end.isoformat()),
            )
            return cursor.fetchall()

        rows = await self._db.run("list_readings", do_list)
        return [
            BiometricReading(
                id=row["id"],
                user_id=row["user_id"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
                hrv_average=row["hrv_average"],
                stress_level=row["stress_level"],
                sleep_score=row["sleep_score"],
                body_battery=row["body_battery"],
                activity_type=row["activity_type"],
                duration_seconds=row["duration_seconds"],
                distance_meters=row["distance_meters"],
                avg_heart_rate=row["avg_heart_rate"],
                calories=row["calories"],
            )
            for row in rows
        ]


class AlertStore:
    """Append-only health alerts."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def insert(self, alert: HealthAlert) -> None:
        """Persist an alert in a single transaction."""

        def do_insert(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO health_alerts (
                    id, user_id, alert_type, severity, message, data, triggered_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    alert.id,
                    alert.user_id,
                    alert.alert_type.value,
                    alert.severity.value,
                    alert.message,
                    json.dumps(alert.data, default=str),
                    alert.triggered_at.isoformat(),
                ),
            )

        await self._db.run("insert_alert", do_insert)

    async def list_alerts(
        self,
        user_id: str,
        alert_type: AlertKind | None = None,
        limit: int = 100,
    ) -> list[HealthAlert]:
        """Alerts for a user, newest first."""
        if alert_type:
            sql = """
                SELECT * FROM health_alerts
                WHERE user_id = ? AND alert_type = ?
                ORDER BY triggered_at DESC LIMIT ?
            """
            args: tuple[object, ...] = (user_id, alert_type.value, limit)
        else:
            sql = """
                SELECT * FROM health_alerts
                WHERE user_id = ?
                ORDER BY triggered_at DESC LIMIT ?
            """
            args = (user_id, limit)

        def do_list(conn: sqlite3.Connection) -> list[sqlite3.Row]:
            return conn.execute(sql, args).fetchall()

        rows = await self._db.run("list_alerts", do_list)
        return [
            HealthAlert(
                id=row["id"],
                user_id=row["user_id"],
                alert_type=AlertKind(row["alert_type"]),
                severity=Severity(row["severity"]),
                message=row["message"],
                data=json.loads(row["data"]) if row["data"] else {},
                triggered_at=datetime.fromisoformat(row["triggered_at"]),
                acknowledged_at=_parse_dt(row["acknowledged_at"]),
                resolved_at=_parse_dt(row["resolved_at"]),
            )
            for row in rows
        ]
