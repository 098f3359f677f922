"""Dead-letter queue for event deliveries that failed after retries.

Each entry holds one (sink, event) pair, so replaying it redelivers the event
to the sink that failed and not to sinks that already accepted it. Events that
never made it into the queue are stored with no sink and replay to all of them.
"""

import json
import sqlite3
import traceback
import uuid
import zlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

import structlog

from .metrics import DLQ_ENTRIES
from .storage import Database

logger = structlog.get_logger(__name__)

ReplayCallback = Callable[[str, dict[str, Any]], Awaitable[None]]

DLQ_SCHEMA = """
CREATE TABLE IF NOT EXISTS dlq_entries (
    id TEXT PRIMARY KEY,
    category TEXT NOT NULL,
    event_name TEXT NOT NULL,
    payload BLOB NOT NULL,
    error_message TEXT NOT NULL,
    error_traceback TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    last_retry_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_dlq_category ON dlq_entries(category);
CREATE INDEX IF NOT EXISTS idx_dlq_created_at ON dlq_entries(created_at);
"""


class DLQCategory(str, Enum):
    """Why a delivery ended up in the dead-letter queue."""

    DELIVERY_ERROR = "delivery_error"
    AUTH_ERROR = "auth_error"
    SERIALIZATION_ERROR = "serialization_error"
    QUEUE_FULL = "queue_full"
    UNKNOWN_ERROR = "unknown_error"


@dataclass
class DLQEntry:
    """A failed event delivery."""

    id: str
    category: DLQCategory
    event_name: str
    payload: bytes
    error_message: str
    error_traceback: str | None
    retry_count: int
    created_at: datetime
    last_retry_at: datetime | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "DLQEntry":
        return cls(
            id=row["id"],
            category=DLQCategory(row["category"]),
            event_name=row["event_name"],
            payload=zlib.decompress(row["payload"]),
            error_message=row["error_message"],
            error_traceback=row["error_traceback"],
            retry_count=row["retry_count"],
            created_at=datetime.fromisoformat(row["created_at"]),
            last_retry_at=(
                datetime.fromisoformat(row["last_retry_at"]) if row["last_retry_at"] else None
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category.value,
            "event_name": self.event_name,
            "payload_size": len(self.payload),
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "created_at": self.created_at.isoformat(),
            "last_retry_at": self.last_retry_at.isoformat() if self.last_retry_at else None,
        }


class DeadLetterQueue:
    """Stores failed deliveries for inspection and replay.

    Entries live in their own SQLite file, separate from the habit database.
    They are aged out after ``retention_days`` and evicted oldest-first once
    ``max_entries`` is exceeded.
    """

    def __init__(
        self,
        db_path: Path | str,
        max_entries: int = 10_000,
        retention_days: int = 30,
        max_retries: int = 3,
    ) -> None:
        """Initialize the dead-letter queue.

        Args:
            db_path: Path to the DLQ SQLite file.
            max_entries: Entries kept before the oldest are evicted.
            retention_days: Entries older than this are deleted.
            max_retries: Replay attempts allowed per entry.
        """
        self._db = Database(db_path, schema=DLQ_SCHEMA)
        self._max_entries = max_entries
        self._retention_days = retention_days
        self._max_retries = max_retries
        self._total_enqueued = 0
        self._total_replayed = 0
        self._total_failed_replays = 0

    async def enqueue(
        self,
        category: DLQCategory,
        event_name: str,
        payload: bytes,
        error: Exception,
    ) -> str:
        """Record a failed delivery.

        Args:
            category: Error category for classification.
            event_name: Name of the event that was not delivered.
            payload: Serialized (sink, event) pair.
            error: Exception raised by the sink.

        Returns:
            DLQ entry ID.
        """
        entry_id = uuid.uuid4().hex[:16]
        error_tb = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        row = (
            entry_id,
            category.value,
            event_name,
            zlib.compress(payload),
            str(error),
            error_tb,
            datetime.now().isoformat(),
        )

        await self._db.run(
            "dlq_enqueue",
            lambda conn: conn.execute(
                """
                INSERT INTO dlq_entries (
                    id, category, event_name, payload, error_message,
                    error_traceback, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                row,
            ),
        )
        self._total_enqueued += 1
        DLQ_ENTRIES.labels(category=category.value).inc()

        logger.warning(
            "dlq_enqueued",
            entry_id=entry_id,
            category=category.value,
            event_name=event_name,
            error=str(error),
        )

        await self._cleanup_if_needed()
        return entry_id

    async def get_entry(self, entry_id: str) -> DLQEntry | None:
        row = await self._db.run(
            "dlq_get_entry",
            lambda conn: conn.execute(
                "SELECT * FROM dlq_entries WHERE id = ?", (entry_id,)
            ).fetchone(),
        )
        return DLQEntry.from_row(row) if row else None

    async def get_entries(
        self,
        category: DLQCategory | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[DLQEntry]:
        """Entries newest first, optionally for one category."""
        query = "SELECT * FROM dlq_entries"
        params: list[Any] = []
        if category:
            query += " WHERE category = ?"
            params.append(category.value)
        query += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        rows = await self._db.run(
            "dlq_get_entries", lambda conn: conn.execute(query, params).fetchall()
        )
        return [DLQEntry.from_row(row) for row in rows]

    async def replay_entry(self, entry_id: str, callback: ReplayCallback) -> bool:
        """Redeliver one entry through ``callback(event_name, payload)``.

        The entry is deleted on success. On failure its retry count goes up,
        and once it reaches ``max_retries`` the entry is no longer replayed.

        Returns:
            True if the callback succeeded.
        """
        entry = await self.get_entry(entry_id)
        if not entry:
            logger.warning("dlq_entry_not_found", entry_id=entry_id)
            return False

        if entry.retry_count >= self._max_retries:
            logger.warning(
                "dlq_max_retries_exceeded",
                entry_id=entry_id,
                retry_count=entry.retry_count,
            )
            return False

        try:
            await callback(entry.event_name, json.loads(entry.payload))
        except Exception as e:
            self._total_failed_replays += 1
            await self._increment_retry(entry_id)
            logger.warning(
                "dlq_replay_failed",
                entry_id=entry_id,
                event_name=entry.event_name,
                retry_count=entry.retry_count + 1,
                error=str(e),
            )
            return False

        await self.delete_entry(entry_id)
        self._total_replayed += 1
        logger.info("dlq_replay_success", entry_id=entry_id, event_name=entry.event_name)
        return True

    async def replay_category(
        self,
        category: DLQCategory,
        callback: ReplayCallback,
        limit: int = 100,
    ) -> tuple[int, int]:
        """Replay up to ``limit`` entries of one category.

        Returns:
            Tuple of (success_count, failure_count).
        """
        results = [
            await self.replay_entry(entry.id, callback)
            for entry in await self.get_entries(category=category, limit=limit)
        ]
        success = sum(results)
        failure = len(results) - success

        logger.info(
            "dlq_category_replay_complete",
            category=category.value,
            success=success,
            failure=failure,
        )
        return success, failure

    async def delete_entry(self, entry_id: str) -> bool:
        """Delete an entry. Returns False if it did not exist."""
        deleted = await self._db.run(
            "dlq_delete_entry",
            lambda conn: conn.execute(
                "DELETE FROM dlq_entries WHERE id = ?", (entry_id,)
            ).rowcount,
        )
        return deleted > 0

    async def _increment_retry(self, entry_id: str) -> None:
        now = datetime.now().isoformat()
        await self._db.run(
            "dlq_increment_retry",
            lambda conn: conn.execute(
                """
                UPDATE dlq_entries
                SET retry_count = retry_count + 1, last_retry_at = ?
                WHERE id = ?
                """,
                (now, entry_id),
            ),
        )

    async def _cleanup_if_needed(self) -> None:
        cutoff = (datetime.now() - timedelta(days=self._retention_days)).isoformat()

        def do_cleanup(conn: sqlite3.Connection) -> tuple[int, int]:
            aged_out = conn.execute(
                "DELETE FROM dlq_entries WHERE created_at < ?", (cutoff,)
            ).rowcount

            count = conn.execute("SELECT COUNT(*) FROM dlq_entries").fetchone()[0]
            evicted = max(0, count - self._max_entries)
            if evicted:
                conn.execute(
                    """
                    DELETE FROM dlq_entries WHERE id IN (
                        SELECT id FROM dlq_entries ORDER BY created_at ASC LIMIT ?
                    )
                    """,
                    (evicted,),
                )
            return aged_out, evicted

        aged_out, evicted = await self._db.run("dlq_cleanup", do_cleanup)
        if aged_out or evicted:
            logger.info("dlq_cleanup", aged_out=aged_out, evicted=evicted)

    async def get_stats(self) -> dict[str, Any]:
        def do_stats(conn: sqlite3.Connection) -> tuple[int, dict[str, int], float]:
            total = conn.execute("SELECT COUNT(*) FROM dlq_entries").fetchone()[0]
            by_category = {
                row["category"]: row["n"]
                for row in conn.execute(
                    "SELECT category, COUNT(*) AS n FROM dlq_entries GROUP BY category"
                )
            }
            avg_retries = conn.execute("SELECT AVG(retry_count) FROM dlq_entries").fetchone()[0]
            return total, by_category, avg_retries or 0

        total, by_category, avg_retries = await self._db.run("dlq_stats", do_stats)
        return {
            "total_entries": total,
            "max_entries": self._max_entries,
            "by_category": by_category,
            "avg_retry_count": round(avg_retries, 2),
            "total_enqueued": self._total_enqueued,
            "total_replayed": self._total_replayed,
            "total_failed_replays": self._total_failed_replays,
            "retention_days": self._retention_days,
            "db_path": str(self._db.path),
        }

    async def clear(self) -> int:
        """Delete every entry and return how many were removed."""
        count = await self._db.run(
            "dlq_clear", lambda conn: conn.execute("DELETE FROM dlq_entries").rowcount
        )
        logger.info("dlq_cleared", count=count)
        return count
