"""Tests for the dead-letter queue."""

import json
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from habit_analytics.dlq import DeadLetterQueue, DLQCategory


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """Temporary DLQ database path."""
    return tmp_path / "dlq" / "events.db"


@pytest.fixture
def dlq(db_path):
    """Create a dead-letter queue."""
    return DeadLetterQueue(db_path, max_entries=100, retention_days=30, max_retries=3)


def delivery(sink: str = "webhook", event_id: str = "e1") -> bytes:
    """Serialized payload as written by the event queue."""
    return json.dumps(
        {
            "sink": sink,
            "event": {
                "event_id": event_id,
                "name": "habit.tracked",
                "user_id": "u1",
                "emitted_at": "2024-06-15T08:00:00+00:00",
                "payload": {"habit_type": "water"},
            },
        }
    ).encode()


class TestDeadLetterQueue:
    """Tests for DeadLetterQueue class."""

    @pytest.mark.asyncio
    async def test_enqueue_creates_entry(self, dlq):
        """Test that enqueue creates a new entry."""
        payload = delivery()

        entry_id = await dlq.enqueue(
            category=DLQCategory.DELIVERY_ERROR,
            event_name="habit.tracked",
            payload=payload,
            error=RuntimeError("Webhook returned 503"),
        )

        assert len(entry_id) == 16

        entry = await dlq.get_entry(entry_id)
        assert entry is not None
        assert entry.event_name == "habit.tracked"
        assert entry.category == DLQCategory.DELIVERY_ERROR
        assert entry.payload == payload
        assert "503" in entry.error_message
        assert entry.retry_count == 0

    @pytest.mark.asyncio
    async def test_get_entries_filter_by_category(self, dlq):
        """Test filtering entries by category."""
        await dlq.enqueue(
            category=DLQCategory.AUTH_ERROR,
            event_name="health.alert.created",
            payload=b"{}",
            error=Exception("401"),
        )
        await dlq.enqueue(
            category=DLQCategory.DELIVERY_ERROR,
            event_name="habit.tracked",
            payload=b"{}",
            error=Exception("503"),
        )

        auth_entries = await dlq.get_entries(category=DLQCategory.AUTH_ERROR)
        all_entries = await dlq.get_entries()

        assert [e.event_name for e in auth_entries] == ["health.alert.created"]
        assert len(all_entries) == 2

    @pytest.mark.asyncio
    async def test_get_entries_respects_limit(self, dlq):
        """Test limit parameter."""
        for i in range(10):
            await dlq.enqueue(
                category=DLQCategory.DELIVERY_ERROR,
                event_name="habit.tracked",
                payload=b"{}",
                error=Exception(f"Error {i}"),
            )

        entries = await dlq.get_entries(limit=5)

        assert len(entries) == 5

    @pytest.mark.asyncio
    async def test_delete_entry(self, dlq):
        """Test deleting an entry."""
        entry_id = await dlq.enqueue(
            category=DLQCategory.UNKNOWN_ERROR,
            event_name="habit.tracked",
            payload=b"{}",
            error=Exception("test"),
        )

        assert await dlq.delete_entry(entry_id) is True
        assert await dlq.delete_entry(entry_id) is False
        assert await dlq.get_entry(entry_id) is None

    @pytest.mark.asyncio
    async def test_replay_entry_success(self, dlq):
        """Successful replay passes the decoded payload and removes the entry."""
        entry_id = await dlq.enqueue(
            category=DLQCategory.DELIVERY_ERROR,
            event_name="habit.tracked",
            payload=delivery(),
            error=Exception("503"),
        )

        processed = []

        async def callback(event_name, data):
            processed.append((event_name, data["sink"], data["event"]["event_id"]))

        success = await dlq.replay_entry(entry_id, callback)

        assert success is True
        assert processed == [("habit.tracked", "webhook", "e1")]
        assert await dlq.get_entry(entry_id) is None

    @pytest.mark.asyncio
    async def test_replay_missing_entry(self, dlq):
        async def callback(event_name, data):
            raise AssertionError("should not be called")

        assert await dlq.replay_entry("nope", callback) is False

    @pytest.mark.asyncio
    async def test_replay_entry_max_retries(self, db_path):
        """Failed replays count up and stop at max_retries."""
        dlq = DeadLetterQueue(db_path, max_retries=2)

        entry_id = await dlq.enqueue(
            category=DLQCategory.DELIVERY_ERROR,
            event_name="habit.tracked",
            payload=delivery(),
            error=Exception("error"),
        )

        calls = []

        async def failing_callback(event_name, data):
            calls.append(event_name)
            raise Exception("Still failing")

        assert await dlq.replay_entry(entry_id, failing_callback) is False
        assert await dlq.replay_entry(entry_id, failing_callback) is False

        # Third attempt is blocked before the callback runs
        assert await dlq.replay_entry(entry_id, failing_callback) is False
        assert len(calls) == 2

        entry = await dlq.get_entry(entry_id)
        assert entry.retry_count == 2
        assert entry.last_retry_at is not None

    @pytest.mark.asyncio
    async def test_replay_category(self, dlq):
        """Test replaying all entries in a category."""
        for i in range(3):
            await dlq.enqueue(
                category=DLQCategory.DELIVERY_ERROR,
                event_name="habit.tracked",
                payload=delivery(event_id=f"e{i}"),
                error=Exception("503"),
            )
        await dlq.enqueue(
            category=DLQCategory.AUTH_ERROR,
            event_name="habit.tracked",
            payload=delivery(event_id="auth"),
            error=Exception("401"),
        )

        processed = []

        async def callback(event_name, data):
            processed.append(data["event"]["event_id"])

        success, failure = await dlq.replay_category(DLQCategory.DELIVERY_ERROR, callback)

        assert (success, failure) == (3, 0)
        assert sorted(processed) == ["e0", "e1", "e2"]
        assert len(await dlq.get_entries()) == 1

    @pytest.mark.asyncio
    async def test_get_stats(self, dlq):
        """Test statistics reporting."""
        for category in (DLQCategory.AUTH_ERROR, DLQCategory.AUTH_ERROR, DLQCategory.DELIVERY_ERROR):
            await dlq.enqueue(
                category=category,
                event_name="habit.tracked",
                payload=b"{}",
                error=Exception("failed"),
            )

        stats = await dlq.get_stats()

        assert stats["total_entries"] == 3
        assert stats["by_category"] == {"auth_error": 2, "delivery_error": 1}
        assert stats["total_enqueued"] == 3
        assert stats["avg_retry_count"] == 0

    @pytest.mark.asyncio
    async def test_clear(self, dlq):
        """Test clearing all entries."""
        for _ in range(5):
            await dlq.enqueue(
                category=DLQCategory.UNKNOWN_ERROR,
                event_name="habit.tracked",
                payload=b"{}",
                error=Exception("error"),
            )

        assert await dlq.clear() == 5
        assert await dlq.get_entries() == []

    @pytest.mark.asyncio
    async def test_entry_to_dict(self, dlq):
        """Test DLQEntry.to_dict()."""
        payload = b'{"key": "value"}'
        entry_id = await dlq.enqueue(
            category=DLQCategory.SERIALIZATION_ERROR,
            event_name="habits.weekly.analyzed",
            payload=payload,
            error=TypeError("not JSON serializable"),
        )

        d = (await dlq.get_entry(entry_id)).to_dict()

        assert d["id"] == entry_id
        assert d["category"] == "serialization_error"
        assert d["event_name"] == "habits.weekly.analyzed"
        assert d["payload_size"] == len(payload)
        assert d["retry_count"] == 0
        assert d["last_retry_at"] is None

    @pytest.mark.asyncio
    async def test_error_traceback_stored(self, dlq):
        """Test that error traceback is stored."""
        try:

            def inner():
                raise ValueError("inner error")

            inner()
        except ValueError as e:
            entry_id = await dlq.enqueue(
                category=DLQCategory.SERIALIZATION_ERROR,
                event_name="habit.tracked",
                payload=b"{}",
                error=e,
            )

        entry = await dlq.get_entry(entry_id)

        assert "inner error" in entry.error_traceback
        assert "inner()" in entry.error_traceback


class TestCleanup:
    """Tests for retention cleanup and max-entries eviction."""

    @pytest.mark.asyncio
    async def test_max_entries_eviction(self, db_path):
        """Oldest entries are evicted once max_entries is exceeded."""
        dlq = DeadLetterQueue(db_path, max_entries=5)

        ids = []
        for i in range(8):
            ids.append(
                await dlq.enqueue(
                    category=DLQCategory.DELIVERY_ERROR,
                    event_name="habit.tracked",
                    payload=b"{}",
                    error=Exception(f"error {i}"),
                )
            )

        entries = await dlq.get_entries()

        assert len(entries) == 5
        assert await dlq.get_entry(ids[-1]) is not None

    @pytest.mark.asyncio
    async def test_old_entries_cleaned_on_enqueue(self, db_path):
        """Entries older than retention_days are removed when a new entry is enqueued."""
        dlq = DeadLetterQueue(db_path, retention_days=1)

        old_id = await dlq.enqueue(
            category=DLQCategory.DELIVERY_ERROR,
            event_name="habit.tracked",
            payload=b"{}",
            error=Exception("old error"),
        )

        backdated = (datetime.now() - timedelta(days=2)).isoformat()
        with sqlite3.connect(db_path) as conn:
            conn.execute(
                "UPDATE dlq_entries SET created_at = ? WHERE id = ?",
                (backdated, old_id),
            )

        new_id = await dlq.enqueue(
            category=DLQCategory.DELIVERY_ERROR,
            event_name="habit.tracked",
            payload=b"{}",
            error=Exception("new error"),
        )

        assert await dlq.get_entry(old_id) is None
        assert await dlq.get_entry(new_id) is not None
