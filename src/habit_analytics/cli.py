"""CLI tools for tracking habits, summaries, the daily pass and DLQ maintenance."""

import argparse
import asyncio
import json
import sys
from datetime import date, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .config import get_settings
from .dlq import DeadLetterQueue, DLQCategory
from .logging import setup_logging
from .main import build_components
from .models import HabitKind, HabitSubmission
from .storage import StorageError
from .values import MalformedValueError


def parse_date(date_str: str) -> date:
    """Parse date string in YYYY-MM-DD format."""
    return datetime.strptime(date_str, "%Y-%m-%d").date()


def parse_value(raw: str) -> Any:
    """Parse a habit value given on the command line.

    JSON literals (``true``, ``2.5``, ``{"meal": "oats"}``) are decoded;
    anything else is kept as a string and rejected later by the kind check.
    """
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


async def _track(args: argparse.Namespace) -> int:
    settings = get_settings()
    setup_logging(settings.app)
    components = build_components(settings)

    try:
        submission = HabitSubmission(
            habit_type=args.habit,
            value=parse_value(args.value),
            date=args.date,
            duration_minutes=args.duration,
            quality_score=args.quality,
            energy_level=args.energy,
            note=args.note,
        )
    except ValidationError as e:
        print(f"Error: invalid submission: {e}", file=sys.stderr)
        return 1

    await components.events.start()
    try:
        await components.users.upsert_user(args.user)
        entry = await components.service.track_habit(args.user, submission)
    except MalformedValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except StorageError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    finally:
        await components.events.stop()

    _print_json(entry.to_dict())
    return 0


def track() -> None:
    """CLI entry point for submitting a habit entry.

    Usage:
        habit-track --user u1 --habit water --value 2.5 [--date 2024-01-15]
    """
    parser = argparse.ArgumentParser(description="Record a habit entry")
    parser.add_argument("--user", required=True, help="User ID")
    parser.add_argument(
        "--habit",
        required=True,
        choices=[k.value for k in HabitKind],
        help="Habit kind",
    )
    parser.add_argument("--value", required=True, help="Value as JSON (true, 2.5, {...})")
    parser.add_argument("--date", type=parse_date, help="Entry date (YYYY-MM-DD), default today")
    parser.add_argument("--duration", type=int, help="Duration in minutes")
    parser.add_argument("--quality", type=int, help="Quality score 1-10")
    parser.add_argument("--energy", type=int, help="Energy level 1-10")
    parser.add_argument("--note", help="Free-text note")

    args = parser.parse_args()
    sys.exit(asyncio.run(_track(args)))


async def _summary(user_id: str, days: int | None, habit: str | None) -> int:
    settings = get_settings()
    setup_logging(settings.app)
    components = build_components(settings)

    try:
        if habit:
            analytics = await components.service.habit_analytics(
                user_id, HabitKind(habit), days=days or settings.analytics.summary_days
            )
            _print_json(analytics.to_dict())
        else:
            summary = await components.service.get_summary(user_id, days)
            _print_json(summary.to_dict())
    except StorageError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    return 0


def summary() -> None:
    """CLI entry point for habit summaries.

    Usage:
        habit-summary --user u1 [--days 7] [--habit sleep]
    """
    parser = argparse.ArgumentParser(description="Show a user's habit summary")
    parser.add_argument("--user", required=True, help="User ID")
    parser.add_argument("--days", type=int, help="Window in days (default: ANALYTICS_SUMMARY_DAYS)")
    parser.add_argument(
        "--habit",
        choices=[k.value for k in HabitKind],
        help="Show analytics for one habit kind instead",
    )

    args = parser.parse_args()
    if args.days is not None and args.days < 1:
        print("Error: --days must be at least 1", file=sys.stderr)
        sys.exit(1)
    sys.exit(asyncio.run(_summary(args.user, args.days, args.habit)))


async def _daily_pass() -> int:
    settings = get_settings()
    setup_logging(settings.app)
    components = build_components(settings)

    await components.events.start()
    try:
        stats = await components.scheduler.run_daily_pass()
    except StorageError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    finally:
        await components.events.stop()

    _print_json(dict(stats))
    return 1 if stats["failed"] else 0


def daily_pass() -> None:
    """CLI entry point running the daily analysis pass once.

    Usage:
        habit-daily-pass
    """
    argparse.ArgumentParser(description="Run the daily habit analysis pass now").parse_args()
    sys.exit(asyncio.run(_daily_pass()))


async def _inspect_dlq(
    dlq: DeadLetterQueue,
    category: str | None,
    limit: int,
    show_traceback: bool,
    format_json: bool,
) -> None:
    cat = DLQCategory(category) if category else None
    entries = await dlq.get_entries(category=cat, limit=limit)

    if format_json:
        _print_json([entry.to_dict() for entry in entries])
        return

    if not entries:
        print("No DLQ entries found")
        return

    print(f"Found {len(entries)} entries:\n")
    for entry in entries:
        print(f"ID: {entry.id}")
        print(f"  Category:   {entry.category.value}")
        print(f"  Event:      {entry.event_name}")
        print(f"  Error:      {entry.error_message[:100]}")
        print(f"  Created:    {entry.created_at}")
        print(f"  Retries:    {entry.retry_count}")
        if show_traceback and entry.error_traceback:
            print(f"  Traceback:\n    {entry.error_traceback[:500]}")
        print()


async def _replay_dlq(
    dlq: DeadLetterQueue,
    entry_id: str | None,
    category: str | None,
    limit: int,
) -> int:
    settings = get_settings()
    components = build_components(settings)
    events = components.events

    if entry_id:
        success = await dlq.replay_entry(entry_id, events.redeliver)
        print(f"Replay {'succeeded' if success else 'failed'} for {entry_id}")
        return 0 if success else 1

    categories = [DLQCategory(category)] if category else list(DLQCategory)
    total_success = 0
    total_failure = 0
    for cat in categories:
        s, f = await dlq.replay_category(cat, events.redeliver, limit=limit)
        total_success += s
        total_failure += f
    print(f"Replayed: {total_success} succeeded, {total_failure} failed")
    return 0 if total_failure == 0 else 1


async def _dlq(args: argparse.Namespace) -> int:
    settings = get_settings()
    setup_logging(settings.app)
    dlq = DeadLetterQueue(
        args.db_path or Path(settings.dlq.db_path),
        max_entries=settings.dlq.max_entries,
        retention_days=settings.dlq.retention_days,
        max_retries=settings.dlq.max_retries,
    )

    if args.command == "inspect":
        await _inspect_dlq(dlq, args.category, args.limit, args.traceback, args.format_json)
        return 0
    if args.command == "replay":
        return await _replay_dlq(dlq, args.entry_id, args.category, args.limit)
    if args.command == "stats":
        _print_json(await dlq.get_stats())
        return 0
    if args.command == "clear":
        count = await dlq.clear()
        print(f"Deleted {count} entries")
        return 0
    return 1


def dlq_manage() -> None:
    """CLI entry point for dead-letter queue maintenance.

    Usage:
        habit-dlq inspect [--category delivery_error] [--limit 50] [--traceback]
        habit-dlq replay --id abc123
        habit-dlq replay --category delivery_error [--limit 100]
        habit-dlq stats
        habit-dlq clear --yes
    """
    parser = argparse.ArgumentParser(description="Inspect and replay failed event deliveries")
    parser.add_argument(
        "--db-path",
        type=Path,
        help="DLQ database path (default: DLQ_DB_PATH)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    inspect_parser = subparsers.add_parser("inspect", help="List entries")
    inspect_parser.add_argument(
        "--category",
        choices=[c.value for c in DLQCategory],
        help="Filter by category",
    )
    inspect_parser.add_argument("--limit", type=int, default=20, help="Maximum entries to show")
    inspect_parser.add_argument("--traceback", action="store_true", help="Show tracebacks")
    inspect_parser.add_argument(
        "--json", action="store_true", dest="format_json", help="Output as JSON"
    )

    replay_parser = subparsers.add_parser("replay", help="Redeliver entries")
    replay_parser.add_argument("--id", dest="entry_id", help="Replay specific entry by ID")
    replay_parser.add_argument(
        "--category",
        choices=[c.value for c in DLQCategory],
        help="Replay all entries in category",
    )
    replay_parser.add_argument("--limit", type=int, default=100, help="Maximum entries to replay")

    subparsers.add_parser("stats", help="Show DLQ statistics")

    clear_parser = subparsers.add_parser("clear", help="Delete all entries")
    clear_parser.add_argument("--yes", action="store_true", help="Confirm deletion")

    args = parser.parse_args()

    if args.command == "clear" and not args.yes:
        print("Error: pass --yes to delete all entries", file=sys.stderr)
        sys.exit(1)

    sys.exit(asyncio.run(_dlq(args)))
