"""Once-a-day analysis pass over every active user."""

import asyncio
import time
from collections.abc import Callable
from datetime import date, datetime, timedelta

import structlog
from opentelemetry import trace

from .config import SchedulerSettings
from .metrics import DAILY_PASS_DURATION, LAST_DAILY_PASS, USERS_ANALYZED
from .service import HabitService
from .storage import UserStore
from .types import DailyPassStats

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)


def seconds_until_next_run(now: datetime, hour: int, minute: int) -> float:
    """Seconds from ``now`` until the next local ``hour:minute``."""
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class DailyScheduler:
    """Runs ``HabitService.analyze_user`` for every active user once per day.

    One user's failure is logged and counted and never stops the pass.
    """

    def __init__(
        self,
        service: HabitService,
        users: UserStore,
        settings: SchedulerSettings,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._service = service
        self._users = users
        self._settings = settings
        self._clock = clock
        self._last_stats: DailyPassStats | None = None
        self._last_run_date: date | None = None

    @property
    def last_stats(self) -> DailyPassStats | None:
        return self._last_stats

    async def run_daily_pass(self) -> DailyPassStats:
        """Analyze every active user with bounded concurrency."""
        started = time.monotonic()
        with tracer.start_as_current_span("habits.daily_pass") as span:
            user_ids = await self._users.list_active_users()
            span.set_attribute("habits.users", len(user_ids))
            logger.info("daily_pass_started", users=len(user_ids))

            semaphore = asyncio.Semaphore(self._settings.max_concurrent_users)
            stats = DailyPassStats(users=len(user_ids), analyzed=0, failed=0, alerts=0)

            async def analyze_one(user_id: str) -> None:
                async with semaphore:
                    try:
                        result = await self._service.analyze_user(user_id)
                    except Exception as e:
                        stats["failed"] += 1
                        USERS_ANALYZED.labels(status="failed").inc()
                        logger.error("user_analysis_failed", user_id=user_id, error=str(e))
                        return
                    stats["analyzed"] += 1
                    stats["alerts"] += len(result.alerts)
                    USERS_ANALYZED.labels(status="success").inc()

            await asyncio.gather(*(analyze_one(user_id) for user_id in user_ids))

            span.set_attribute("habits.failed", stats["failed"])
            span.set_attribute("habits.alerts", stats["alerts"])

        duration = time.monotonic() - started
        DAILY_PASS_DURATION.observe(duration)
        LAST_DAILY_PASS.set_to_current_time()
        self._last_stats = stats
        logger.info("daily_pass_complete", duration_seconds=round(duration, 3), **stats)
        return stats

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Sleep until the configured time, run the pass, repeat until stopped.

        At most one pass runs per calendar day, even if the timer wakes early
        or twice around the run time.
        """
        while not stop_event.is_set():
            delay = seconds_until_next_run(
                self._clock(), self._settings.run_hour, self._settings.run_minute
            )
            logger.info("daily_pass_scheduled", in_seconds=round(delay))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
                break
            except TimeoutError:
                pass

            today = self._clock().date()
            if today == self._last_run_date:
                logger.info("daily_pass_skipped", date=today.isoformat())
                continue
            self._last_run_date = today

            try:
                await self.run_daily_pass()
            except Exception as e:
                # Listing users failed; try again tomorrow
                logger.error("daily_pass_failed", error=str(e))
