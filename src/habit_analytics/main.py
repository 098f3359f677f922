"""Main entry point for the habit analytics service."""

import asyncio
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog
from prometheus_client import start_http_server as start_metrics_server

from . import __version__
from .config import Settings, get_settings
from .dlq import DeadLetterQueue
from .events import EventQueue, EventSink, LoggingSink, WebhookSink
from .logging import setup_logging
from .metrics import EVENT_QUEUE_DEPTH, SERVICE_INFO
from .scheduler import DailyScheduler
from .service import HabitService
from .storage import Database, UserStore
from .tracing import setup_tracing, shutdown_tracing

logger = structlog.get_logger(__name__)


@dataclass
class Components:
    """Wired-up service objects sharing one database and event queue."""

    db: Database
    users: UserStore
    events: EventQueue
    dlq: DeadLetterQueue | None
    service: HabitService
    scheduler: DailyScheduler


def build_components(settings: Settings) -> Components:
    """Construct stores, event delivery, the habit service and the scheduler."""
    db = Database(
        settings.database.path,
        timeout=settings.database.timeout_seconds,
        max_retries=settings.database.max_retries,
    )

    dlq: DeadLetterQueue | None = None
    if settings.dlq.enabled:
        dlq = DeadLetterQueue(
            db_path=Path(settings.dlq.db_path),
            max_entries=settings.dlq.max_entries,
            retention_days=settings.dlq.retention_days,
            max_retries=settings.dlq.max_retries,
        )

    sinks: list[EventSink] = [LoggingSink()]
    if settings.events.webhook_url:
        sinks.append(WebhookSink(settings.events))

    events = EventQueue(settings.events, sinks=sinks, dlq=dlq)
    service = HabitService.from_database(db, events, settings.analytics)
    users = UserStore(db)
    scheduler = DailyScheduler(service, users, settings.scheduler)
    return Components(
        db=db,
        users=users,
        events=events,
        dlq=dlq,
        service=service,
        scheduler=scheduler,
    )


class HabitAnalyticsService:
    """Long-running service: event delivery plus the daily analysis pass."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._components: Components | None = None
        self._shutdown_event = asyncio.Event()
        self._scheduler_task: asyncio.Task | None = None
        self._watchdog_task: asyncio.Task | None = None

    @property
    def components(self) -> Components | None:
        return self._components

    async def start(self) -> None:
        """Start the service."""
        setup_tracing(self._settings.tracing, version=__version__)
        logger.info("service_starting", version=__version__)
        SERVICE_INFO.info({"version": __version__, "python": sys.version.split()[0]})

        self._components = build_components(self._settings)
        await self._components.db.initialize()
        await self._components.events.start()

        if self._settings.scheduler.enabled:
            self._scheduler_task = asyncio.create_task(
                self._components.scheduler.run_forever(self._shutdown_event)
            )
        else:
            logger.info("scheduler_disabled")

        self._watchdog_task = asyncio.create_task(self._watchdog_loop())

        start_metrics_server(port=self._settings.app.prometheus_port)
        logger.info("prometheus_metrics_started", port=self._settings.app.prometheus_port)
        logger.info("service_started")

    async def stop(self) -> None:
        """Stop the service gracefully."""
        logger.info("service_stopping")
        self._shutdown_event.set()

        if self._scheduler_task:
            # A pass in progress is allowed to finish
            await asyncio.gather(self._scheduler_task, return_exceptions=True)

        if self._watchdog_task:
            self._watchdog_task.cancel()
            try:
                await self._watchdog_task
            except asyncio.CancelledError:
                pass

        if self._components:
            await self._components.events.stop(timeout=self._settings.events.timeout_seconds)

        shutdown_tracing()
        logger.info("service_stopped")

    async def run_until_shutdown(self) -> None:
        """Run the service until shutdown signal received."""
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        """Request service shutdown."""
        self._shutdown_event.set()

    def status(self) -> dict[str, Any]:
        """Readiness snapshot of the service components."""
        if not self._components:
            return {"status": "starting", "components": {}}
        events = self._components.events
        last_pass = self._components.scheduler.last_stats
        return {
            "status": "ok",
            "components": {
                "database": str(self._components.db.path),
                "events": {
                    "pending": events.pending,
                    "max_size": self._settings.events.queue_size,
                    "sinks": [s.name for s in events.sinks],
                },
                "dlq": "enabled" if self._components.dlq else "disabled",
                "scheduler": {
                    "enabled": self._settings.scheduler.enabled,
                    "last_pass": dict(last_pass) if last_pass else None,
                },
            },
        }

    async def _watchdog_loop(self) -> None:
        """Periodically publish queue depth and warn when it runs high."""
        while True:
            try:
                await asyncio.sleep(30.0)
                if not self._components:
                    continue
                depth = self._components.events.pending
                EVENT_QUEUE_DEPTH.set(depth)
                if depth > self._settings.events.queue_size * 0.8:
                    logger.warning(
                        "watchdog_queue_high",
                        depth=depth,
                        max=self._settings.events.queue_size,
                    )
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("watchdog_error", error=str(e))


async def main() -> None:
    """Main entry point."""
    settings = get_settings()
    setup_logging(settings.app)

    service = HabitAnalyticsService(settings)

    loop = asyncio.get_running_loop()

    def signal_handler() -> None:
        logger.info("shutdown_signal_received")
        service.request_shutdown()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await service.start()
        await service.run_until_shutdown()
    except Exception as e:
        logger.exception("service_error", error=str(e))
        raise
    finally:
        await service.stop()


def run() -> None:
    """Entry point for the CLI."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
