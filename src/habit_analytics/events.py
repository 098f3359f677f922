"""Outbound event queue and delivery sinks.

Analytics code calls ``EventQueue.enqueue`` synchronously; background workers
deliver each event to every configured sink. Delivery is at-least-once: a
consumer may see the same ``event_id`` twice and should drop the duplicate.
"""

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

import httpx
import structlog
from opentelemetry import trace
from opentelemetry.trace import SpanKind
from tenacity import (
    AsyncRetrying,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import EventSettings
from .dlq import DeadLetterQueue, DLQCategory
from .metrics import EVENT_QUEUE_DEPTH, EVENTS_DELIVERED, EVENTS_DROPPED, EVENTS_ENQUEUED
from .tracing import extract_trace_context, inject_trace_context
from .types import JSONObject

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

HABIT_TRACKED = "habit.tracked"
WEEKLY_ANALYZED = "habits.weekly.analyzed"
ALERT_CREATED = "health.alert.created"


@dataclass(frozen=True)
class Event:
    """A notification for downstream consumers."""

    name: str
    user_id: str
    payload: JSONObject
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    emitted_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    trace_context: dict[str, str] | None = None

    def to_dict(self) -> JSONObject:
        return {
            "event_id": self.event_id,
            "name": self.name,
            "user_id": self.user_id,
            "emitted_at": self.emitted_at.isoformat(),
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        return cls(
            name=data["name"],
            user_id=data["user_id"],
            payload=data["payload"],
            event_id=data["event_id"],
            emitted_at=datetime.fromisoformat(data["emitted_at"]),
        )


class EventSink(Protocol):
    """Destination for delivered events."""

    name: str

    async def deliver(self, event: Event) -> None: ...


class LoggingSink:
    """Writes each event to the structured log."""

    name = "log"

    async def deliver(self, event: Event) -> None:
        logger.info(
            "event_emitted",
            event_name=event.name,
            event_id=event.event_id,
            user_id=event.user_id,
        )


class WebhookAuthError(Exception):
    """Raised when the webhook rejects our credentials."""


class WebhookDeliveryError(Exception):
    """Raised when the webhook answers with a non-success status."""


class EventQueueFullError(Exception):
    """Recorded in the DLQ for events that did not fit in the queue."""


class WebhookSink:
    """POSTs each event as JSON to a configured URL."""

    name = "webhook"

    def __init__(
        self,
        settings: EventSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the webhook sink.

        Args:
            settings: Event delivery settings (URL, token, retries).
            transport: Optional httpx transport, used by tests.
        """
        if not settings.webhook_url:
            raise ValueError("Webhook URL is required")
        self._settings = settings
        self._transport = transport

    async def deliver(self, event: Event) -> None:
        """Deliver with tenacity-managed retries. Auth failures are not retried."""
        async for attempt_state in AsyncRetrying(
            stop=stop_after_attempt(self._settings.max_retries),
            wait=wait_exponential(
                multiplier=self._settings.retry_delay_seconds,
                min=self._settings.retry_delay_seconds,
                max=30,
            ),
            retry=retry_if_not_exception_type((WebhookAuthError, TypeError, ValueError)),
            reraise=True,
        ):
            with attempt_state:
                await self._attempt_send(event, attempt_state.retry_state.attempt_number)

    async def _attempt_send(self, event: Event, attempt: int) -> None:
        headers = {"Content-Type": "application/json", "X-Event-Id": event.event_id}
        if self._settings.webhook_token:
            headers["Authorization"] = f"Bearer {self._settings.webhook_token}"
        if event.trace_context:
            headers.update(event.trace_context)

        body = json.dumps(event.to_dict())

        async with httpx.AsyncClient(
            transport=self._transport,
            timeout=self._settings.timeout_seconds,
        ) as client:
            response = await client.post(
                str(self._settings.webhook_url),
                content=body,
                headers=headers,
            )

        if response.status_code in (401, 403):
            raise WebhookAuthError(f"Webhook rejected credentials ({response.status_code})")
        if response.status_code >= 300:
            logger.warning(
                "webhook_delivery_attempt_failed",
                event_id=event.event_id,
                attempt=attempt,
                status=response.status_code,
            )
            raise WebhookDeliveryError(f"Webhook returned {response.status_code}")

        logger.debug(
            "webhook_delivered",
            event_id=event.event_id,
            attempt=attempt,
            status=response.status_code,
        )


def _categorize(error: Exception) -> DLQCategory:
    if isinstance(error, EventQueueFullError):
        return DLQCategory.QUEUE_FULL
    if isinstance(error, WebhookAuthError):
        return DLQCategory.AUTH_ERROR
    if isinstance(error, TypeError | ValueError):
        return DLQCategory.SERIALIZATION_ERROR
    if isinstance(error, WebhookDeliveryError | httpx.HTTPError):
        return DLQCategory.DELIVERY_ERROR
    return DLQCategory.UNKNOWN_ERROR


class EventQueue:
    """Bounded in-process queue with background delivery workers."""

    def __init__(
        self,
        settings: EventSettings,
        sinks: list[EventSink] | None = None,
        dlq: DeadLetterQueue | None = None,
    ) -> None:
        self._settings = settings
        self._sinks: list[EventSink] = sinks if sinks is not None else [LoggingSink()]
        self._dlq = dlq
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=settings.queue_size)
        self._worker_tasks: list[asyncio.Task] = []
        self._overflow_tasks: set[asyncio.Task] = set()
        self._delivered = 0
        self._dropped = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def sinks(self) -> list[EventSink]:
        return list(self._sinks)

    def enqueue(self, name: str, user_id: str, payload: JSONObject) -> Event | None:
        """Queue an event for delivery without waiting.

        An event that does not fit is written to the DLQ in the background
        (category ``queue_full``) and can be replayed from there.

        Returns:
            The queued event, or None if the queue was full.
        """
        event = Event(
            name=name,
            user_id=user_id,
            payload=payload,
            trace_context=inject_trace_context() or None,
        )
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._dropped += 1
            EVENTS_DROPPED.labels(reason="queue_full").inc()
            logger.warning(
                "event_queue_full",
                event_name=name,
                event_id=event.event_id,
                user_id=user_id,
                queue_size=self._settings.queue_size,
                dead_lettered=self._dlq is not None,
            )
            if self._dlq:
                self._dead_letter_overflow(event)
            return None

        EVENTS_ENQUEUED.labels(event=name).inc()
        EVENT_QUEUE_DEPTH.set(self._queue.qsize())
        return event

    def _dead_letter_overflow(self, event: Event) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error("event_lost_no_loop", event_name=event.name, event_id=event.event_id)
            return
        task = loop.create_task(
            self._record_failure(
                None, event, EventQueueFullError(f"Queue full ({self._settings.queue_size})")
            )
        )
        self._overflow_tasks.add(task)
        task.add_done_callback(self._overflow_tasks.discard)

    async def _record_failure(
        self, sink_name: str | None, event: Event, error: Exception
    ) -> None:
        """Write a (sink, event) pair to the DLQ. ``None`` targets every sink."""
        if not self._dlq:
            return
        try:
            await self._dlq.enqueue(
                category=_categorize(error),
                event_name=event.name,
                payload=json.dumps({"sink": sink_name, "event": event.to_dict()}).encode(
                    "utf-8"
                ),
                error=error,
            )
        except Exception as e:
            logger.error(
                "dlq_write_failed",
                event_name=event.name,
                event_id=event.event_id,
                error=str(e),
            )

    async def start(self) -> None:
        """Start delivery workers."""
        if self._worker_tasks:
            return
        self._worker_tasks = [
            asyncio.create_task(self._worker_loop(worker_id=i))
            for i in range(self._settings.workers)
        ]
        logger.info(
            "event_queue_started",
            workers=self._settings.workers,
            sinks=[s.name for s in self._sinks],
        )

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait until every queued event has been handled.

        Returns:
            False if the timeout expired first.
        """
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except TimeoutError:
            logger.warning("event_queue_drain_timeout", remaining=self._queue.qsize())
            return False
        return True

    async def stop(self, timeout: float = 10.0) -> None:
        """Drain the queue (with timeout), then stop workers."""
        if self._worker_tasks:
            await self.drain(timeout=timeout)
            for task in self._worker_tasks:
                task.cancel()
            await asyncio.gather(*self._worker_tasks, return_exceptions=True)
            self._worker_tasks = []

        if self._overflow_tasks:
            await asyncio.gather(*self._overflow_tasks, return_exceptions=True)

        logger.info(
            "event_queue_stopped",
            delivered=self._delivered,
            dropped=self._dropped,
            remaining=self._queue.qsize(),
        )

    async def redeliver(self, event_name: str, payload: dict[str, Any]) -> None:
        """Replay callback for DLQ entries written by this queue.

        Entries without a sink (queue overflow) go to every configured sink.

        Raises:
            KeyError: If the entry names a sink that is not configured.
            Exception: Whatever a sink raises; the DLQ keeps the entry.
        """
        sink_name = payload.get("sink")
        if sink_name is None:
            targets = list(self._sinks)
        else:
            targets = [s for s in self._sinks if s.name == sink_name]
            if not targets:
                raise KeyError(f"Sink not configured: {sink_name}")

        event = Event.from_dict(payload["event"])
        for sink in targets:
            await sink.deliver(event)
            EVENTS_DELIVERED.labels(sink=sink.name, status="replayed").inc()
        logger.info(
            "event_redelivered",
            event_name=event_name,
            event_id=event.event_id,
            sinks=[s.name for s in targets],
        )

    async def _worker_loop(self, worker_id: int) -> None:
        while True:
            try:
                event = await self._queue.get()
            except asyncio.CancelledError:
                break

            try:
                context = extract_trace_context(event.trace_context)
                with tracer.start_as_current_span(
                    "events.deliver",
                    context=context,
                    kind=SpanKind.PRODUCER,
                ) as span:
                    span.set_attribute("messaging.system", "asyncio")
                    span.set_attribute("messaging.destination", event.name)
                    span.set_attribute("messaging.message_id", event.event_id)
                    for sink in self._sinks:
                        await self._deliver(sink, event)
                self._delivered += 1
            except Exception as e:
                logger.exception("event_worker_error", worker_id=worker_id, error=str(e))
            finally:
                self._queue.task_done()
                EVENT_QUEUE_DEPTH.set(self._queue.qsize())

    async def _deliver(self, sink: EventSink, event: Event) -> None:
        try:
            await sink.deliver(event)
        except Exception as e:
            EVENTS_DELIVERED.labels(sink=sink.name, status="failed").inc()
            logger.warning(
                "event_delivery_failed",
                sink=sink.name,
                event_name=event.name,
                event_id=event.event_id,
                error=str(e),
            )
            await self._record_failure(sink.name, event, e)
            return

        EVENTS_DELIVERED.labels(sink=sink.name, status="success").inc()
