# buildloop/progress/bus.py
"""
In-process progress fan-out.

Delivery is best-effort and ephemeral: events published while nobody listens
are dropped, subscribers never see events from before they subscribed, and a
failing or slow subscriber never affects the publisher.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

logger = logging.getLogger(__name__)

EVENT_PROGRESS = "progress"
EVENT_COMPLETE = "complete"
EVENT_ERROR = "error"

Callback = Callable[["ProgressEvent"], None]


@dataclass
class ProgressEvent:
    """One progress notification for a project."""

    project_id: str
    stage: str
    message: str = ""
    percent: int | None = None
    type: str = EVENT_PROGRESS
    job_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def terminal(self) -> bool:
        return self.type in (EVENT_COMPLETE, EVENT_ERROR)

    def to_dict(self) -> dict:
        """Wire shape sent to viewers (project id is implied by the stream)."""
        return {
            "type": self.type,
            "stage": self.stage,
            "percent": self.percent,
            "message": self.message,
            "jobId": self.job_id,
            "timestamp": self.timestamp.isoformat(),
        }


_CLOSED = object()


class Subscription:
    """
    Buffered, iterable subscription to one project's events.

    Use as an async context manager so the bus releases it no matter how the
    consumer exits. Iteration ends when the subscription is closed.
    """

    def __init__(self, bus: "ProgressBus", project_id: str, maxsize: int) -> None:
        self.project_id = project_id
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, event: ProgressEvent) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                f"Subscriber queue full for project {self.project_id}, dropping {event.stage} event"
            )

    def close(self) -> None:
        """Detach from the bus; safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._bus._detach(self.project_id, self.deliver)
        # Wake a consumer blocked in get(); drop a buffered event if needed
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    async def get(self) -> ProgressEvent | None:
        """Next event, or None once the subscription is closed."""
        item = await self._queue.get()
        if item is _CLOSED:
            return None
        return item

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ProgressEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class ProgressBus:
    """
    Keyed publish/subscribe of ProgressEvents by project id.

    All methods must be called from the event loop thread.
    """

    def __init__(self, subscriber_queue_size: int = 100) -> None:
        self._subscribers: dict[str, list[Callback]] = {}
        self._subscriptions: set[Subscription] = set()
        self._queue_size = subscriber_queue_size

    def subscribe(self, project_id: str, callback: Callback) -> Callable[[], None]:
        """
        Register a callback for one project's events.

        Returns:
            An unsubscribe function; calling it more than once is a no-op
        """
        self._subscribers.setdefault(project_id, []).append(callback)
        logger.debug(f"Subscribed to project {project_id} ({self.subscriber_count(project_id)})")

        def unsubscribe() -> None:
            self._detach(project_id, callback)

        return unsubscribe

    def open(self, project_id: str, maxsize: int | None = None) -> Subscription:
        """Create a buffered Subscription attached to ``project_id``."""
        subscription = Subscription(self, project_id, maxsize or self._queue_size)
        self._subscribers.setdefault(project_id, []).append(subscription.deliver)
        self._subscriptions.add(subscription)
        return subscription

    def publish(self, project_id: str, event: ProgressEvent) -> int:
        """
        Deliver ``event`` to every current subscriber of ``project_id``.

        Returns:
            Number of subscribers the event was handed to (0 if none)
        """
        callbacks = list(self._subscribers.get(project_id, ()))
        delivered = 0
        for callback in callbacks:
            try:
                callback(event)
                delivered += 1
            except Exception as e:
                logger.error(f"Progress subscriber for project {project_id} failed: {e}")
        return delivered

    def subscriber_count(self, project_id: str) -> int:
        return len(self._subscribers.get(project_id, ()))

    def close(self) -> None:
        """End every open Subscription and forget all callbacks (shutdown)."""
        for subscription in list(self._subscriptions):
            subscription.close()
        self._subscribers.clear()

    def _detach(self, project_id: str, callback: Callback) -> None:
        callbacks = self._subscribers.get(project_id)
        if not callbacks:
            return
        try:
            callbacks.remove(callback)
        except ValueError:
            return
        if not callbacks:
            del self._subscribers[project_id]
        self._subscriptions = {
            s for s in self._subscriptions if s.deliver != callback
        }


class JobProgress:
    """
    Progress reporter for one job attempt.

    Percent never decreases; after a terminal event (or silence()) nothing
    more is published.
    """

    def __init__(
        self,
        bus: ProgressBus,
        project_id: str,
        job_id: str | None = None,
    ) -> None:
        self._bus = bus
        self.project_id = project_id
        self.job_id = job_id
        self._percent = 0
        self._sealed = False

    @property
    def percent(self) -> int:
        return self._percent

    @property
    def sealed(self) -> bool:
        return self._sealed

    def report(self, percent: int, stage: str, message: str = "") -> ProgressEvent | None:
        if self._sealed:
            return None
        self._percent = max(self._percent, min(int(percent), 100))
        return self._emit(
            ProgressEvent(
                project_id=self.project_id,
                stage=stage,
                message=message,
                percent=self._percent,
                job_id=self.job_id,
            )
        )

    def complete(self, stage: str, message: str = "") -> ProgressEvent | None:
        if self._sealed:
            return None
        self._percent = 100
        event = self._emit(
            ProgressEvent(
                project_id=self.project_id,
                stage=stage,
                message=message,
                percent=100,
                type=EVENT_COMPLETE,
                job_id=self.job_id,
            )
        )
        self._sealed = True
        return event

    def fail(self, stage: str, message: str) -> ProgressEvent | None:
        if self._sealed:
            return None
        event = self._emit(
            ProgressEvent(
                project_id=self.project_id,
                stage=stage,
                message=message,
                percent=None,
                type=EVENT_ERROR,
                job_id=self.job_id,
            )
        )
        self._sealed = True
        return event

    def silence(self) -> None:
        """Stop publishing without a terminal event (cancelled builds)."""
        self._sealed = True

    def _emit(self, event: ProgressEvent) -> ProgressEvent:
        self._bus.publish(self.project_id, event)
        return event
