"""Publish/subscribe channel for processor lifecycle events.

Subscribers attach and detach independently of the processor. Publishing
never blocks the caller and never raises: synchronous handlers run inline
with their exceptions logged, coroutine handlers are scheduled as tasks, and
stream consumers receive events through bounded queues that drop the oldest
entry when a slow reader falls behind.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Optional,
    Set,
    Union,
)

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    STARTED = "started"
    STOPPED = "stopped"
    PAUSED = "paused"
    RESUMED = "resumed"
    BUDGET_EXCEEDED = "budget_exceeded"
    ERROR = "error"
    JOB_STARTED = "job_started"
    PROGRESS_UPDATE = "progress_update"
    JOB_RETRY_SCHEDULED = "job_retry_scheduled"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"


@dataclass(frozen=True)
class ProcessorEvent:
    type: EventType
    job_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[ProcessorEvent], Union[None, Awaitable[None]]]


class Subscription:
    """Handle returned by :meth:`EventBus.subscribe`; close it to detach."""

    def __init__(
        self,
        bus: "EventBus",
        handler: EventHandler,
        event_types: Optional[FrozenSet[EventType]],
    ) -> None:
        self._bus = bus
        self.handler = handler
        self.event_types = event_types
        self.closed = False

    def accepts(self, event: ProcessorEvent) -> bool:
        return self.event_types is None or event.type in self.event_types

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._bus._detach(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class EventBus:
    """In-process event fan-out owned by the processor."""

    def __init__(self, *, stream_queue_size: int = 256) -> None:
        self._subscriptions: List[Subscription] = []
        self._stream_queue_size = stream_queue_size
        self._pending: Set[asyncio.Task] = set()
        self._dropped = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    @property
    def dropped_events(self) -> int:
        return self._dropped

    def subscribe(
        self,
        handler: EventHandler,
        event_types: Optional[Iterable[EventType]] = None,
    ) -> Subscription:
        subscription = Subscription(
            self,
            handler,
            frozenset(event_types) if event_types is not None else None,
        )
        self._subscriptions.append(subscription)
        return subscription

    def publish(self, event: ProcessorEvent) -> None:
        for subscription in list(self._subscriptions):
            if subscription.closed or not subscription.accepts(event):
                continue
            try:
                outcome = subscription.handler(event)
                if inspect.isawaitable(outcome):
                    self._schedule(outcome, event)
            except Exception:  # noqa: BLE001 - subscribers never break publishers
                logger.exception(
                    "Event subscriber failed",
                    extra={"event_type": event.type.value, "generation_job_id": event.job_id},
                )

    def emit(self, event_type: EventType, job_id: Optional[str] = None, **payload: Any) -> None:
        self.publish(ProcessorEvent(type=event_type, job_id=job_id, payload=payload))

    async def stream(
        self, event_types: Optional[Iterable[EventType]] = None
    ) -> AsyncIterator[ProcessorEvent]:
        """Yield events as they are published until the consumer stops."""
        queue: asyncio.Queue[ProcessorEvent] = asyncio.Queue(maxsize=self._stream_queue_size)

        def _enqueue(event: ProcessorEvent) -> None:
            if queue.full():
                queue.get_nowait()
                self._dropped += 1
                logger.warning(
                    "Event stream consumer lagging, dropped oldest event",
                    extra={"event_type": event.type.value},
                )
            queue.put_nowait(event)

        with self.subscribe(_enqueue, event_types):
            while True:
                yield await queue.get()

    def _schedule(self, awaitable: Awaitable[None], event: ProcessorEvent) -> None:
        async def _run() -> None:
            try:
                await awaitable
            except Exception:  # noqa: BLE001
                logger.exception(
                    "Async event subscriber failed",
                    extra={"event_type": event.type.value, "generation_job_id": event.job_id},
                )

        task = asyncio.get_running_loop().create_task(_run())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _detach(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass


__all__ = ["EventBus", "EventType", "ProcessorEvent", "Subscription", "EventHandler"]
