"""
In-process event bus.

Analysis jobs publish lifecycle events (``analysis.job.*``) here. Two
kinds of subscribers are supported:

- Handlers: sync or async callables awaited in subscription order, per
  event type or for every event. A failing handler is logged and does
  not stop delivery to the others.
- Queues: bounded ``asyncio.Queue`` subscribers for streaming consumers.
  Delivery never blocks; a queue that stays full for
  ``QUEUE_MAX_CONSECUTIVE_DROPS`` events in a row is unsubscribed.

Middleware wraps delivery: each middleware gets the event and a ``next``
coroutine and may call it, skip it, or act around it.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from neuron.kg.models import _utc_now

logger = logging.getLogger(__name__)

# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# EVENTS
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

JOB_STARTED = "analysis.job.started"
JOB_PROGRESS = "analysis.job.progress"
JOB_COMPLETED = "analysis.job.completed"
JOB_FAILED = "analysis.job.failed"
JOB_CANCELLED = "analysis.job.cancelled"

HISTORY_LIMIT = 200
QUEUE_MAX_SIZE = 100
QUEUE_MAX_CONSECUTIVE_DROPS = 10


class EventSource(str, Enum):
    API = "api"
    UI = "ui"
    ANALYSIS = "analysis"
    SYSTEM = "system"


@dataclass
class Event:
    """A published event."""

    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    source: EventSource = EventSource.SYSTEM
    timestamp: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "payload": self.payload,
            "source": self.source.value,
            "timestamp": self.timestamp.isoformat(),
        }


def create_event(
    event_type: str, payload: dict[str, Any], source: EventSource = EventSource.SYSTEM
) -> Event:
    return Event(type=event_type, payload=payload, source=source)


EventHandler = Callable[[Event], Awaitable[None] | None]
Middleware = Callable[[Event, Callable[[], Awaitable[None]]], Awaitable[None]]


@dataclass
class Subscription:
    """Handle returned by ``subscribe*``; call ``unsubscribe()`` to detach."""

    unsubscribe: Callable[[], None]


@dataclass
class _QueueSubscriber:
    queue: asyncio.Queue[Event]
    types: frozenset[str] | None
    consecutive_drops: int = 0


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# BUS
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class EventBus:
    """Publish/subscribe hub with bounded history."""

    def __init__(self, history_limit: int = HISTORY_LIMIT) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}
        self._global_handlers: list[EventHandler] = []
        self._queues: dict[asyncio.Queue[Event], _QueueSubscriber] = {}
        self._middleware: list[Middleware] = []
        self._history: deque[Event] = deque(maxlen=history_limit)

    # ─── Subscriptions ───

    def subscribe(self, event_type: str, handler: EventHandler) -> Subscription:
        self._handlers.setdefault(event_type, []).append(handler)
        return Subscription(lambda: self.unsubscribe(event_type, handler))

    def subscribe_many(self, event_types: Iterable[str], handler: EventHandler) -> Subscription:
        types = list(event_types)
        for event_type in types:
            self.subscribe(event_type, handler)

        def unsubscribe() -> None:
            for event_type in types:
                self.unsubscribe(event_type, handler)

        return Subscription(unsubscribe)

    def subscribe_all(self, handler: EventHandler) -> Subscription:
        self._global_handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._global_handlers:
                self._global_handlers.remove(handler)

        return Subscription(unsubscribe)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_type)
        if not handlers or handler not in handlers:
            return
        handlers.remove(handler)
        if not handlers:
            del self._handlers[event_type]

    def unsubscribe_all(self) -> None:
        self._handlers.clear()
        self._global_handlers.clear()
        self._queues.clear()

    def subscribe_queue(
        self, event_types: Iterable[str] | None = None, maxsize: int = QUEUE_MAX_SIZE
    ) -> asyncio.Queue[Event]:
        """
        Subscribe a bounded queue to some (or all) event types.

        Returns:
            Queue receiving matching events
        """
        queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
        types = frozenset(event_types) if event_types is not None else None
        self._queues[queue] = _QueueSubscriber(queue=queue, types=types)
        logger.debug(f"Event queue subscribed (total: {len(self._queues)})")
        return queue

    def unsubscribe_queue(self, queue: asyncio.Queue[Event]) -> None:
        self._queues.pop(queue, None)

    def use(self, middleware: Middleware) -> None:
        self._middleware.append(middleware)

    def subscriber_count(self, event_type: str | None = None) -> int:
        """Handlers for ``event_type``, or every handler and queue when omitted."""
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return (
            len(self._global_handlers)
            + sum(len(handlers) for handlers in self._handlers.values())
            + len(self._queues)
        )

    # ─── History ───

    def history(self, limit: int | None = None) -> list[Event]:
        """Recent events, oldest first (the last ``limit`` when given)."""
        events = list(self._history)
        return events[-limit:] if limit else events

    def clear_history(self) -> None:
        self._history.clear()

    # ─── Delivery ───

    async def emit(self, event: Event) -> None:
        """Run the middleware chain, then record and deliver ``event``."""

        async def run(index: int) -> None:
            if index < len(self._middleware):
                await self._middleware[index](event, lambda: run(index + 1))
            else:
                await self._deliver(event)

        await run(0)

    async def _deliver(self, event: Event) -> None:
        self._history.append(event)
        for handler in [*self._handlers.get(event.type, []), *self._global_handlers]:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Event handler failed for {event.type}: {e}")
        self._offer_to_queues(event)

    def _offer_to_queues(self, event: Event) -> None:
        to_remove: list[asyncio.Queue[Event]] = []
        for queue, subscriber in self._queues.items():
            if subscriber.types is not None and event.type not in subscriber.types:
                continue
            try:
                queue.put_nowait(event)
                subscriber.consecutive_drops = 0
            except asyncio.QueueFull:
                subscriber.consecutive_drops += 1
                logger.warning(
                    f"Event queue full, dropped {event.type} "
                    f"(consecutive drops: {subscriber.consecutive_drops})"
                )
                if subscriber.consecutive_drops >= QUEUE_MAX_CONSECUTIVE_DROPS:
                    to_remove.append(queue)

        for queue in to_remove:
            self._queues.pop(queue, None)
            logger.warning("Removed event queue after repeated drops")
