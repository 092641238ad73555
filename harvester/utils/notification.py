"""
Status broadcast for SERP Harvester.

Observers (dashboards, CLIs, tests) subscribe to a Notifier and receive
session status, task list, log and lifecycle events. Publishing is
fire-and-forget: a failing or slow subscriber never affects the engine.
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from harvester.utils.logging import get_logger

logger = get_logger(__name__)


class EventType(str, Enum):
    """Kinds of events delivered to observers."""

    SESSION_CREATED = "SESSION_CREATED"
    SESSION_LIST = "SESSION_LIST"
    SESSION_STATUS = "SESSION_STATUS"
    TASK_LIST_UPDATE = "TASK_LIST_UPDATE"
    LOG_ENTRY = "LOG_ENTRY"


class Event(BaseModel):
    """A single broadcast event."""

    model_config = ConfigDict(frozen=True)

    type: EventType
    payload: dict[str, Any] = Field(default_factory=dict)
    published_at: str = Field(
        default_factory=lambda: datetime.now(UTC).isoformat().replace("+00:00", "Z")
    )


Subscriber = Callable[[Event], Awaitable[None] | None]


class Notifier:
    """Best-effort event fan-out.

    Subscribers may be plain callables, coroutine functions, or
    asyncio.Queue instances obtained via ``queue()``.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._queues: list[asyncio.Queue[Event]] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a subscriber.

        Returns:
            Callable that removes the subscriber.
        """
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def queue(self, maxsize: int = 1000) -> asyncio.Queue[Event]:
        """Create a queue that receives every subsequent event."""
        q: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
        self._queues.append(q)
        return q

    async def publish(self, event: Event) -> None:
        """Deliver an event to all subscribers. Never raises."""
        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.debug(
                    "Subscriber failed (ignored)",
                    event_type=event.type.value,
                    error=str(e),
                )

        for q in list(self._queues):
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug("Observer queue full, event dropped", event_type=event.type.value)

    async def emit(self, event_type: EventType, **payload: Any) -> None:
        """Shorthand for publish(Event(type=..., payload=...))."""
        await self.publish(Event(type=event_type, payload=payload))
