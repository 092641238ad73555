"""
Durable one-shot timers.

DB-backed: each pending timer is a row holding its absolute fire time, so
timers survive process restarts. In-process, each timer is an asyncio task
sleeping until the fire time. On fire the row is deleted first and then the
handler is called with the timer key; a timer cancelled before firing never
reaches the handler.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable

from harvester.storage.database import Database
from harvester.utils.logging import get_logger

logger = get_logger(__name__)

TimerHandler = Callable[[str], Awaitable[None]]


class DurableTimer:
    """One-shot timers keyed by string, persisted in the store."""

    def __init__(self, db: Database, clock: Callable[[], float] = time.time) -> None:
        self._db = db
        self._clock = clock
        self._handler: TimerHandler | None = None
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def set_handler(self, handler: TimerHandler) -> None:
        self._handler = handler

    def pending(self) -> list[str]:
        """Keys of timers armed in this process."""
        return [key for key, task in self._tasks.items() if not task.done()]

    async def schedule_once(self, key: str, delay_seconds: float) -> None:
        """Arm (or re-arm) the timer key to fire after delay_seconds."""
        fire_at = self._clock() + max(0.0, delay_seconds)
        await self._db.put_timer(key, fire_at)
        self._arm(key, fire_at)
        logger.info("Timer scheduled", key=key, delay_seconds=round(delay_seconds, 1))

    async def cancel(self, key: str) -> bool:
        """Disarm key. Returns True if a pending timer was removed."""
        task = self._tasks.pop(key, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        removed = await self._db.delete_timer(key)
        if removed:
            logger.info("Timer cancelled", key=key)
        return removed

    async def restore(self) -> list[str]:
        """Re-arm all persisted timers. Overdue ones fire immediately."""
        restored = []
        for key, fire_at in await self._db.list_timers():
            self._arm(key, fire_at)
            restored.append(key)
        if restored:
            logger.info("Timers restored", count=len(restored))
        return restored

    async def close(self) -> None:
        """Stop in-process timers. Persisted rows stay for the next start."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _arm(self, key: str, fire_at: float) -> None:
        previous = self._tasks.pop(key, None)
        if previous is not None:
            previous.cancel()
        self._tasks[key] = asyncio.create_task(self._run(key, fire_at), name=f"timer:{key}")

    async def _run(self, key: str, fire_at: float) -> None:
        await asyncio.sleep(max(0.0, fire_at - self._clock()))

        # Row deletion decides the race with cancel(): only one side removes it
        if not await self._db.delete_timer(key):
            return
        if self._tasks.get(key) is asyncio.current_task():
            del self._tasks[key]

        if self._handler is None:
            logger.warning("Timer fired without handler", key=key)
            return
        logger.info("Timer fired", key=key)
        try:
            await self._handler(key)
        except Exception as e:
            logger.exception("Timer handler failed", key=key, error=str(e))
