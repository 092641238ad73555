"""
Session lifecycle manager.

Owns every user-facing mutation of a session (create, start, pause, resume,
delete, task and setting edits) and broadcasts the resulting state. Each
mutation is a read-modify-write on the freshest stored record, followed by
a status broadcast.
"""

import uuid
from collections.abc import Callable
from typing import Any

from harvester.proxy.policy import ProxyPolicy, parse_proxy_list
from harvester.scheduler.recovery import CaptchaRecovery, timer_key
from harvester.scheduler.task_queue import TaskQueueScheduler
from harvester.scheduler.timers import DurableTimer
from harvester.storage.database import Database
from harvester.storage.models import (
    DelayRange,
    EngineConfig,
    PauseReason,
    Session,
    SessionSettings,
    SessionStatus,
    TaskStatus,
    build_tasks,
)
from harvester.utils.activity import ActivityLog
from harvester.utils.config import SchedulerConfig, get_settings
from harvester.utils.errors import SessionNotFoundError
from harvester.utils.logging import get_logger
from harvester.utils.notification import EventType, Notifier

logger = get_logger(__name__)


def _clean_queries(queries: list[str]) -> list[str]:
    """Trim queries, drop blanks and repeats, keep order."""
    seen: set[str] = set()
    cleaned = []
    for query in queries:
        q = query.strip()
        if q and q not in seen:
            seen.add(q)
            cleaned.append(q)
    return cleaned


class SessionManager:
    """Session lifecycle operations."""

    def __init__(
        self,
        db: Database,
        scheduler: TaskQueueScheduler,
        recovery: CaptchaRecovery,
        proxy: ProxyPolicy,
        activity: ActivityLog,
        notifier: Notifier,
        config: SchedulerConfig | None = None,
    ) -> None:
        self._db = db
        self._scheduler = scheduler
        self._recovery = recovery
        self._proxy = proxy
        self._activity = activity
        self._notifier = notifier
        self._config = config or get_settings().scheduler
        recovery.bind(self.resume, self.broadcast_status)
        scheduler.bind(self.broadcast_status)

    async def _require(self, session_id: str) -> Session:
        session = await self._db.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def _mutate(self, session_id: str, mutate: Callable[[Session], Any]) -> Session:
        session = await self._db.update_session(session_id, mutate)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    # ============================================================
    # Broadcasts
    # ============================================================

    async def broadcast_status(self, session_id: str) -> None:
        """Publish status, progress, settings and log history of a session."""
        session = await self._db.get_session(session_id)
        if session is None:
            return
        logs = await self._activity.history(session_id)
        await self._notifier.emit(
            EventType.SESSION_STATUS,
            session_id=session.id,
            name=session.name,
            status=session.status.value,
            progress=session.progress(),
            current_query=session.current_query(),
            logs=[entry.model_dump(mode="json") for entry in logs],
            delay_range=session.delay_range.model_dump(),
            original_configs=[c.model_dump() for c in session.original_configs],
            original_queries=list(session.original_queries),
            settings=session.settings.model_dump(),
            quota=session.quota,
        )

    async def broadcast_tasks(self, session_id: str) -> None:
        session = await self._db.get_session(session_id)
        if session is None:
            return
        await self._notifier.emit(
            EventType.TASK_LIST_UPDATE,
            session_id=session_id,
            tasks=[task.summary(i) for i, task in enumerate(session.tasks)],
        )

    async def broadcast_list(self) -> None:
        sessions = await self._db.list_sessions()
        await self._notifier.emit(
            EventType.SESSION_LIST,
            sessions=[s.list_row() for s in sessions],
        )

    # ============================================================
    # Queries
    # ============================================================

    async def list_sessions(self) -> list[Session]:
        return await self._db.list_sessions()

    async def get_status(self, session_id: str) -> Session:
        return await self._require(session_id)

    async def list_tasks(self, session_id: str) -> list[dict[str, Any]]:
        session = await self._require(session_id)
        return [task.summary(i) for i, task in enumerate(session.tasks)]

    # ============================================================
    # Lifecycle
    # ============================================================

    async def create(
        self,
        name: str,
        queries: list[str],
        configs: list[EngineConfig],
        *,
        quota: int | None = None,
        delay_range: DelayRange | None = None,
        capture_screenshots: bool = False,
        capture_html: bool = False,
        use_proxies: bool = False,
        proxy_text: str | None = None,
    ) -> Session:
        """Create an OPEN session holding queries x configs tasks."""
        queries = _clean_queries(queries)
        proxy_list = parse_proxy_list(proxy_text) if use_proxies else []
        session = Session(
            id=f"sess_{uuid.uuid4().hex[:12]}",
            name=name,
            tasks=build_tasks(queries, configs),
            quota=quota or self._config.default_quota,
            delay_range=delay_range
            or DelayRange(
                min_ms=self._config.default_delay_min_ms,
                max_ms=self._config.default_delay_max_ms,
            ),
            settings=SessionSettings(
                capture_screenshots=capture_screenshots,
                capture_html=capture_html,
                use_proxies=use_proxies,
                proxy_list=proxy_list,
            ),
            original_queries=queries,
            original_configs=list(configs),
        )
        await self._db.put_session(session)
        await self._activity.info(
            session.id,
            f"Session created: {len(queries)} queries x {len(configs)} engines = {len(session.tasks)} tasks",
        )
        logger.info("Session created", session_id=session.id, tasks=len(session.tasks))
        await self._notifier.emit(EventType.SESSION_CREATED, session_id=session.id)
        await self.broadcast_list()
        return session

    async def start(self, session_id: str) -> Session:
        """Reset CAPTCHA counters and run the session."""
        await self._require(session_id)
        await self._recovery.cleanup(session_id, close_surface=True)
        await self._recovery.reset_counters(session_id)

        def _run(s: Session) -> None:
            s.status = SessionStatus.RUNNING

        session = await self._mutate(session_id, _run)
        await self._activity.info(session_id, "START: Session running.")
        await self.broadcast_status(session_id)
        self._scheduler.kick(session_id)
        return session

    async def resume(self, session_id: str) -> None:
        """Set the session RUNNING again and hand it to the scheduler."""
        def _run(s: Session) -> None:
            s.status = SessionStatus.RUNNING

        session = await self._db.update_session(session_id, _run)
        if session is None:
            return
        await self.broadcast_status(session_id)
        self._scheduler.kick(session_id)

    async def pause(self, session_id: str, reason: PauseReason = PauseReason.USER) -> Session:
        """Pause a session.

        A user pause always takes effect and cancels pending CAPTCHA handling.
        A CAPTCHA pause arms the timed wait so the session always has an exit.
        """
        if reason == PauseReason.USER:
            await self._recovery.cleanup(session_id, close_surface=True)

        status = SessionStatus.PAUSED_CAPTCHA if reason == PauseReason.CAPTCHA else SessionStatus.PAUSED

        def _pause(s: Session) -> None:
            s.status = status

        session = await self._mutate(session_id, _pause)
        if reason == PauseReason.CAPTCHA:
            await self._activity.warn(session_id, "PAUSE: CAPTCHA detected.")
            await self._recovery.arm_wait(session_id)
        else:
            await self._activity.info(session_id, "PAUSE: Scraper received interrupt signal.")
        await self.broadcast_status(session_id)
        return session

    async def delete(self, session_id: str) -> None:
        """Delete a session with its pages, artifacts and logs."""
        await self._recovery.cleanup(session_id, close_surface=True)
        await self._db.delete_session(session_id)
        await self.broadcast_list()

    # ============================================================
    # Task edits
    # ============================================================

    async def add_items(
        self,
        session_id: str,
        new_queries: list[str] | None = None,
        new_configs: list[EngineConfig] | None = None,
    ) -> Session:
        """Add queries (against existing configs) and/or configs (against all queries).

        Only cross-product pairs not already present are added. A DONE
        session becomes PAUSED; a RUNNING one picks the new tasks up.
        """
        messages: list[str] = []
        added = 0

        def _add(s: Session) -> bool | None:
            nonlocal added
            messages.clear()
            added = 0
            existing = {(t.term, t.config.engine_id, t.config.country_code, t.config.lang_code, t.config.domain)
                        for t in s.tasks}

            def _append(term: str, config: EngineConfig) -> None:
                nonlocal added
                key = (term, config.engine_id, config.country_code, config.lang_code, config.domain)
                if key in existing:
                    return
                existing.add(key)
                s.tasks.extend(build_tasks([term], [config]))
                added += 1

            queries = [q for q in _clean_queries(new_queries or []) if q not in s.original_queries]
            if queries:
                for term in queries:
                    for config in s.original_configs:
                        _append(term, config)
                s.original_queries.extend(queries)
                messages.append(f"Added {len(queries)} new queries.")

            configs = [c for c in new_configs or [] if not any(c.matches(o) for o in s.original_configs)]
            if configs:
                for term in s.original_queries:
                    for config in configs:
                        _append(term, config)
                s.original_configs.extend(configs)
                messages.append(f"Added {len(configs)} new search engines.")

            if not added and not messages:
                return False
            if added and s.status == SessionStatus.DONE:
                s.status = SessionStatus.PAUSED
                messages.append("New tasks added. Press START to resume.")
            return None

        session = await self._mutate(session_id, _add)
        for message in messages:
            await self._activity.info(session_id, message)
        await self.broadcast_status(session_id)
        await self.broadcast_tasks(session_id)
        if added and session.status == SessionStatus.RUNNING:
            self._scheduler.kick(session_id)
        return session

    async def remove_config(self, session_id: str, config_index: int) -> int:
        """Drop a config and cancel its OPEN/FAILED tasks.

        Returns:
            Number of tasks cancelled. DONE tasks and their pages are kept.
        """
        removed: EngineConfig | None = None
        cancelled = 0

        def _remove(s: Session) -> bool | None:
            nonlocal removed, cancelled
            if not 0 <= config_index < len(s.original_configs):
                return False
            removed = s.original_configs.pop(config_index)
            cancelled = 0
            for task in s.tasks:
                if task.config.matches(removed) and task.status in (TaskStatus.OPEN, TaskStatus.FAILED):
                    task.status = TaskStatus.CANCELLED
                    cancelled += 1
            return None

        await self._mutate(session_id, _remove)
        if removed is None:
            await self._activity.warn(session_id, f"No engine at position {config_index}.")
            return 0
        await self._activity.info(
            session_id,
            f"Removed engine: {removed.label}. Cancelled {cancelled} pending tasks.",
        )
        await self.broadcast_status(session_id)
        await self.broadcast_tasks(session_id)
        return cancelled

    async def remove_task(self, session_id: str, task_index: int) -> bool:
        """Cancel one task. Completed tasks are refused."""
        outcome = "missing"

        def _cancel(s: Session) -> bool | None:
            nonlocal outcome
            if not 0 <= task_index < len(s.tasks):
                outcome = "missing"
                return False
            task = s.tasks[task_index]
            if task.status == TaskStatus.DONE:
                outcome = "done"
                return False
            task.status = TaskStatus.CANCELLED
            outcome = "cancelled"
            return None

        await self._mutate(session_id, _cancel)
        if outcome == "done":
            await self._activity.warn(session_id, "Cannot remove completed task.")
            return False
        if outcome == "missing":
            return False
        await self.broadcast_status(session_id)
        await self.broadcast_tasks(session_id)
        return True

    # ============================================================
    # Settings
    # ============================================================

    async def update_quota(self, session_id: str, quota: int) -> Session:
        if quota < 1:
            raise ValueError("quota must be >= 1")

        def _set(s: Session) -> None:
            s.quota = quota

        session = await self._mutate(session_id, _set)
        await self._activity.info(session_id, f"Target results updated to {quota}")
        await self.broadcast_status(session_id)
        return session

    async def update_delay_range(self, session_id: str, delay_range: DelayRange) -> Session:
        def _set(s: Session) -> None:
            s.delay_range = delay_range

        session = await self._mutate(session_id, _set)
        await self._activity.info(
            session_id,
            f"Delay updated to {delay_range.min_ms / 1000:g}-{delay_range.max_ms / 1000:g}s",
        )
        await self.broadcast_status(session_id)
        return session

    async def update_proxy_settings(
        self,
        session_id: str,
        use_proxies: bool,
        proxy_text: str | None = None,
    ) -> Session:
        """Replace the proxy list.

        Enabling proxies resets the proxy attempt counter; disabling them
        reverts to a direct connection.
        """
        proxy_list = parse_proxy_list(proxy_text) if use_proxies else []

        def _set(s: Session) -> None:
            s.settings.use_proxies = use_proxies
            s.settings.proxy_list = proxy_list

        session = await self._mutate(session_id, _set)
        if use_proxies:
            counters = await self._db.get_recovery_counters(session_id)
            await self._db.put_recovery_counters(counters.model_copy(update={"proxy_attempts": 0}))
        else:
            await self._proxy.deactivate(session_id)

        await self._activity.info(
            session_id,
            f"Proxy settings updated. Active: {use_proxies}, Count: {len(proxy_list)}",
        )
        await self.broadcast_status(session_id)
        return session

    # ============================================================
    # Startup
    # ============================================================

    async def reconcile(self, timer: DurableTimer | None = None) -> list[str]:
        """Pick up sessions interrupted by a restart.

        RUNNING sessions are resumed. PAUSED_CAPTCHA sessions wait for their
        durable timer when one is pending, otherwise they are resumed too.

        Returns:
            Ids of sessions handed back to the scheduler.
        """
        if timer is not None:
            await timer.restore()

        resumed = []
        for session in await self._db.list_sessions():
            if session.status == SessionStatus.RUNNING:
                pass
            elif session.status == SessionStatus.PAUSED_CAPTCHA:
                if await self._db.has_timer(timer_key(session.id)):
                    continue
            else:
                continue
            await self._activity.info(session.id, "Resuming after restart.")
            await self.resume(session.id)
            resumed.append(session.id)

        if resumed:
            logger.info("Sessions reconciled", resumed=len(resumed))
        return resumed
