"""
UI command boundary.

Commands arrive as ``{"action": ..., "payload": {...}}`` messages. Each is
validated against its payload model and dispatched to the session manager.
Invalid commands are logged and answered with an error dict; they never
reach the engine.
"""

from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from harvester.scheduler.sessions import SessionManager
from harvester.storage.models import DelayRange, EngineConfig, PauseReason
from harvester.utils.errors import HarvesterError
from harvester.utils.logging import get_logger

logger = get_logger(__name__)


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class SessionRef(_Payload):
    session_id: str = Field(min_length=1)


class CreateSessionPayload(_Payload):
    name: str = ""
    queries: list[str] = Field(min_length=1)
    configs: list[EngineConfig] = Field(min_length=1)
    quota: int | None = Field(default=None, ge=1)
    delay_min_s: float | None = Field(default=None, ge=0)
    delay_max_s: float | None = Field(default=None, ge=0)
    capture_screenshots: bool = False
    capture_html: bool = False
    use_proxies: bool = False
    proxy_text: str | None = None


class PausePayload(SessionRef):
    reason: PauseReason = PauseReason.USER


class AddItemsPayload(SessionRef):
    new_queries: list[str] = Field(default_factory=list)
    new_configs: list[EngineConfig] = Field(default_factory=list)


class RemoveConfigPayload(SessionRef):
    config_index: int = Field(ge=0)


class RemoveTaskPayload(SessionRef):
    task_index: int = Field(ge=0)


class UpdateQuotaPayload(SessionRef):
    quota: int = Field(ge=1)


class UpdateDelayPayload(SessionRef):
    """Delay bounds in seconds."""

    min_s: float = Field(ge=0)
    max_s: float = Field(ge=0)

    @model_validator(mode="after")
    def _order(self) -> "UpdateDelayPayload":
        if self.max_s < self.min_s:
            raise ValueError("max_s must be >= min_s")
        return self


class UpdateProxiesPayload(SessionRef):
    use_proxies: bool
    proxy_text: str | None = None


def _seconds_range(min_s: float, max_s: float) -> DelayRange:
    return DelayRange(min_ms=int(min_s * 1000), max_ms=int(max_s * 1000))


class CommandDispatcher:
    """Validates UI commands and routes them to the session manager."""

    def __init__(self, manager: SessionManager) -> None:
        self._manager = manager
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]] = {
            # Lifecycle
            "CREATE_SESSION": self._create_session,
            "START": self._start,
            "PAUSE": self._pause,
            "DELETE_SESSION": self._delete_session,
            # Task edits
            "ADD_ITEMS": self._add_items,
            "REMOVE_CONFIG": self._remove_config,
            "REMOVE_TASK": self._remove_task,
            # Settings
            "UPDATE_QUOTA": self._update_quota,
            "UPDATE_DELAY": self._update_delay,
            "UPDATE_PROXIES": self._update_proxies,
            # Queries
            "GET_SESSIONS": self._get_sessions,
            "GET_SESSION_STATUS": self._get_session_status,
            "GET_TASKS": self._get_tasks,
        }

    @property
    def actions(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, action: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run one command.

        Returns:
            ``{"ok": True, ...}`` on success, an error dict otherwise.
        """
        handler = self._handlers.get(action)
        if handler is None:
            logger.warning("Unknown command", action=action)
            return {"ok": False, "error_type": "UnknownCommand", "error": f"Unknown command: {action}"}

        logger.info("Command received", action=action)
        try:
            return await handler(payload or {})
        except ValidationError as e:
            logger.warning("Invalid command payload", action=action, errors=e.error_count())
            return {
                "ok": False,
                "error_type": "ValidationError",
                "error": "Invalid payload",
                "details": e.errors(include_url=False, include_context=False),
            }
        except HarvesterError as e:
            logger.warning("Command failed", action=action, error=e.message)
            return e.to_dict()

    async def _create_session(self, raw: dict[str, Any]) -> dict[str, Any]:
        p = CreateSessionPayload.model_validate(raw)
        delay_range = None
        if p.delay_min_s is not None and p.delay_max_s is not None:
            delay_range = _seconds_range(p.delay_min_s, p.delay_max_s)
        session = await self._manager.create(
            p.name,
            p.queries,
            p.configs,
            quota=p.quota,
            delay_range=delay_range,
            capture_screenshots=p.capture_screenshots,
            capture_html=p.capture_html,
            use_proxies=p.use_proxies,
            proxy_text=p.proxy_text,
        )
        return {"ok": True, "session_id": session.id, "tasks": len(session.tasks)}

    async def _start(self, raw: dict[str, Any]) -> dict[str, Any]:
        p = SessionRef.model_validate(raw)
        session = await self._manager.start(p.session_id)
        return {"ok": True, "status": session.status.value}

    async def _pause(self, raw: dict[str, Any]) -> dict[str, Any]:
        p = PausePayload.model_validate(raw)
        session = await self._manager.pause(p.session_id, p.reason)
        return {"ok": True, "status": session.status.value}

    async def _delete_session(self, raw: dict[str, Any]) -> dict[str, Any]:
        p = SessionRef.model_validate(raw)
        await self._manager.delete(p.session_id)
        return {"ok": True}

    async def _add_items(self, raw: dict[str, Any]) -> dict[str, Any]:
        p = AddItemsPayload.model_validate(raw)
        session = await self._manager.add_items(p.session_id, p.new_queries, p.new_configs)
        return {"ok": True, "tasks": len(session.tasks), "status": session.status.value}

    async def _remove_config(self, raw: dict[str, Any]) -> dict[str, Any]:
        p = RemoveConfigPayload.model_validate(raw)
        cancelled = await self._manager.remove_config(p.session_id, p.config_index)
        return {"ok": True, "cancelled": cancelled}

    async def _remove_task(self, raw: dict[str, Any]) -> dict[str, Any]:
        p = RemoveTaskPayload.model_validate(raw)
        removed = await self._manager.remove_task(p.session_id, p.task_index)
        return {"ok": removed}

    async def _update_quota(self, raw: dict[str, Any]) -> dict[str, Any]:
        p = UpdateQuotaPayload.model_validate(raw)
        session = await self._manager.update_quota(p.session_id, p.quota)
        return {"ok": True, "quota": session.quota}

    async def _update_delay(self, raw: dict[str, Any]) -> dict[str, Any]:
        p = UpdateDelayPayload.model_validate(raw)
        session = await self._manager.update_delay_range(p.session_id, _seconds_range(p.min_s, p.max_s))
        return {"ok": True, "delay_range": session.delay_range.model_dump()}

    async def _update_proxies(self, raw: dict[str, Any]) -> dict[str, Any]:
        p = UpdateProxiesPayload.model_validate(raw)
        session = await self._manager.update_proxy_settings(p.session_id, p.use_proxies, p.proxy_text)
        return {"ok": True, "proxies": len(session.settings.proxy_list)}

    async def _get_sessions(self, raw: dict[str, Any]) -> dict[str, Any]:
        await self._manager.broadcast_list()
        sessions = await self._manager.list_sessions()
        return {"ok": True, "sessions": [s.list_row() for s in sessions]}

    async def _get_session_status(self, raw: dict[str, Any]) -> dict[str, Any]:
        p = SessionRef.model_validate(raw)
        session = await self._manager.get_status(p.session_id)
        await self._manager.broadcast_status(p.session_id)
        return {
            "ok": True,
            **session.list_row(),
            "current_query": session.current_query(),
            "quota": session.quota,
        }

    async def _get_tasks(self, raw: dict[str, Any]) -> dict[str, Any]:
        p = SessionRef.model_validate(raw)
        tasks = await self._manager.list_tasks(p.session_id)
        await self._manager.broadcast_tasks(p.session_id)
        return {"ok": True, "tasks": tasks}
