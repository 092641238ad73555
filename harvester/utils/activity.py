"""
Session activity log.

Every user-visible line about a session is appended to the store, broadcast
to observers, and mirrored to the structured log.
"""

from harvester.storage.database import Database
from harvester.storage.models import LogEntry, LogLevel
from harvester.utils.logging import get_logger
from harvester.utils.notification import EventType, Notifier

logger = get_logger(__name__)

_STRUCTLOG_METHOD = {
    LogLevel.INFO: "info",
    LogLevel.SUCCESS: "info",
    LogLevel.WARN: "warning",
    LogLevel.ERROR: "error",
}


class ActivityLog:
    """Append-only per-session activity log."""

    def __init__(self, db: Database, notifier: Notifier) -> None:
        self._db = db
        self._notifier = notifier

    async def log(
        self,
        session_id: str,
        message: str,
        level: LogLevel = LogLevel.INFO,
    ) -> LogEntry:
        entry = LogEntry(session_id=session_id, message=message, level=level)
        getattr(logger, _STRUCTLOG_METHOD[level])(message, session_id=session_id, activity=level.value)
        await self._db.append_log(entry)
        await self._notifier.emit(
            EventType.LOG_ENTRY,
            session_id=session_id,
            entry=entry.model_dump(mode="json"),
        )
        return entry

    async def info(self, session_id: str, message: str) -> LogEntry:
        return await self.log(session_id, message, LogLevel.INFO)

    async def warn(self, session_id: str, message: str) -> LogEntry:
        return await self.log(session_id, message, LogLevel.WARN)

    async def success(self, session_id: str, message: str) -> LogEntry:
        return await self.log(session_id, message, LogLevel.SUCCESS)

    async def error(self, session_id: str, message: str) -> LogEntry:
        return await self.log(session_id, message, LogLevel.ERROR)

    async def history(self, session_id: str) -> list[LogEntry]:
        return await self._db.list_logs(session_id)
