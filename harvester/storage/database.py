"""
Database management for SERP Harvester.
Handles SQLite connection, schema, and the session/artifact/log store.

Session records are stored whole (last-write-wins). Writers that change a
session go through ``update_session`` or ``record_page`` which re-read the
freshest record inside a transaction, so a long-running scraper never writes
back a stale copy over a concurrent UI mutation.
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from harvester.storage.models import (
    LogEntry,
    LogLevel,
    Page,
    PageArtifact,
    RecoveryCounters,
    RecoveryState,
    Session,
    Task,
    TaskStatus,
)
from harvester.utils.config import get_settings
from harvester.utils.errors import StorageError
from harvester.utils.logging import get_logger

logger = get_logger(__name__)


def _now() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class Database:
    """Async SQLite database manager."""

    def __init__(self, db_path: str | Path | None = None):
        """Initialize database manager.

        Args:
            db_path: Path to SQLite database file. If None, uses settings.
        """
        if db_path is None:
            settings = get_settings()
            db_path = settings.storage.database_path

        self.db_path = Path(db_path)
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """Connect to the database."""
        if self._connection is not None:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._connection = await aiosqlite.connect(
                self.db_path,
                isolation_level=None,  # Auto-commit mode, explicit BEGIN for transactions
            )
            await self._connection.execute("PRAGMA journal_mode = WAL")
            await self._connection.execute("PRAGMA synchronous = NORMAL")
        except aiosqlite.Error as e:
            raise StorageError(f"Cannot open database: {e}", details={"path": str(self.db_path)}) from e

        self._connection.row_factory = aiosqlite.Row

        logger.info("Database connected", path=str(self.db_path))

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("Database connection closed")

    async def initialize_schema(self) -> None:
        """Initialize database schema from SQL file."""
        schema_path = Path(__file__).parent / "schema.sql"

        if not schema_path.exists():
            raise FileNotFoundError(f"Schema file not found: {schema_path}")

        schema_sql = schema_path.read_text(encoding="utf-8")

        async with self._lock:
            conn = self._require_connection()
            try:
                await conn.executescript(schema_sql)
            except aiosqlite.Error as e:
                raise StorageError(f"Schema initialization failed: {e}") from e

        logger.info("Database schema initialized")

    def _require_connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise StorageError("Database is not connected", details={"path": str(self.db_path)})
        return self._connection

    async def execute(
        self,
        sql: str,
        parameters: tuple | dict | None = None,
    ) -> aiosqlite.Cursor:
        """Execute a SQL statement.

        Args:
            sql: SQL statement to execute.
            parameters: Optional parameters for the statement.

        Returns:
            Cursor with results.
        """
        async with self._lock:
            conn = self._require_connection()
            try:
                if parameters:
                    return await conn.execute(sql, parameters)
                return await conn.execute(sql)
            except aiosqlite.Error as e:
                raise StorageError(f"Statement failed: {e}", details={"sql": sql[:80]}) from e

    async def fetch_one(
        self,
        sql: str,
        parameters: tuple | dict | None = None,
    ) -> dict[str, Any] | None:
        """Fetch a single row as dict, or None."""
        cursor = await self.execute(sql, parameters)
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def fetch_all(
        self,
        sql: str,
        parameters: tuple | dict | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch all rows as dicts."""
        cursor = await self.execute(sql, parameters)
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run statements atomically.

        Yields the raw connection; statements issued on it commit together
        or not at all. Holds the database lock for the whole block.
        """
        async with self._lock:
            conn = self._require_connection()
            try:
                await conn.execute("BEGIN IMMEDIATE")
            except aiosqlite.Error as e:
                raise StorageError(f"Cannot begin transaction: {e}") from e
            try:
                yield conn
            except BaseException:
                try:
                    await conn.execute("ROLLBACK")
                except aiosqlite.Error as rollback_error:
                    logger.error("Rollback failed", error=str(rollback_error))
                raise
            try:
                await conn.execute("COMMIT")
            except aiosqlite.Error as e:
                raise StorageError(f"Commit failed: {e}") from e

    # ============================================================
    # Sessions
    # ============================================================

    async def get_session(self, session_id: str) -> Session | None:
        row = await self.fetch_one("SELECT data_json FROM sessions WHERE id = ?", (session_id,))
        if row is None:
            return None
        return Session.model_validate_json(row["data_json"])

    async def put_session(self, session: Session) -> None:
        """Insert or replace a whole session record."""
        await self.execute(
            """
            INSERT INTO sessions (id, name, status, data_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                status = excluded.status,
                data_json = excluded.data_json,
                updated_at = excluded.updated_at
            """,
            (
                session.id,
                session.name,
                session.status.value,
                session.model_dump_json(),
                session.created_at,
                _now(),
            ),
        )

    async def list_sessions(self) -> list[Session]:
        rows = await self.fetch_all("SELECT data_json FROM sessions ORDER BY created_at ASC")
        return [Session.model_validate_json(r["data_json"]) for r in rows]

    async def delete_session(self, session_id: str) -> None:
        """Delete a session with its artifacts, logs and recovery counters."""
        try:
            async with self.transaction() as conn:
                await conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
                await conn.execute("DELETE FROM page_artifacts WHERE session_id = ?", (session_id,))
                await conn.execute("DELETE FROM session_logs WHERE session_id = ?", (session_id,))
                await conn.execute(
                    "DELETE FROM recovery_counters WHERE session_id = ?", (session_id,)
                )
        except aiosqlite.Error as e:
            raise StorageError(f"Delete failed: {e}", details={"session_id": session_id}) from e
        logger.info("Session deleted", session_id=session_id)

    async def update_session(
        self,
        session_id: str,
        mutate: Callable[[Session], Any],
    ) -> Session | None:
        """Read-modify-write the freshest copy of a session.

        Args:
            session_id: Session to update.
            mutate: Callable applied to the loaded session in place. Returning
                False skips the write.

        Returns:
            The session as stored after the update, or None if missing.
        """
        try:
            async with self.transaction() as conn:
                session = await self._load_in_tx(conn, session_id)
                if session is None:
                    return None
                if mutate(session) is False:
                    return session
                await self._store_in_tx(conn, session)
                return session
        except aiosqlite.Error as e:
            raise StorageError(f"Session update failed: {e}", details={"session_id": session_id}) from e

    async def record_page(
        self,
        session_id: str,
        task_index: int,
        page: Page,
        artifact: PageArtifact | None = None,
    ) -> Task | None:
        """Append a page to a task and store its artifact in one transaction.

        ``total_organic`` is recomputed from the stored pages, so it always
        equals the organic entries actually recorded.

        Returns:
            The updated task, or None when the session/task is missing or the
            task is already DONE (nothing is written then).
        """
        try:
            async with self.transaction() as conn:
                session = await self._load_in_tx(conn, session_id)
                if session is None or not 0 <= task_index < len(session.tasks):
                    return None
                task = session.tasks[task_index]
                if task.status == TaskStatus.DONE:
                    logger.warning(
                        "Refusing to append page to completed task",
                        session_id=session_id,
                        task_index=task_index,
                        page_number=page.page_number,
                    )
                    return None

                task.pages.append(page)
                task.total_organic = task.organic_count()
                await self._store_in_tx(conn, session)

                if artifact is not None and not artifact.is_empty:
                    await conn.execute(
                        """
                        INSERT OR REPLACE INTO page_artifacts
                        (session_id, task_index, page_number, html, screenshot, created_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            session_id,
                            task_index,
                            page.page_number,
                            artifact.html,
                            artifact.screenshot,
                            _now(),
                        ),
                    )
                return task
        except aiosqlite.Error as e:
            raise StorageError(f"Page record failed: {e}", details={"session_id": session_id}) from e

    async def _load_in_tx(self, conn: aiosqlite.Connection, session_id: str) -> Session | None:
        cursor = await conn.execute("SELECT data_json FROM sessions WHERE id = ?", (session_id,))
        row = await cursor.fetchone()
        if row is None:
            return None
        return Session.model_validate_json(row["data_json"])

    async def _store_in_tx(self, conn: aiosqlite.Connection, session: Session) -> None:
        await conn.execute(
            "UPDATE sessions SET name = ?, status = ?, data_json = ?, updated_at = ? WHERE id = ?",
            (session.name, session.status.value, session.model_dump_json(), _now(), session.id),
        )

    # ============================================================
    # Page artifacts
    # ============================================================

    async def put_page_artifact(
        self,
        session_id: str,
        task_index: int,
        page_number: int,
        artifact: PageArtifact,
    ) -> None:
        await self.execute(
            """
            INSERT OR REPLACE INTO page_artifacts
            (session_id, task_index, page_number, html, screenshot, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (session_id, task_index, page_number, artifact.html, artifact.screenshot, _now()),
        )

    async def get_page_artifact(
        self,
        session_id: str,
        task_index: int,
        page_number: int,
    ) -> PageArtifact | None:
        row = await self.fetch_one(
            """
            SELECT html, screenshot FROM page_artifacts
            WHERE session_id = ? AND task_index = ? AND page_number = ?
            """,
            (session_id, task_index, page_number),
        )
        if row is None:
            return None
        return PageArtifact(html=row["html"], screenshot=row["screenshot"])

    # ============================================================
    # Activity logs
    # ============================================================

    async def append_log(self, entry: LogEntry) -> None:
        await self.execute(
            "INSERT INTO session_logs (session_id, timestamp, level, message) VALUES (?, ?, ?, ?)",
            (entry.session_id, entry.timestamp, entry.level.value, entry.message),
        )

    async def list_logs(self, session_id: str) -> list[LogEntry]:
        rows = await self.fetch_all(
            "SELECT session_id, timestamp, level, message FROM session_logs "
            "WHERE session_id = ? ORDER BY id ASC",
            (session_id,),
        )
        return [
            LogEntry(
                session_id=r["session_id"],
                timestamp=r["timestamp"],
                level=LogLevel(r["level"]),
                message=r["message"],
            )
            for r in rows
        ]

    # ============================================================
    # Recovery counters
    # ============================================================

    async def get_recovery_counters(self, session_id: str) -> RecoveryCounters:
        row = await self.fetch_one(
            "SELECT proxy_attempts, wait_attempts, state FROM recovery_counters WHERE session_id = ?",
            (session_id,),
        )
        if row is None:
            return RecoveryCounters(session_id=session_id)
        return RecoveryCounters(
            session_id=session_id,
            proxy_attempts=row["proxy_attempts"],
            wait_attempts=row["wait_attempts"],
            state=RecoveryState(row["state"]),
        )

    async def put_recovery_counters(self, counters: RecoveryCounters) -> None:
        await self.execute(
            """
            INSERT INTO recovery_counters (session_id, proxy_attempts, wait_attempts, state, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(session_id) DO UPDATE SET
                proxy_attempts = excluded.proxy_attempts,
                wait_attempts = excluded.wait_attempts,
                state = excluded.state,
                updated_at = excluded.updated_at
            """,
            (
                counters.session_id,
                counters.proxy_attempts,
                counters.wait_attempts,
                counters.state.value,
                _now(),
            ),
        )

    # ============================================================
    # Durable timers
    # ============================================================

    async def put_timer(self, key: str, fire_at: float) -> None:
        await self.execute(
            "INSERT OR REPLACE INTO timers (key, fire_at, created_at) VALUES (?, ?, ?)",
            (key, fire_at, _now()),
        )

    async def delete_timer(self, key: str) -> bool:
        cursor = await self.execute("DELETE FROM timers WHERE key = ?", (key,))
        return cursor.rowcount > 0

    async def list_timers(self) -> list[tuple[str, float]]:
        rows = await self.fetch_all("SELECT key, fire_at FROM timers ORDER BY fire_at ASC")
        return [(r["key"], r["fire_at"]) for r in rows]

    async def has_timer(self, key: str) -> bool:
        row = await self.fetch_one("SELECT 1 AS present FROM timers WHERE key = ?", (key,))
        return row is not None


# Global database instance
_db: Database | None = None


async def get_database() -> Database:
    """Get the global database instance."""
    global _db
    if _db is None:
        _db = Database()
        await _db.connect()
        await _db.initialize_schema()
    return _db


async def close_database() -> None:
    """Close the global database instance."""
    global _db
    if _db is not None:
        await _db.close()
        _db = None
