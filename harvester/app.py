"""
Application container.

Builds the engine components once, wires them together and owns the shared
process-wide state (database connection, proxy state, browser surface).
"""

from pathlib import Path

from harvester.crawler.human_behavior import HumanBehavior
from harvester.crawler.playwright_surface import PlaywrightPageSurface
from harvester.crawler.surface import PageSurface
from harvester.proxy.policy import ProxyPolicy, ProxyState
from harvester.scheduler.commands import CommandDispatcher
from harvester.scheduler.recovery import CaptchaRecovery
from harvester.scheduler.sessions import SessionManager
from harvester.scheduler.task_queue import ExtractorFactory, TaskQueueScheduler
from harvester.scheduler.timers import DurableTimer
from harvester.search.extractor import Extractor
from harvester.search.parsers import get_extractor
from harvester.storage.database import Database
from harvester.storage.models import EngineConfig
from harvester.utils.activity import ActivityLog
from harvester.utils.config import Settings, get_settings
from harvester.utils.logging import get_logger
from harvester.utils.notification import Notifier

logger = get_logger(__name__)


class HarvesterApp:
    """Wires store, surface, recovery, scheduler and session manager.

    Args:
        settings: Settings to use. Defaults to ``get_settings()``.
        db_path: Database file, overriding ``storage.database_path``.
        surface: Page surface. Defaults to a Playwright surface sharing
            this app's proxy state.
        extractor_for: Extractor factory. Defaults to the engine registry.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        db_path: str | Path | None = None,
        surface: PageSurface | None = None,
        extractor_for: ExtractorFactory | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.db = Database(db_path or self.settings.storage.database_path)
        self.notifier = Notifier()
        self.activity = ActivityLog(self.db, self.notifier)

        self.proxy_state = ProxyState()
        self.surface = surface or PlaywrightPageSurface(self.proxy_state, self.settings.browser)
        self.proxy = ProxyPolicy(
            self.proxy_state,
            self.surface,
            activity=self.activity,
            config=self.settings.proxy,
        )
        self.behavior = HumanBehavior()
        self._extractor_for = extractor_for or self._default_extractor

        self.timer = DurableTimer(self.db)
        self.recovery = CaptchaRecovery(
            self.db,
            self.surface,
            self.proxy,
            self.timer,
            self.activity,
            self.settings.recovery,
        )
        self.scheduler = TaskQueueScheduler(
            self.db,
            self.surface,
            self._extractor_for,
            self.recovery,
            self.activity,
            self.settings.scheduler,
        )
        self.sessions = SessionManager(
            self.db,
            self.scheduler,
            self.recovery,
            self.proxy,
            self.activity,
            self.notifier,
            self.settings.scheduler,
        )
        self.commands = CommandDispatcher(self.sessions)
        self._started = False

    def _default_extractor(self, config: EngineConfig) -> Extractor:
        return get_extractor(config.engine_id, self.surface, self.behavior)

    async def start(self, *, reconcile: bool = False) -> list[str]:
        """Open the store and optionally pick up interrupted sessions.

        Returns:
            Ids of sessions resumed by reconciliation.
        """
        if not self._started:
            await self.db.connect()
            await self.db.initialize_schema()
            self._started = True
            logger.info("Harvester started", database=str(self.db.db_path))

        if not reconcile:
            return []
        return await self.sessions.reconcile(self.timer)

    async def close(self) -> None:
        """Stop runners and timers, then release the browser and the store.

        Persisted timers and session states survive for the next start.
        """
        await self.scheduler.stop()
        await self.timer.close()
        stop = getattr(self.surface, "stop", None)
        if stop is not None:
            await stop()
        await self.db.close()
        self._started = False
        logger.info("Harvester stopped")
