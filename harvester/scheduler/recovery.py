"""
CAPTCHA recovery.

When a result page turns out to be a CAPTCHA wall the session is paused
(PAUSED_CAPTCHA) and recovered in escalating steps:

1. Proxy retry: with proxies enabled, up to ``max_proxy_attempts`` random
   proxies are tried, each resuming the session immediately.
2. Direct fallback: once the proxy attempts are used up, the connection is
   reset to direct and the held tab is reloaded. The held tab keeps the
   browser context it was opened in, so this reload still goes through the
   last proxy; only the next surface opened on resume is direct. The reload
   is best effort and the timed wait below is always armed afterwards.
3. Timed wait: a durable timer fires after a tiered delay (5, 15, 30, 60
   minutes, the last tier repeating) while a navigation observer watches the
   held tab for a manual solve.

The timer and the observer publish into a one-shot ``ResolutionSignal``;
only the first publisher resumes the session, the other becomes a no-op.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from harvester.crawler.challenge_detector import looks_resolved
from harvester.crawler.surface import PageSurface, SurfaceHandle
from harvester.proxy.policy import ProxyPolicy
from harvester.scheduler.timers import DurableTimer
from harvester.search.extractor import Extractor
from harvester.storage.database import Database
from harvester.storage.models import RecoveryCounters, RecoveryState, SessionStatus
from harvester.utils.activity import ActivityLog
from harvester.utils.backoff import TieredBackoff
from harvester.utils.config import RecoveryConfig, get_settings
from harvester.utils.errors import ExtractorDetachedError, SurfaceError
from harvester.utils.logging import LogContext, get_logger

logger = get_logger(__name__)

TIMER_PREFIX = "retry_session_"

SessionCallback = Callable[[str], Awaitable[None]]


def timer_key(session_id: str) -> str:
    return f"{TIMER_PREFIX}{session_id}"


def session_id_from_key(key: str) -> str | None:
    if not key.startswith(TIMER_PREFIX):
        return None
    return key[len(TIMER_PREFIX):] or None


class ResolutionSource(str, Enum):
    OBSERVER = "observer"
    TIMER = "timer"


class ResolutionSignal:
    """One-shot signal: the first ``publish`` wins, later ones return False."""

    def __init__(self) -> None:
        self._future: asyncio.Future[ResolutionSource] = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._future.done()

    def publish(self, source: ResolutionSource) -> bool:
        if self._future.done():
            return False
        self._future.set_result(source)
        return True

    def cancel(self) -> bool:
        return self._future.cancel()


@dataclass
class _PendingWait:
    session_id: str
    handle: SurfaceHandle
    extractor: Extractor
    engine_host: str | None
    signal: ResolutionSignal
    unsubscribe: Callable[[], None] | None = None
    checking: bool = False


class CaptchaRecovery:
    """Recovers sessions blocked by a CAPTCHA wall."""

    def __init__(
        self,
        db: Database,
        surface: PageSurface,
        proxy: ProxyPolicy,
        timer: DurableTimer,
        activity: ActivityLog,
        config: RecoveryConfig | None = None,
    ) -> None:
        self._db = db
        self._surface = surface
        self._proxy = proxy
        self._timer = timer
        self._activity = activity
        self._config = config or get_settings().recovery
        self._backoff = TieredBackoff.from_minutes(self._config.retry_delays_minutes)
        self._waits: dict[str, _PendingWait] = {}
        self._resume: SessionCallback | None = None
        self._broadcast: SessionCallback | None = None
        timer.set_handler(self.on_timer)

    def bind(self, resume: SessionCallback, broadcast: SessionCallback) -> None:
        """Connect the session-level resume and status broadcast actions."""
        self._resume = resume
        self._broadcast = broadcast

    def is_waiting(self, session_id: str) -> bool:
        wait = self._waits.get(session_id)
        return wait is not None and not wait.signal.done

    async def _resume_session(self, session_id: str) -> None:
        if self._resume is None:
            raise RuntimeError("CaptchaRecovery is not bound to a session manager")
        await self._resume(session_id)

    async def _notify(self, session_id: str) -> None:
        if self._broadcast is not None:
            await self._broadcast(session_id)

    # ============================================================
    # Detection
    # ============================================================

    async def on_captcha(
        self,
        session_id: str,
        handle: SurfaceHandle,
        extractor: Extractor,
        *,
        engine_host: str | None = None,
        stage: str = "",
    ) -> None:
        """Handle a CAPTCHA detected on handle.

        Ignored unless the session is RUNNING.
        """
        def _mark_paused(s):
            if s.status != SessionStatus.RUNNING:
                return False
            s.status = SessionStatus.PAUSED_CAPTCHA

        session = await self._db.update_session(session_id, _mark_paused)
        if session is None or session.status != SessionStatus.PAUSED_CAPTCHA:
            logger.debug("CAPTCHA ignored, session not running", session_id=session_id)
            return

        with LogContext(session_id=session_id):
            await self._notify(session_id)
            counters = await self._db.get_recovery_counters(session_id)
            settings = session.settings
            max_attempts = self._config.max_proxy_attempts

            if settings.use_proxies and settings.proxy_list and counters.proxy_attempts < max_attempts:
                await self._rotate_proxy(session_id, handle, counters, settings.proxy_list)
                return

            if counters.proxy_attempts >= max_attempts:
                await self._direct_fallback(session_id, handle, counters)

            await self._start_wait(session_id, handle, extractor, counters, engine_host, stage)

    async def _rotate_proxy(
        self,
        session_id: str,
        handle: SurfaceHandle,
        counters: RecoveryCounters,
        proxy_list: list[str],
    ) -> None:
        attempt = counters.proxy_attempts + 1
        await self._activity.warn(
            session_id,
            f"CAPTCHA detected. Attempt proxy change ({attempt}/{self._config.max_proxy_attempts})...",
        )
        await self.cleanup(session_id)
        await self._proxy.activate(proxy_list, session_id)
        await self._surface.close(handle)
        await self._db.put_recovery_counters(
            counters.model_copy(
                update={"proxy_attempts": attempt, "state": RecoveryState.CAPTCHA_PROXY_RETRY}
            )
        )
        await self._activity.info(session_id, "Task restart with new IP...")
        await self._resume_session(session_id)

    async def _direct_fallback(
        self,
        session_id: str,
        handle: SurfaceHandle,
        counters: RecoveryCounters,
    ) -> None:
        await self._activity.error(
            session_id,
            f"{counters.proxy_attempts} proxy attempts failed. Disabling proxies, switching to long-term mode.",
        )
        counters.state = RecoveryState.CAPTCHA_DIRECT_FALLBACK
        await self._db.put_recovery_counters(counters)
        await self._proxy.deactivate(session_id)
        # Same context as before; the direct route applies to the next open
        try:
            await self._surface.reload(handle)
        except SurfaceError as e:
            logger.info("Reload after direct fallback failed", error=e.message)
        counters.proxy_attempts = 0

    async def _start_wait(
        self,
        session_id: str,
        handle: SurfaceHandle,
        extractor: Extractor,
        counters: RecoveryCounters,
        engine_host: str | None,
        stage: str,
    ) -> None:
        await self.cleanup(session_id)
        minutes = await self._arm_timer(session_id, counters)

        wait = _PendingWait(
            session_id=session_id,
            handle=handle,
            extractor=extractor,
            engine_host=engine_host,
            signal=ResolutionSignal(),
        )
        self._waits[session_id] = wait

        async def _observe(url: str) -> None:
            await self._on_navigation(wait, url)

        wait.unsubscribe = self._surface.watch_navigation(handle, _observe)

        await self._activity.warn(session_id, f"Automation paused ({stage or 'page'}).")
        await self._activity.info(session_id, "A: Manual solve (monitoring tab...).")
        await self._activity.info(session_id, f"B: Auto-retry in {minutes:g} minutes.")

    async def _arm_timer(self, session_id: str, counters: RecoveryCounters) -> float:
        minutes = self._backoff.delay_minutes(counters.wait_attempts)
        counters.state = RecoveryState.CAPTCHA_WAIT
        await self._db.put_recovery_counters(counters)
        await self._timer.schedule_once(timer_key(session_id), minutes * 60)
        return minutes

    async def arm_wait(self, session_id: str) -> None:
        """Arm the timed wait for a session parked as PAUSED_CAPTCHA without a held tab.

        Used when the pause comes from a command rather than a detection.
        A wait already in progress is kept.
        """
        if self.is_waiting(session_id):
            return
        counters = await self._db.get_recovery_counters(session_id)
        minutes = await self._arm_timer(session_id, counters)
        await self._activity.info(session_id, f"Auto-retry in {minutes:g} minutes.")

    # ============================================================
    # Producers
    # ============================================================

    async def _on_navigation(self, wait: _PendingWait, url: str) -> None:
        if wait.signal.done or wait.checking:
            return
        if not looks_resolved(url, wait.engine_host):
            return

        wait.checking = True
        try:
            await asyncio.sleep(self._config.observer_settle_ms / 1000)
            if wait.signal.done or not await self._page_is_clean(wait):
                return
        finally:
            wait.checking = False

        if not wait.signal.publish(ResolutionSource.OBSERVER):
            return
        self._release(wait)
        await self._timer.cancel(timer_key(wait.session_id))
        await self._activity.success(wait.session_id, "URL clean & CAPTCHA gone! Continue...")
        await self.reset_counters(wait.session_id)
        await self._surface.close(wait.handle)
        await self._resume_session(wait.session_id)

    async def _page_is_clean(self, wait: _PendingWait) -> bool:
        try:
            return not await wait.extractor.check_captcha(wait.handle)
        except ExtractorDetachedError:
            pass

        try:
            await wait.extractor.attach(wait.handle)
            await asyncio.sleep(self._config.reattach_settle_ms / 1000)
            return not await wait.extractor.check_captcha(wait.handle)
        except (ExtractorDetachedError, SurfaceError) as e:
            logger.debug("CAPTCHA re-check failed", session_id=wait.session_id, error=str(e))
            return False

    async def on_timer(self, key: str) -> None:
        """Durable timer handler: retry the session after the wait."""
        session_id = session_id_from_key(key)
        if session_id is None:
            logger.warning("Unknown timer key", key=key)
            return

        wait = self._waits.get(session_id)
        if wait is not None:
            if not wait.signal.publish(ResolutionSource.TIMER):
                return
            self._release(wait)
            await self._surface.close(wait.handle)

        session = await self._db.get_session(session_id)
        if session is None or session.status != SessionStatus.PAUSED_CAPTCHA:
            logger.info("Timer fired for session no longer waiting", session_id=session_id)
            return

        counters = await self._db.get_recovery_counters(session_id)
        counters.wait_attempts += 1
        await self._db.put_recovery_counters(counters)
        await self._activity.info(session_id, "Time's up. Restarting...")
        await self._resume_session(session_id)

    # ============================================================
    # Cleanup
    # ============================================================

    def _release(self, wait: _PendingWait) -> None:
        if wait.unsubscribe is not None:
            wait.unsubscribe()
            wait.unsubscribe = None
        if self._waits.get(wait.session_id) is wait:
            del self._waits[wait.session_id]

    async def cleanup(self, session_id: str, *, close_surface: bool = False) -> None:
        """Cancel the timer and observer of session_id.

        Args:
            close_surface: Also release the tab held for manual solving.
        """
        wait = self._waits.get(session_id)
        if wait is not None:
            wait.signal.cancel()
            self._release(wait)
            if close_surface:
                await self._surface.close(wait.handle)
        await self._timer.cancel(timer_key(session_id))

    async def reset_counters(self, session_id: str) -> None:
        counters = await self._db.get_recovery_counters(session_id)
        await self._db.put_recovery_counters(counters.reset())
