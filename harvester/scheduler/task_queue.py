"""
Task queue scheduler.

Drives one session at a time through its tasks: picks the first OPEN task,
walks its result pages until the quota is met or the engine runs out of
pages, then cools down and moves on.

DB-Driven Architecture:
- The stored session status is the pause flag. It is re-read between every
  blocking step and on every idle sub-interval.
- Every page is persisted (results, artifact, running total) in a single
  store transaction before the next navigation, so at most one page of work
  is ever held only in memory.
- Session records are never written back whole; all writes go through
  ``update_session`` / ``record_page`` on the freshest stored copy.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

from harvester.crawler.surface import PageSurface, SurfaceHandle
from harvester.scheduler.recovery import CaptchaRecovery
from harvester.search.extractor import CaptchaSignal, Extractor, PaginationOutcome
from harvester.search.urls import build_search_url, engine_host
from harvester.storage.database import Database
from harvester.storage.models import (
    EngineConfig,
    Page,
    PageArtifact,
    PageResults,
    SerpEntry,
    Session,
    SessionStatus,
    Task,
    TaskStatus,
)
from harvester.utils.activity import ActivityLog
from harvester.utils.backoff import random_delay_ms
from harvester.utils.config import SchedulerConfig, get_settings
from harvester.utils.errors import ExtractorDetachedError, StorageError, SurfaceError
from harvester.utils.logging import LogContext, get_logger

logger = get_logger(__name__)

ExtractorFactory = Callable[[EngineConfig], Extractor]
SessionCallback = Callable[[str], Awaitable[None]]


class TaskOutcome(str, Enum):
    """How one ``advance`` call ended."""

    COMPLETED = "completed"  # task marked DONE
    SESSION_DONE = "session_done"  # no OPEN task left
    PAUSED = "paused"  # session left RUNNING mid-task
    CAPTCHA = "captcha"  # handed over to CAPTCHA recovery
    CANCELLED = "cancelled"  # task cancelled mid-task
    RETRY = "retry"  # transient error, task stays OPEN
    FAILED = "failed"  # retries exhausted
    MISSING = "missing"  # session not found


@dataclass
class _TaskRun:
    session_id: str
    index: int
    task: Task
    quota: int
    extractor: Extractor
    latest: Session
    handle: SurfaceHandle | None = None
    seen_urls: set[str] = field(default_factory=set)


class TaskQueueScheduler:
    """Pulls OPEN tasks of a session and runs their pagination loop."""

    def __init__(
        self,
        db: Database,
        surface: PageSurface,
        extractor_for: ExtractorFactory,
        recovery: CaptchaRecovery,
        activity: ActivityLog,
        config: SchedulerConfig | None = None,
    ) -> None:
        self._db = db
        self._surface = surface
        self._extractor_for = extractor_for
        self._recovery = recovery
        self._activity = activity
        self._config = config or get_settings().scheduler
        self._broadcast: SessionCallback | None = None
        self._runners: dict[str, asyncio.Task[None]] = {}
        self._kicked: set[str] = set()

    def bind(self, broadcast: SessionCallback) -> None:
        """Connect the session status broadcast."""
        self._broadcast = broadcast

    async def _notify(self, session_id: str) -> None:
        if self._broadcast is not None:
            await self._broadcast(session_id)

    async def _status(self, session_id: str) -> SessionStatus | None:
        session = await self._db.get_session(session_id)
        return session.status if session else None

    async def _sleep_ms(self, ms: int) -> None:
        await asyncio.sleep(ms / 1000)

    # ============================================================
    # Runner
    # ============================================================

    def is_running(self, session_id: str) -> bool:
        runner = self._runners.get(session_id)
        return runner is not None and not runner.done()

    def kick(self, session_id: str) -> asyncio.Task[None]:
        """Make sure a runner is working on session_id.

        A runner already alive is flagged to re-check the session before it
        exits, so a resume issued while it winds down is not lost.
        """
        runner = self._runners.get(session_id)
        if runner is not None and not runner.done():
            self._kicked.add(session_id)
            return runner
        runner = asyncio.create_task(self.run(session_id), name=f"runner:{session_id}")
        self._runners[session_id] = runner
        return runner

    async def wait_runner(self, session_id: str) -> None:
        """Block until the runner of session_id (if any) has exited."""
        runner = self._runners.get(session_id)
        if runner is not None:
            await asyncio.gather(runner, return_exceptions=True)

    async def stop(self) -> None:
        runners = list(self._runners.values())
        for runner in runners:
            runner.cancel()
        await asyncio.gather(*runners, return_exceptions=True)
        self._runners.clear()

    async def run(self, session_id: str) -> None:
        """Advance session_id task by task while it stays RUNNING."""
        current = asyncio.current_task()
        try:
            while True:
                self._kicked.discard(session_id)
                outcome = await self.advance(session_id)
                if outcome in (TaskOutcome.SESSION_DONE, TaskOutcome.MISSING):
                    break

                if await self._status(session_id) != SessionStatus.RUNNING:
                    if session_id in self._kicked:
                        continue
                    break

                cooldown = random_delay_ms(self._config.cooldown_min_ms, self._config.cooldown_max_ms)
                await self._activity.info(
                    session_id,
                    f"COOLDOWN: General break before next task ({round(cooldown / 1000)}s)...",
                )
                await self._idle(session_id, cooldown)
        except StorageError as e:
            logger.error("Runner aborted on storage failure", session_id=session_id, **e.to_dict())
        finally:
            if self._runners.get(session_id) is current:
                del self._runners[session_id]

    # ============================================================
    # Task selection
    # ============================================================

    async def advance(self, session_id: str) -> TaskOutcome:
        """Run the next OPEN task of session_id.

        Raises:
            StorageError: The store failed; the session keeps its last
                durable state.
        """
        session = await self._db.get_session(session_id)
        if session is None:
            return TaskOutcome.MISSING
        if session.status != SessionStatus.RUNNING:
            return TaskOutcome.PAUSED

        index = session.next_open_index()
        if index is None:
            return await self._finish_session(session_id)

        def _select(s: Session) -> bool | None:
            if s.current_index == index:
                return False
            s.current_index = index
            return None

        await self._db.update_session(session_id, _select)

        run = _TaskRun(
            session_id=session_id,
            index=index,
            task=session.tasks[index],
            quota=session.quota,
            extractor=self._extractor_for(session.tasks[index].config),
            latest=session,
        )

        with LogContext(session_id=session_id, task_index=index):
            try:
                outcome = await self._run_task(run)
            except StorageError:
                raise
            except Exception as e:
                logger.warning("Task attempt failed", error=str(e), error_type=type(e).__name__)
                outcome = await self._handle_retry(session_id, index, e)
            finally:
                if run.handle is not None:
                    await self._release_surface(run)
        return outcome

    async def _finish_session(self, session_id: str) -> TaskOutcome:
        def _done(s: Session) -> bool | None:
            if s.status != SessionStatus.RUNNING or s.next_open_index() is not None:
                return False
            s.status = SessionStatus.DONE
            return None

        session = await self._db.update_session(session_id, _done)
        if session is None:
            return TaskOutcome.MISSING
        if session.status != SessionStatus.DONE:
            return TaskOutcome.PAUSED
        await self._activity.success(session_id, "FINISHED: Study completed.")
        await self._notify(session_id)
        return TaskOutcome.SESSION_DONE

    async def _release_surface(self, run: _TaskRun) -> None:
        # A CAPTCHA tab stays open while recovery watches it for a manual solve
        if self._recovery.is_waiting(run.session_id):
            return
        await self._surface.close(run.handle)

    # ============================================================
    # Pagination loop
    # ============================================================

    async def _interrupted(self, run: _TaskRun) -> TaskOutcome | None:
        """PAUSED / CANCELLED if the loop must stop before its next step."""
        session = await self._db.get_session(run.session_id)
        if session is None or session.status != SessionStatus.RUNNING:
            return TaskOutcome.PAUSED
        if session.tasks[run.index].status != TaskStatus.OPEN:
            return TaskOutcome.CANCELLED
        # Quota, delays and capture settings may be edited while the task runs
        run.latest = session
        run.quota = session.quota
        return None

    async def _captcha(self, run: _TaskRun, stage: str) -> TaskOutcome:
        await self._activity.warn(run.session_id, f"CAPTCHA detected during {stage}.")
        await self._recovery.on_captcha(
            run.session_id,
            run.handle,
            run.extractor,
            engine_host=engine_host(run.task.config),
            stage=stage,
        )
        return TaskOutcome.CAPTCHA

    async def _precheck_captcha(self, run: _TaskRun) -> bool:
        try:
            return await run.extractor.check_captcha(run.handle)
        except ExtractorDetachedError:
            await run.extractor.attach(run.handle)
            return await run.extractor.check_captcha(run.handle)

    async def _run_task(self, run: _TaskRun) -> TaskOutcome:
        cfg = self._config
        task = run.task
        collected = task.total_organic
        page_number = task.next_page_number
        organic_rank = task.organic_count()
        ad_rank = task.ad_count()
        run.seen_urls = task.recorded_urls()

        await self._activity.info(
            run.session_id,
            f'TASK START: "{task.term}" {task.config.label} (Current: {collected}/{run.quota})',
        )
        await self._notify(run.session_id)

        url = build_search_url(task.term, task.config, page_number)
        await self._activity.info(run.session_id, f"INITIALIZING: {url}")
        run.handle = await self._surface.open(url)

        while collected < run.quota and page_number <= cfg.max_pages:
            if stop := await self._interrupted(run):
                return stop

            await self._activity.info(run.session_id, f"LOADING: Waiting for page {page_number}...")
            await self._surface.wait_loaded(run.handle)
            if stop := await self._interrupted(run):
                return stop

            await self._sleep_ms(random_delay_ms(cfg.load_settle_min_ms, cfg.load_settle_max_ms))
            if await self._precheck_captcha(run):
                return await self._captcha(run, "load")

            await self._activity.info(run.session_id, f"BEHAVIOR: Human-like scrolling page {page_number}...")
            await run.extractor.humanize(run.handle)
            await self._sleep_ms(random_delay_ms(cfg.humanize_settle_min_ms, cfg.humanize_settle_max_ms))
            if stop := await self._interrupted(run):
                return stop

            screenshot = await self._capture_screenshot(run)
            if stop := await self._interrupted(run):
                return stop

            await self._activity.info(run.session_id, "SCRAPING: Extracting data...")
            extracted = await run.extractor.extract(run.handle, collected)
            if isinstance(extracted, CaptchaSignal):
                return await self._captcha(run, "extraction")

            organic = self._fresh_organic(run, extracted.results.organic, run.quota - collected)
            organic = [e.model_copy(update={"rank": organic_rank + i + 1}) for i, e in enumerate(organic)]
            ads = [
                e.model_copy(update={"rank": ad_rank + i + 1})
                for i, e in enumerate(extracted.results.ads)
            ]
            page = Page(
                page_number=page_number,
                results=PageResults(
                    organic=organic,
                    ads=ads,
                    ai_overview=extracted.results.ai_overview,
                ),
            )
            artifact = PageArtifact(
                html=extracted.html if run.latest.settings.capture_html else None,
                screenshot=screenshot,
            )

            stored = await self._db.record_page(run.session_id, run.index, page, artifact)
            if stored is None:
                return TaskOutcome.CANCELLED
            collected = stored.total_organic
            organic_rank += len(organic)
            ad_rank += len(ads)

            await self._activity.info(
                run.session_id,
                f"P{page_number}: AI: {'YES' if page.results.ai_overview.found else 'NO'} | "
                f"Ads: {len(ads)} | New: {len(organic)}",
            )
            await self._notify(run.session_id)

            if collected >= run.quota:
                await self._activity.success(run.session_id, f"TARGET MET: Collected {collected}.")
                break
            if page_number >= cfg.max_pages:
                await self._activity.info(run.session_id, f"END: Page limit {cfg.max_pages} reached.")
                break
            if stop := await self._interrupted(run):
                return stop

            navigation = await run.extractor.paginate(run.handle)
            if isinstance(navigation, CaptchaSignal):
                return await self._captcha(run, "pagination")
            if navigation == PaginationOutcome.EXHAUSTED:
                await self._activity.info(run.session_id, "END: No more search pages.")
                break

            page_number += 1
            wait_ms = random_delay_ms(run.latest.delay_range.min_ms, run.latest.delay_range.max_ms)
            await self._activity.info(run.session_id, f"IDLE: Random wait {round(wait_ms / 1000)}s...")
            if not await self._idle(run.session_id, wait_ms):
                return TaskOutcome.PAUSED

        return await self._complete_task(run)

    def _fresh_organic(self, run: _TaskRun, entries: list[SerpEntry], remaining: int) -> list[SerpEntry]:
        """Drop URLs already stored for the task, keep at most remaining."""
        fresh: list[SerpEntry] = []
        for entry in entries:
            if len(fresh) >= remaining:
                break
            if entry.url in run.seen_urls:
                continue
            run.seen_urls.add(entry.url)
            fresh.append(entry)
        return fresh

    async def _capture_screenshot(self, run: _TaskRun) -> bytes | None:
        if not run.latest.settings.capture_screenshots:
            return None
        await self._activity.info(run.session_id, "CAPTURING: Full page screenshot...")
        try:
            return await self._surface.screenshot(run.handle)
        except SurfaceError as e:
            await self._activity.warn(run.session_id, f"SCREENSHOT FAILED: {e.message}")
            return None

    async def _complete_task(self, run: _TaskRun) -> TaskOutcome:
        def _done(s: Session) -> bool | None:
            task = s.tasks[run.index]
            if s.status != SessionStatus.RUNNING or task.status != TaskStatus.OPEN:
                return False
            task.status = TaskStatus.DONE
            return None

        session = await self._db.update_session(run.session_id, _done)
        if session is None:
            return TaskOutcome.MISSING
        task = session.tasks[run.index]
        if task.status == TaskStatus.DONE:
            await self._activity.success(run.session_id, f'TASK COMPLETED: "{task.term}"')
            await self._notify(run.session_id)
            return TaskOutcome.COMPLETED
        if task.status == TaskStatus.CANCELLED:
            return TaskOutcome.CANCELLED
        return TaskOutcome.PAUSED

    # ============================================================
    # Waiting and retries
    # ============================================================

    async def _idle(self, session_id: str, total_ms: int) -> bool:
        """Sleep total_ms in poll-sized slices.

        Returns:
            False as soon as the session is no longer RUNNING.
        """
        interval = self._config.pause_poll_interval_ms
        waited = 0
        while waited < total_ms:
            if await self._status(session_id) != SessionStatus.RUNNING:
                logger.debug("pause_poll_interrupted", session_id=session_id, waited_ms=waited)
                return False
            step = min(interval, total_ms - waited)
            await self._sleep_ms(step)
            waited += step
        return await self._status(session_id) == SessionStatus.RUNNING

    async def _handle_retry(self, session_id: str, index: int, error: Exception) -> TaskOutcome:
        if await self._status(session_id) != SessionStatus.RUNNING:
            return TaskOutcome.PAUSED

        await self._activity.error(session_id, f"ERROR: {error}")
        max_retries = self._config.max_task_retries

        def _bump(s: Session) -> bool | None:
            task = s.tasks[index]
            if task.status != TaskStatus.OPEN:
                return False
            task.retry_count += 1
            if task.retry_count > max_retries:
                task.status = TaskStatus.FAILED
            return None

        session = await self._db.update_session(session_id, _bump)
        if session is None:
            return TaskOutcome.MISSING
        task = session.tasks[index]

        if task.status == TaskStatus.FAILED:
            await self._activity.error(
                session_id, f'Task failed permanently after {max_retries} retries: "{task.term}"'
            )
            await self._notify(session_id)
            return TaskOutcome.FAILED
        if task.status != TaskStatus.OPEN:
            return TaskOutcome.CANCELLED

        await self._activity.warn(
            session_id,
            f"Retry {task.retry_count}/{max_retries} in {self._config.retry_delay_ms // 1000}s...",
        )
        await self._notify(session_id)
        await self._idle(session_id, self._config.retry_delay_ms)
        return TaskOutcome.RETRY
