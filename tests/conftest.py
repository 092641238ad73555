"""
Pytest fixtures and configuration for SERP Harvester tests.

=============================================================================
Test Classification
=============================================================================

- @pytest.mark.unit: Single class/function, no external dependencies
  - DEFAULT: Tests without marker are auto-classified as unit
- @pytest.mark.integration: Several engine components wired together with a
  temp SQLite database, a fake page surface and a scripted fake extractor

No test launches a browser or touches the network.

=============================================================================
Mock Strategy
=============================================================================

- Browser: FakeSurface (records opens, navigations, reloads, proxy routes)
- Engine pages: FakeExtractor driven by a SerpScript (organic URLs per page
  number, CAPTCHA pages, injected errors)
- Database: temp file per test
- Delays: all scheduler and recovery waits set to zero
"""

import asyncio
import os
import tempfile
from collections.abc import Awaitable, Callable, Generator
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import pytest
import pytest_asyncio

# Set test environment before importing anything else
os.environ["HARVESTER_CONFIG_DIR"] = str(Path(__file__).parent.parent / "config")
os.environ["HARVESTER_GENERAL__LOG_LEVEL"] = "DEBUG"

from harvester.crawler.surface import NavigationCallback, SurfaceHandle  # noqa: E402
from harvester.proxy.policy import ProxyRoute  # noqa: E402
from harvester.search.extractor import CaptchaSignal, ExtractionResult, PaginationOutcome  # noqa: E402
from harvester.search.urls import RESULTS_PER_PAGE  # noqa: E402
from harvester.storage.models import PageResults, SerpEntry  # noqa: E402
from harvester.utils.config import RecoveryConfig, SchedulerConfig, Settings  # noqa: E402
from harvester.utils.errors import ExtractorDetachedError, SurfaceError  # noqa: E402


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests with no external dependencies (fast, <1s/test)"
    )
    config.addinivalue_line(
        "markers", "integration: Engine components wired together with fakes (<5s/test)"
    )


def pytest_collection_modifyitems(config, items):
    """Tests without an explicit classification are unit tests."""
    for item in items:
        if not any(marker.name in ("unit", "integration") for marker in item.iter_markers()):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Fakes
# =============================================================================


def page_of(url: str) -> int:
    """1-based result page encoded in a Google-style ``start`` offset."""
    start = parse_qs(urlparse(url).query).get("start", ["0"])[0]
    return int(start) // RESULTS_PER_PAGE + 1


def query_of(url: str) -> str:
    return parse_qs(urlparse(url).query).get("q", [""])[0]


def with_start(url: str, start: int) -> str:
    parsed = urlparse(url)
    params = parse_qs(parsed.query)
    params["start"] = [str(start)]
    return urlunparse(parsed._replace(query=urlencode(params, doseq=True)))


class FakeSurface:
    """In-memory page surface. Each handle remembers its current URL."""

    def __init__(self) -> None:
        self.opened: list[str] = []
        self.handles: list[SurfaceHandle] = []
        self.closed: list[str] = []
        self.navigations: list[str] = []
        self.reloads = 0
        self.proxy_routes: list[ProxyRoute | None] = []
        self._urls: dict[str, str] = {}
        self._watchers: dict[str, NavigationCallback] = {}

    async def open(self, url: str) -> SurfaceHandle:
        handle = SurfaceHandle(url=url)
        self._urls[handle.id] = url
        self.opened.append(url)
        self.handles.append(handle)
        return handle

    async def wait_loaded(self, handle: SurfaceHandle) -> None:
        if handle.closed:
            raise SurfaceError("Surface is closed")

    async def close(self, handle: SurfaceHandle) -> None:
        if handle.closed:
            return
        handle.closed = True
        self.closed.append(handle.id)

    async def navigate(self, handle: SurfaceHandle, url: str) -> None:
        self._urls[handle.id] = url
        self.navigations.append(url)

    async def reload(self, handle: SurfaceHandle) -> None:
        self.reloads += 1

    async def content(self, handle: SurfaceHandle) -> str:
        return "<html><body></body></html>"

    async def current_url(self, handle: SurfaceHandle) -> str:
        return self._urls[handle.id]

    async def screenshot(self, handle: SurfaceHandle) -> bytes:
        return b"\xff\xd8fake-jpeg"

    def watch_navigation(
        self, handle: SurfaceHandle, callback: NavigationCallback
    ) -> Callable[[], None]:
        self._watchers[handle.id] = callback

        def _unsubscribe() -> None:
            self._watchers.pop(handle.id, None)

        return _unsubscribe

    def is_watched(self, handle: SurfaceHandle) -> bool:
        return handle.id in self._watchers

    async def fire_navigation(self, handle: SurfaceHandle, url: str) -> None:
        """Simulate a main-frame navigation (e.g. after a manual solve)."""
        self._urls[handle.id] = url
        callback = self._watchers.get(handle.id)
        if callback is not None:
            await callback(url)

    async def apply_proxy(self, route: ProxyRoute | None) -> None:
        self.proxy_routes.append(route)


@dataclass
class SerpScript:
    """What the fake engine returns, per result page."""

    pages: dict[int, list[str]] = field(default_factory=dict)
    captcha_pages: set[int] = field(default_factory=set)
    # Each CAPTCHA page clears after being reported once
    captcha_once: bool = False
    errors: list[Exception] = field(default_factory=list)
    ads_per_page: int = 1
    extract_calls: list[tuple[str, int]] = field(default_factory=list)


class FakeExtractor:
    """Extractor reading a SerpScript; page number comes from the handle URL."""

    engine_id = "google"

    def __init__(self, surface: FakeSurface, script: SerpScript) -> None:
        self._surface = surface
        self._script = script
        self.attach_calls = 0

    async def _url(self, handle: SurfaceHandle) -> str:
        if handle.closed:
            raise ExtractorDetachedError("Surface is closed")
        return await self._surface.current_url(handle)

    async def attach(self, handle: SurfaceHandle) -> None:
        self.attach_calls += 1

    def _blocked(self, page: int) -> bool:
        if page not in self._script.captcha_pages:
            return False
        if self._script.captcha_once:
            self._script.captcha_pages.discard(page)
        return True

    async def check_captcha(self, handle: SurfaceHandle) -> bool:
        return self._blocked(page_of(await self._url(handle)))

    async def humanize(self, handle: SurfaceHandle) -> None:
        return None

    async def extract(self, handle: SurfaceHandle, start_rank: int):
        url = await self._url(handle)
        page = page_of(url)
        self._script.extract_calls.append((query_of(url), page))
        if self._script.errors:
            raise self._script.errors.pop(0)
        if self._blocked(page):
            return CaptchaSignal(url=url, stage="extract")

        organic = [
            SerpEntry(rank=start_rank + i + 1, title=f"Result {u}", url=u)
            for i, u in enumerate(self._script.pages.get(page, []))
        ]
        ads = [
            SerpEntry(rank=i + 1, title="Ad", url=f"https://ads.example/{page}/{i}")
            for i in range(self._script.ads_per_page)
        ]
        return ExtractionResult(
            results=PageResults(organic=organic, ads=ads),
            html=f"<html><body>page {page}</body></html>",
        )

    async def paginate(self, handle: SurfaceHandle):
        url = await self._url(handle)
        page = page_of(url)
        if self._blocked(page):
            return CaptchaSignal(url=url, stage="paginate")
        if page + 1 not in self._script.pages:
            return PaginationOutcome.EXHAUSTED
        await self._surface.navigate(handle, with_start(url, page * RESULTS_PER_PAGE))
        return PaginationOutcome.SUCCESS


def result_urls(prefix: str, count: int, start: int = 1) -> list[str]:
    return [f"https://{prefix}.example/{n}" for n in range(start, start + count)]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_db_path(temp_dir: Path) -> Path:
    """Get path for temporary test database."""
    return temp_dir / "test_harvester.db"


@pytest_asyncio.fixture
async def test_database(temp_db_path: Path):
    """Create a temporary test database.

    Guards against global database singleton interference by saving
    and restoring the global state around the test.
    """
    from harvester.storage import database as db_module
    from harvester.storage.database import Database

    saved_global = db_module._db
    db_module._db = None

    db = Database(temp_db_path)
    await db.connect()
    await db.initialize_schema()

    yield db

    await db.close()
    db_module._db = saved_global


@pytest.fixture
def fast_scheduler_config() -> SchedulerConfig:
    """Scheduler config with every wait set to zero."""
    return SchedulerConfig(
        max_pages=15,
        max_task_retries=3,
        retry_delay_ms=0,
        cooldown_min_ms=0,
        cooldown_max_ms=0,
        pause_poll_interval_ms=10,
        load_settle_min_ms=0,
        load_settle_max_ms=0,
        humanize_settle_min_ms=0,
        humanize_settle_max_ms=0,
        default_quota=100,
        default_delay_min_ms=0,
        default_delay_max_ms=0,
    )


@pytest.fixture
def fast_recovery_config() -> RecoveryConfig:
    return RecoveryConfig(observer_settle_ms=0, reattach_settle_ms=0)


@pytest.fixture
def fast_settings(
    fast_scheduler_config: SchedulerConfig, fast_recovery_config: RecoveryConfig
) -> Settings:
    return Settings(scheduler=fast_scheduler_config, recovery=fast_recovery_config)


@pytest.fixture
def fake_surface() -> FakeSurface:
    return FakeSurface()


@pytest.fixture
def serp_script() -> SerpScript:
    return SerpScript()


@pytest.fixture
def fake_extractor(fake_surface: FakeSurface, serp_script: SerpScript) -> FakeExtractor:
    return FakeExtractor(fake_surface, serp_script)


@pytest_asyncio.fixture
async def harvester_app(
    temp_db_path: Path,
    fake_surface: FakeSurface,
    serp_script: SerpScript,
    fast_settings: Settings,
):
    """Fully wired app over a temp database, fake surface and fake extractor."""
    from harvester.app import HarvesterApp

    app = HarvesterApp(
        fast_settings,
        db_path=temp_db_path,
        surface=fake_surface,
        extractor_for=lambda config: FakeExtractor(fake_surface, serp_script),
    )
    await app.start()
    yield app
    await app.close()


@pytest.fixture
def eventually() -> Callable[..., Awaitable[None]]:
    """Poll an async predicate until it holds or the timeout expires."""

    async def _eventually(
        predicate: Callable[[], Awaitable[bool]], timeout: float = 2.0, interval: float = 0.01
    ) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not await predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)

    return _eventually
