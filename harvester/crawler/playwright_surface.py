"""
Playwright-based page surface.

Opens one tab per task in a persistent browser context. Supports launching
Chromium or attaching to a running Chrome over CDP, and per-context proxy
routing with credentials.
"""

import asyncio
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from playwright.async_api import Browser, BrowserContext, Frame, Playwright

from harvester.crawler.surface import NavigationCallback, SurfaceHandle
from harvester.proxy.policy import ProxyRoute, ProxyState
from harvester.utils.config import BrowserConfig, get_settings
from harvester.utils.errors import SurfaceError
from harvester.utils.logging import get_logger

logger = get_logger(__name__)


class PlaywrightPageSurface:
    """Page surface implementation using Playwright.

    Proxy changes take effect on the next ``open``: a new browser context is
    created with the active route and credentials, and the previous context is
    closed once its last tab is released. Tabs held open for manual CAPTCHA
    solving keep the route they were opened with.
    """

    def __init__(
        self,
        proxy_state: ProxyState,
        config: BrowserConfig | None = None,
    ) -> None:
        self._config = config or get_settings().browser
        self._proxy_state = proxy_state
        self._playwright: "Playwright | None" = None
        self._browser: "Browser | None" = None
        self._context: "BrowserContext | None" = None
        self._context_stale = False
        self._retired_contexts: list["BrowserContext"] = []
        self._pending_callbacks: set[asyncio.Task[None]] = set()

    async def start(self) -> None:
        """Start Playwright and launch or attach to the browser."""
        if self._playwright is not None:
            return

        from playwright.async_api import Error as PlaywrightError
        from playwright.async_api import async_playwright

        self._playwright = await async_playwright().start()
        try:
            if self._config.cdp_url:
                self._browser = await self._playwright.chromium.connect_over_cdp(
                    self._config.cdp_url
                )
                logger.info("Connected to Chrome via CDP", url=self._config.cdp_url)
            else:
                self._browser = await self._playwright.chromium.launch(
                    headless=self._config.headless,
                )
                logger.info("Launched Chromium", headless=self._config.headless)
        except PlaywrightError as e:
            await self._playwright.stop()
            self._playwright = None
            raise SurfaceError(f"Browser start failed: {e}") from e

    async def stop(self) -> None:
        """Close all contexts and stop Playwright."""
        for ctx in [*self._retired_contexts, self._context]:
            if ctx is not None:
                try:
                    await ctx.close()
                except Exception as e:
                    logger.debug("Context close error", error=str(e))
        self._retired_contexts.clear()
        self._context = None
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    def _context_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "viewport": {
                "width": self._config.viewport_width,
                "height": self._config.viewport_height,
            },
            "locale": self._config.locale,
        }
        if self._config.user_agent:
            kwargs["user_agent"] = self._config.user_agent

        route = self._proxy_state.route
        if route is not None:
            proxy: dict[str, str] = {
                "server": route.server,
                "bypass": ",".join(route.bypass),
            }
            credentials = self._proxy_state.respond_to_auth_challenge()
            if credentials is not None:
                proxy["username"], proxy["password"] = credentials
            kwargs["proxy"] = proxy
        return kwargs

    async def _ensure_context(self) -> "BrowserContext":
        await self.start()
        assert self._browser is not None

        if self._context is not None and self._context_stale:
            self._retired_contexts.append(self._context)
            self._context = None
        if self._context is None:
            self._context = await self._browser.new_context(**self._context_kwargs())
            self._context_stale = False
            logger.info(
                "Created browser context",
                proxied=self._proxy_state.route is not None,
            )
        await self._close_idle_retired()
        return self._context

    async def _close_idle_retired(self) -> None:
        for ctx in list(self._retired_contexts):
            if not ctx.pages:
                self._retired_contexts.remove(ctx)
                await ctx.close()

    async def open(self, url: str) -> SurfaceHandle:
        from playwright.async_api import Error as PlaywrightError

        context = await self._ensure_context()
        page = await context.new_page()
        page.set_default_navigation_timeout(self._config.navigation_timeout_seconds * 1000)
        handle = SurfaceHandle(url=url, page=page)
        try:
            await page.goto(url, wait_until="commit")
        except PlaywrightError as e:
            await self.close(handle)
            raise SurfaceError(f"Navigation failed: {e}", details={"url": url}) from e
        logger.debug("Surface opened", handle=handle.id, url=url)
        return handle

    async def wait_loaded(self, handle: SurfaceHandle) -> None:
        from playwright.async_api import Error as PlaywrightError

        try:
            await handle.page.wait_for_load_state("load")
        except PlaywrightError as e:
            raise SurfaceError(f"Page did not finish loading: {e}") from e

    async def close(self, handle: SurfaceHandle) -> None:
        if handle.closed:
            return
        handle.closed = True
        page = handle.page
        if page is not None and not page.is_closed():
            try:
                await page.close()
            except Exception as e:
                logger.debug("Page close error", handle=handle.id, error=str(e))
        await self._close_idle_retired()

    async def navigate(self, handle: SurfaceHandle, url: str) -> None:
        from playwright.async_api import Error as PlaywrightError

        try:
            await handle.page.goto(url, wait_until="commit")
        except PlaywrightError as e:
            raise SurfaceError(f"Navigation failed: {e}", details={"url": url}) from e

    async def reload(self, handle: SurfaceHandle) -> None:
        """Reload in the handle's own context, whatever proxy route it was opened with."""
        from playwright.async_api import Error as PlaywrightError

        try:
            await handle.page.reload(wait_until="commit")
        except PlaywrightError as e:
            raise SurfaceError(f"Reload failed: {e}") from e

    async def content(self, handle: SurfaceHandle) -> str:
        return await handle.page.content()

    async def current_url(self, handle: SurfaceHandle) -> str:
        return handle.page.url

    async def screenshot(self, handle: SurfaceHandle) -> bytes:
        from playwright.async_api import Error as PlaywrightError

        try:
            return await handle.page.screenshot(
                full_page=True,
                type="jpeg",
                quality=self._config.screenshot_quality,
            )
        except PlaywrightError as e:
            raise SurfaceError(f"Screenshot failed: {e}") from e

    def watch_navigation(
        self, handle: SurfaceHandle, callback: NavigationCallback
    ) -> Callable[[], None]:
        page = handle.page

        def _on_navigated(frame: "Frame") -> None:
            if frame != page.main_frame:
                return
            task = asyncio.create_task(callback(frame.url))
            self._pending_callbacks.add(task)
            task.add_done_callback(self._pending_callbacks.discard)

        page.on("framenavigated", _on_navigated)

        def _unsubscribe() -> None:
            page.remove_listener("framenavigated", _on_navigated)

        return _unsubscribe

    async def apply_proxy(self, route: ProxyRoute | None) -> None:
        self._context_stale = True
        logger.info(
            "Proxy route changed, next surface uses a new context",
            server=route.server if route else "direct",
        )
