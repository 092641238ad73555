"""
Tests for the Playwright surface's context options and proxy handling.

No browser is launched: context construction inputs are checked directly and
browser objects are replaced with mocks where tabs are opened.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from harvester.crawler.playwright_surface import PlaywrightPageSurface
from harvester.proxy.policy import ProxyCredentials, ProxyRoute, ProxyState
from harvester.utils.config import BrowserConfig


class TestContextOptions:
    def test_direct_connection(self) -> None:
        # Given: No active proxy
        surface = PlaywrightPageSurface(ProxyState(), BrowserConfig(locale="de-DE"))

        # When: Building context options
        kwargs = surface._context_kwargs()

        # Then: No proxy block
        assert "proxy" not in kwargs
        assert kwargs["locale"] == "de-DE"
        assert kwargs["viewport"] == {"width": 1920, "height": 1080}

    def test_proxy_route_and_credentials(self) -> None:
        # Given: An installed route with credentials
        state = ProxyState()
        state.install(ProxyRoute(host="10.0.0.1", port=8080), ProxyCredentials("alice", "pw"))
        surface = PlaywrightPageSurface(state, BrowserConfig())

        # When: Building context options
        proxy = surface._context_kwargs()["proxy"]

        # Then: Server, bypass list and auth are passed to the context
        assert proxy == {
            "server": "http://10.0.0.1:8080",
            "bypass": "localhost,127.0.0.1",
            "username": "alice",
            "password": "pw",
        }

    @pytest.mark.asyncio
    async def test_apply_proxy_marks_context_stale(self) -> None:
        # Given: A surface
        surface = PlaywrightPageSurface(ProxyState(), BrowserConfig())

        # When: The route changes
        await surface.apply_proxy(ProxyRoute(host="10.0.0.2", port=3128))

        # Then: The next open builds a new context
        assert surface._context_stale is True


def _mock_context(page: MagicMock) -> MagicMock:
    context = MagicMock()
    context.pages = [page]
    context.new_page = AsyncMock(return_value=page)
    context.close = AsyncMock()
    page.close = AsyncMock(side_effect=lambda: context.pages.clear())
    return context


def _mock_page() -> MagicMock:
    page = MagicMock()
    page.goto = AsyncMock()
    page.reload = AsyncMock()
    page.is_closed.return_value = False
    return page


class TestHeldTabAfterRouteChange:
    @pytest.mark.asyncio
    async def test_reload_stays_in_proxied_context(self) -> None:
        """A tab opened through a proxy keeps that route; the next open is direct."""
        # Given: A tab opened through a proxy
        state = ProxyState()
        state.install(ProxyRoute(host="10.0.0.1", port=8080), None)
        held_page, fresh_page = _mock_page(), _mock_page()
        proxied_ctx, direct_ctx = _mock_context(held_page), _mock_context(fresh_page)
        browser = MagicMock()
        browser.new_context = AsyncMock(side_effect=[proxied_ctx, direct_ctx])
        surface = PlaywrightPageSurface(state, BrowserConfig())
        surface._playwright = MagicMock()
        surface._browser = browser
        held = await surface.open("https://www.google.com/search?q=coffee")

        # When: The route is reset to direct and the held tab reloaded
        state.clear()
        await surface.apply_proxy(None)
        await surface.reload(held)

        # Then: The reload used the held tab without building a new context
        held_page.reload.assert_awaited_once()
        assert browser.new_context.await_count == 1
        assert "proxy" in browser.new_context.await_args_list[0].kwargs

        # When: The next tab is opened
        await surface.open("https://www.google.com/search?q=coffee")

        # Then: It gets a direct context; the proxied one lives while the held tab does
        assert browser.new_context.await_count == 2
        assert "proxy" not in browser.new_context.await_args_list[1].kwargs
        proxied_ctx.close.assert_not_awaited()

        # When: The held tab is released
        await surface.close(held)

        # Then: The proxied context is closed with it
        proxied_ctx.close.assert_awaited_once()
