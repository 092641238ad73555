"""
Page surface abstraction.

A page surface is a navigable browser context (a tab) that the scheduler
opens at a search URL, waits on, hands to an extractor, and closes. The
protocol keeps the orchestration core independent of the browser backend;
``PlaywrightPageSurface`` is the production implementation.
"""

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from harvester.proxy.policy import ProxyRoute

NavigationCallback = Callable[[str], Awaitable[None]]


@dataclass
class SurfaceHandle:
    """Handle to one open surface.

    Attributes:
        url: URL the surface was opened at.
        page: Backend page object (Playwright Page, or a test double).
        id: Unique handle id, used in logs.
    """

    url: str
    page: Any = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    closed: bool = False


@runtime_checkable
class PageSurface(Protocol):
    """Protocol for page surfaces.

    ``close`` must be idempotent: the scheduler and the CAPTCHA recovery may
    both release the same handle.
    """

    async def open(self, url: str) -> SurfaceHandle:
        """Open a new surface at url."""
        ...

    async def wait_loaded(self, handle: SurfaceHandle) -> None:
        """Block until the surface finished loading."""
        ...

    async def close(self, handle: SurfaceHandle) -> None:
        """Release the surface."""
        ...

    async def navigate(self, handle: SurfaceHandle, url: str) -> None:
        """Navigate an open surface to url in place."""
        ...

    async def reload(self, handle: SurfaceHandle) -> None:
        """Reload the current document."""
        ...

    async def content(self, handle: SurfaceHandle) -> str:
        """Current document HTML."""
        ...

    async def current_url(self, handle: SurfaceHandle) -> str:
        """Current document URL."""
        ...

    async def screenshot(self, handle: SurfaceHandle) -> bytes:
        """Full-page screenshot (JPEG)."""
        ...

    def watch_navigation(
        self, handle: SurfaceHandle, callback: NavigationCallback
    ) -> Callable[[], None]:
        """Call callback(url) on every main-frame navigation.

        Returns:
            Callable that removes the observer.
        """
        ...

    async def apply_proxy(self, route: "ProxyRoute | None") -> None:
        """Route future surfaces through route, or directly when None."""
        ...
