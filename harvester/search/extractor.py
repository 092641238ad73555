"""
Extractor capability.

An extractor reads structured results from an open page surface, runs the
humanizing sequence, detects CAPTCHA walls and moves to the next result page.
The orchestration core only sees the ``Extractor`` protocol; engine variants
live in ``harvester.search.parsers``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Protocol, runtime_checkable
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from harvester.crawler.challenge_detector import is_captcha_page, is_captcha_url
from harvester.crawler.surface import PageSurface, SurfaceHandle
from harvester.storage.models import PageResults
from harvester.utils.errors import ExtractionError, ExtractorDetachedError, SurfaceError
from harvester.utils.logging import get_logger

if TYPE_CHECKING:
    from harvester.crawler.human_behavior import HumanBehavior

logger = get_logger(__name__)


@dataclass(frozen=True)
class CaptchaSignal:
    """Returned instead of results when the page is a CAPTCHA wall."""

    url: str = ""
    stage: str = ""


class PaginationOutcome(str, Enum):
    SUCCESS = "success"
    EXHAUSTED = "exhausted"


@dataclass
class ExtractionResult:
    """Structured results of one page plus the HTML they were read from."""

    results: PageResults
    html: str = ""


@runtime_checkable
class Extractor(Protocol):
    """Per-engine extraction capability."""

    engine_id: str

    async def attach(self, handle: SurfaceHandle) -> None:
        """Re-establish access to the page after its document was replaced."""
        ...

    async def check_captcha(self, handle: SurfaceHandle) -> bool:
        """Whether the page currently shows a CAPTCHA wall.

        Raises:
            ExtractorDetachedError: The document is not reachable right now.
        """
        ...

    async def humanize(self, handle: SurfaceHandle) -> None:
        """Run scroll/hover actions on the page."""
        ...

    async def extract(
        self, handle: SurfaceHandle, start_rank: int
    ) -> ExtractionResult | CaptchaSignal:
        """Extract organic results (ranked from start_rank + 1), ads and AI overview."""
        ...

    async def paginate(self, handle: SurfaceHandle) -> PaginationOutcome | CaptchaSignal:
        """Navigate to the next result page."""
        ...


class SurfaceExtractor(ABC):
    """Extractor reading page HTML from a ``PageSurface``.

    Subclasses supply engine-specific parsing and next-page lookup.
    """

    engine_id: str = ""
    is_bing: bool = False

    def __init__(self, surface: PageSurface, behavior: HumanBehavior | None = None):
        self._surface = surface
        self._behavior = behavior

    @abstractmethod
    def parse(self, html: str, start_rank: int) -> PageResults:
        """Parse a result page."""

    @abstractmethod
    def find_next_href(self, soup: BeautifulSoup, current_url: str) -> str | None:
        """Href of the next-page link, or None on the last page."""

    async def _read(self, handle: SurfaceHandle) -> tuple[str, str]:
        if handle.closed:
            raise ExtractorDetachedError("Surface is closed", details={"handle": handle.id})
        try:
            url = await self._surface.current_url(handle)
            html = await self._surface.content(handle)
        except SurfaceError as e:
            raise ExtractorDetachedError(f"Document not reachable: {e.message}") from e
        except Exception as e:
            # Playwright raises plain errors while a navigation swaps the document
            raise ExtractorDetachedError(f"Document not reachable: {e}") from e
        return url, html

    def _is_wall(self, url: str, html: str) -> bool:
        return is_captcha_url(url) or is_captcha_page(html, is_bing=self.is_bing)

    async def attach(self, handle: SurfaceHandle) -> None:
        await self._surface.wait_loaded(handle)

    async def check_captcha(self, handle: SurfaceHandle) -> bool:
        url, html = await self._read(handle)
        return self._is_wall(url, html)

    async def humanize(self, handle: SurfaceHandle) -> None:
        if self._behavior is None or handle.page is None:
            return
        await self._behavior.prepare(handle.page, is_bing=self.is_bing)

    async def extract(
        self, handle: SurfaceHandle, start_rank: int
    ) -> ExtractionResult | CaptchaSignal:
        try:
            url, html = await self._read(handle)
        except ExtractorDetachedError as e:
            raise ExtractionError(e.message, details=e.details) from e
        if self._is_wall(url, html):
            return CaptchaSignal(url=url, stage="extract")

        results = self.parse(html, start_rank)
        logger.debug(
            "Page extracted",
            engine=self.engine_id,
            organic=len(results.organic),
            ads=len(results.ads),
            ai_overview=results.ai_overview.found,
        )
        return ExtractionResult(results=results, html=html)

    async def paginate(self, handle: SurfaceHandle) -> PaginationOutcome | CaptchaSignal:
        try:
            url, html = await self._read(handle)
        except ExtractorDetachedError as e:
            raise ExtractionError(e.message, details=e.details) from e
        if self._is_wall(url, html):
            return CaptchaSignal(url=url, stage="paginate")

        href = self.find_next_href(BeautifulSoup(html, "html.parser"), url)
        if not href:
            return PaginationOutcome.EXHAUSTED

        await self._surface.navigate(handle, urljoin(url, href))
        return PaginationOutcome.SUCCESS
