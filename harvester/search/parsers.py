"""
Google and Bing result page parsers.

Selectors follow the live markup of both engines as of this writing; they
will drift, and a page that no longer matches yields empty results rather
than an error.
"""

from __future__ import annotations

import base64
import copy
import re
from typing import TYPE_CHECKING
from urllib.parse import parse_qs, urlparse

from bs4 import BeautifulSoup, Tag

from harvester.crawler.surface import PageSurface
from harvester.search.extractor import SurfaceExtractor
from harvester.storage.models import AiOverview, AiSource, PageResults, SerpEntry
from harvester.utils.logging import get_logger

if TYPE_CHECKING:
    from harvester.crawler.human_behavior import HumanBehavior

logger = get_logger(__name__)

SNIPPET_MIN_LENGTH = 40
AD_SNIPPET_LENGTH = 200


def _text(elem: Tag | None, separator: str = " ") -> str:
    if elem is None:
        return ""
    return elem.get_text(separator, strip=True)


def clean_google_url(href: str) -> str:
    """Resolve Google ``/url?q=`` redirects to their destination."""
    if "/url?" in href:
        params = parse_qs(urlparse(href).query)
        for key in ("q", "url"):
            if key in params:
                return params[key][0]
    return href


def decode_bing_url(href: str | None) -> str | None:
    """Decode Bing click-tracking links (``u=a1<base64>``) to their destination."""
    if not href:
        return None
    params = parse_qs(urlparse(href).query)
    encoded = params.get("u", [""])[0]
    if not encoded.startswith("a1"):
        return href
    b64 = encoded[2:]
    b64 += "=" * (-len(b64) % 4)
    try:
        return base64.urlsafe_b64decode(b64).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        logger.debug("Undecodable Bing redirect", href=href[:120])
        return href


# =============================================================================
# Google
# =============================================================================


class GoogleExtractor(SurfaceExtractor):
    """Extractor for Google result pages."""

    engine_id = "google"

    MAIN_COLUMN = "#rso"
    ORGANIC_CONTAINER = ".tF2Cxc, .g"
    ADS = '[data-text-ad="1"], .uEierd, .vdQmEd'
    NEXT_LINK = "#pnnext"
    AI_CONTAINER = ".LT6XE"
    AI_SOURCE_ITEM = '.LLtSOc, .CyMdWb, .LT6XE [role="listitem"]'
    AI_SOURCE_LINK = "a.KEVENd, a.NDNGvf"
    AI_SOURCE_TITLE = ".mNme1d, .Nn35F"
    PEOPLE_ALSO_ASK = '.related-question-pair, .wQiwMc, [jsname="yEVEwb"]'
    AI_NOISE = (
        ".wDa0n, .MFrAxb, .bTFeG, .Q2WBBe, .agYtEe, .fG8Fp, "
        '[role="button"], button, script, style, svg, img'
    )

    def parse(self, html: str, start_rank: int) -> PageResults:
        soup = BeautifulSoup(html, "html.parser")
        organic, ads = self._parse_listings(soup, start_rank)
        return PageResults(organic=organic, ads=ads, ai_overview=self._parse_ai_overview(soup))

    def _parse_ai_overview(self, soup: BeautifulSoup) -> AiOverview:
        container = soup.select_one(self.AI_CONTAINER)
        items = soup.select(self.AI_SOURCE_ITEM)
        if container is None and not items:
            return AiOverview()

        text = ""
        if container is not None:
            clone = copy.copy(container)
            for noise in clone.select(self.AI_NOISE):
                noise.decompose()
            text = re.sub(r"\n{4,}", "\n\n\n", clone.get_text("\n", strip=True))

        sources: list[AiSource] = []
        seen: set[str] = set()
        for item in items:
            if item.css.closest(self.PEOPLE_ALSO_ASK) is not None:
                continue
            link = item.select_one(self.AI_SOURCE_LINK)
            if link is None:
                link = item if item.name == "a" else item.find("a")
            href = link.get("href", "") if link is not None else ""
            if not href or "google.com/search" in href or href in seen:
                continue
            seen.add(href)
            title = _text(item.select_one(self.AI_SOURCE_TITLE)) or link.get("aria-label") or _text(link)
            sources.append(AiSource(title=title or "Source", url=href))

        if not text and not sources:
            return AiOverview()
        return AiOverview(found=True, text_full=text, sources=sources)

    def _parse_listings(
        self, soup: BeautifulSoup, start_rank: int
    ) -> tuple[list[SerpEntry], list[SerpEntry]]:
        organic: list[SerpEntry] = []
        ads: list[SerpEntry] = []
        main = soup.select_one(self.MAIN_COLUMN)
        if main is None:
            return organic, ads

        items = main.select(self.ORGANIC_CONTAINER) or [c for c in main.children if isinstance(c, Tag)]
        for item in items:
            if not _text(item):
                continue

            if item.select_one(self.ADS) is not None or item.css.match(self.ADS):
                link = item.find("a")
                if link is not None and link.get("href"):
                    heading = item.select_one('[role="heading"], h3')
                    ads.append(
                        SerpEntry(
                            rank=len(ads) + 1,
                            title=_text(heading) or "Ad",
                            url=link["href"],
                            snippet=_text(item)[:AD_SNIPPET_LENGTH],
                        )
                    )
                continue

            header = item.find("h3")
            if header is None or "related-question-pair" in str(item):
                continue
            link = header.find_parent("a")
            if link is None or not link.get("href"):
                continue
            url = clean_google_url(link["href"])
            if not url.startswith("http") or "google.com/search" in url:
                continue

            title = _text(header)
            organic.append(
                SerpEntry(
                    rank=start_rank + len(organic) + 1,
                    title=title,
                    url=url,
                    snippet=self._snippet(item, title),
                )
            )
        return organic, ads

    @staticmethod
    def _snippet(item: Tag, title: str) -> str:
        for block in item.find_all(["div", "span"]):
            if block.find_parent("h3") is not None:
                continue
            text = _text(block)
            if len(text) > SNIPPET_MIN_LENGTH and title not in text:
                return text
        return ""

    def find_next_href(self, soup: BeautifulSoup, current_url: str) -> str | None:
        link = soup.select_one(self.NEXT_LINK)
        if link is None:
            start = parse_qs(urlparse(current_url).query).get("start", ["0"])[0]
            next_start = (int(start) if start.isdigit() else 0) + 10
            link = soup.select_one(f'a[href*="start={next_start}"]')
        if link is None:
            return None
        return link.get("href") or None


# =============================================================================
# Bing
# =============================================================================


class BingExtractor(SurfaceExtractor):
    """Extractor for Bing result pages."""

    engine_id = "bing"
    is_bing = True

    ORGANIC_CONTAINER = "li.b_algo, li.b_algo_group"
    ADS = "li.b_ad"
    ORGANIC_HEADER = "h2 a, a.tilk"
    DESCRIPTION = '[class*="b_lineclamp"], .b_ad_description, .b_caption p'
    NEXT_LINK = (
        'a.sb_pagN, a[title="Nächste Seite"], a[title="Page suivante"], '
        'a[title="Pagina successiva"], a[title="Next page"]'
    )
    AI_CONTAINER = "div.gs_h.gs_caphead"
    AI_TEXT = ".gs_text"
    AI_CITATION = ".gs_cit"
    AI_HOVER_ITEM = ".hov-item"

    def parse(self, html: str, start_rank: int) -> PageResults:
        soup = BeautifulSoup(html, "html.parser")
        organic, ads = self._parse_listings(soup, start_rank)
        return PageResults(organic=organic, ads=ads, ai_overview=self._parse_ai_overview(soup))

    def _parse_ai_overview(self, soup: BeautifulSoup) -> AiOverview:
        container = soup.select_one(self.AI_CONTAINER)
        if container is None:
            return AiOverview()

        raw = _text(container.select_one(self.AI_TEXT) or container, "\n")
        cut = raw.find("www.")
        if cut != -1:
            raw = raw[:cut]
        text = re.sub(r"^(Bilder\s*|Videos\s*)+", "", raw).strip()

        sources: list[AiSource] = []
        seen: set[str] = set()
        for cite in soup.select(self.AI_CITATION):
            url = decode_bing_url(cite.get("data-url"))
            if url and url not in seen:
                seen.add(url)
                sources.append(AiSource(title=cite.get("data-title") or "Source", url=url))
        for item in soup.select(self.AI_HOVER_ITEM):
            anchor = item if item.name == "a" else item.find_parent("a")
            url = decode_bing_url(anchor.get("href") if anchor is not None else None)
            if url and url not in seen:
                seen.add(url)
                title = _text(item.select_one(".hov-item-ttl")) or "Source"
                sources.append(AiSource(title=title, url=url))

        return AiOverview(found=True, text_full=text, sources=sources)

    def _parse_listings(
        self, soup: BeautifulSoup, start_rank: int
    ) -> tuple[list[SerpEntry], list[SerpEntry]]:
        organic: list[SerpEntry] = []
        ads: list[SerpEntry] = []

        for item in soup.select(f"{self.ORGANIC_CONTAINER}, {self.ADS}"):
            classes = item.get("class") or []
            if item.select_one(".algoSlug_icon") is not None and "b_algo" not in classes:
                continue

            link = item.select_one(self.ORGANIC_HEADER) or item.find("a")
            if link is None:
                continue
            url = decode_bing_url(link.get("href"))
            if not url or not url.startswith("http") or "bing.com" in url:
                continue

            title = _text(item.select_one(".tptt") or item.find("h2")) or _text(link)
            snippet = _text(item.select_one(self.DESCRIPTION))

            if "b_ad" in classes:
                ads.append(SerpEntry(rank=len(ads) + 1, title=title, url=url, snippet=snippet))
            else:
                organic.append(
                    SerpEntry(
                        rank=start_rank + len(organic) + 1,
                        title=title,
                        url=url,
                        snippet=snippet,
                    )
                )
        return organic, ads

    def find_next_href(self, soup: BeautifulSoup, current_url: str) -> str | None:
        link = soup.select_one(self.NEXT_LINK)
        if link is None:
            active = soup.select_one(".sb_pagS")
            holder = active.find_parent("li") if active is not None else None
            sibling = holder.find_next_sibling() if holder is not None else None
            if sibling is not None:
                link = sibling if sibling.name == "a" else sibling.find("a")
        if link is None:
            return None
        return link.get("href") or None


# =============================================================================
# Extractor Registry
# =============================================================================


_extractor_registry: dict[str, type[SurfaceExtractor]] = {
    "google": GoogleExtractor,
    "bing": BingExtractor,
}


def get_extractor(
    engine_id: str,
    surface: PageSurface,
    behavior: HumanBehavior | None = None,
) -> SurfaceExtractor:
    """Get an extractor instance for an engine.

    Unknown engines get the Google extractor, matching how search URLs are
    built for them.
    """
    extractor_class = _extractor_registry.get(engine_id.lower(), GoogleExtractor)
    return extractor_class(surface, behavior)


def register_extractor(engine_id: str, extractor_class: type[SurfaceExtractor]) -> None:
    """Register an extractor class for an engine."""
    if not issubclass(extractor_class, SurfaceExtractor):
        raise TypeError("Extractor must inherit from SurfaceExtractor")
    _extractor_registry[engine_id.lower()] = extractor_class
    logger.info("Registered extractor", engine=engine_id)
