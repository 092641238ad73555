"""
Human-like interaction on result pages.

Before extraction each page is "prepared" the way a person would skim it:
- Cookie consent and interstitial dialogs are dismissed
- A few result headings are hovered
- The page is scrolled down in uneven steps with occasional re-reading
  back-scrolls, then returned to the top
- Collapsed AI overview blocks are expanded so their full text is in the DOM
"""

import asyncio
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING

from harvester.utils.logging import get_logger

if TYPE_CHECKING:
    from playwright.async_api import Page

logger = get_logger(__name__)


# =============================================================================
# Configuration
# =============================================================================


@dataclass
class ScrollConfig:
    """Configuration for skim scrolling."""

    min_step: int = 100  # pixels
    max_step: int = 350
    step_pause_min_ms: float = 100.0
    step_pause_max_ms: float = 400.0

    # Re-reading back-scrolls
    reverse_probability: float = 0.3
    reverse_min: int = 50
    reverse_max: int = 150
    reverse_pause_min_ms: float = 500.0
    reverse_pause_max_ms: float = 1500.0

    # Stop when this close to the bottom
    bottom_margin: int = 50
    max_steps: int = 80


@dataclass
class HoverConfig:
    """Configuration for skim hovering."""

    count: int = 3
    pause_min_ms: float = 100.0
    pause_max_ms: float = 300.0
    selector: str = "a, h3, h2, .g, .b_algo"


# Consent buttons: Bing banner, Google "accept all" / "reject all"
CONSENT_SELECTORS = ("#bnp_btn_accept", "#L2AGLb", "#W0wltc")

POPUP_DIALOG_SELECTOR = '.mcPPZ, .qk7LXc, minor-moment-dialog, [role="dialog"]'
POPUP_BUTTON_SELECTOR = 'g-raised-button, button, [role="button"], .M9Bg4d'
POPUP_KEYWORDS = (
    "ok", "confirm", "accept", "agree", "continue", "not now", "no thanks",
    "later", "reject", "bestätigen", "akzeptieren", "zustimmen", "fortfahren",
    "nicht jetzt", "nein danke", "später", "ablehnen", "pas maintenant",
)

GOOGLE_AI_EXPAND_SELECTORS = (
    '.LT6XE div[role="button"]:has-text("Show more")',
    '.LT6XE div[role="button"]:has-text("Mehr anzeigen")',
    '.in7vHe[role="button"]',
)
BING_AI_EXPAND_SELECTORS = (".gs_readMoreFullBtn", ".cit_exp_btn")


def popup_button_matches(text: str) -> bool:
    """Check whether a dialog button label dismisses the dialog.

    Short keywords ("ok") must match the whole label, longer ones may be
    contained in it.
    """
    label = text.lower().strip()
    if not label:
        return False
    return any(label == k if len(k) < 4 else k in label for k in POPUP_KEYWORDS)


@dataclass
class ScrollStep:
    """One scroll target with the pause taken after reaching it."""

    position: int
    pause_ms: float


class SkimScroll:
    """Generates uneven top-to-bottom scroll sequences."""

    def __init__(self, config: ScrollConfig | None = None, rng: random.Random | None = None):
        self._config = config or ScrollConfig()
        self._rng = rng or random.Random()

    def generate(self, page_height: int, viewport_height: int) -> list[ScrollStep]:
        """Generate scroll steps from the top until the bottom is in view.

        Positions never go below zero; the final step brings the viewport
        within ``bottom_margin`` of the page end (or the step cap is hit).
        """
        cfg = self._config
        steps: list[ScrollStep] = []
        position = 0
        bottom = max(0, page_height - viewport_height - cfg.bottom_margin)

        while position < bottom and len(steps) < cfg.max_steps:
            position += self._rng.randint(cfg.min_step, cfg.max_step)
            steps.append(
                ScrollStep(
                    position=position,
                    pause_ms=self._rng.uniform(cfg.step_pause_min_ms, cfg.step_pause_max_ms),
                )
            )
            if self._rng.random() < cfg.reverse_probability:
                position = max(0, position - self._rng.randint(cfg.reverse_min, cfg.reverse_max))
                steps.append(
                    ScrollStep(
                        position=position,
                        pause_ms=self._rng.uniform(
                            cfg.reverse_pause_min_ms, cfg.reverse_pause_max_ms
                        ),
                    )
                )
        return steps


class HumanBehavior:
    """Runs the skim sequence on a Playwright page."""

    def __init__(
        self,
        scroll: ScrollConfig | None = None,
        hover: HoverConfig | None = None,
        rng: random.Random | None = None,
    ):
        self._rng = rng or random.Random()
        self._scroll = SkimScroll(scroll, self._rng)
        self._hover = hover or HoverConfig()

    async def _pause(self, min_ms: float, max_ms: float) -> None:
        await asyncio.sleep(self._rng.uniform(min_ms, max_ms) / 1000)

    async def prepare(self, page: "Page", *, is_bing: bool) -> None:
        """Skim a result page before extraction.

        Interaction failures are logged and skipped; a half-prepared page is
        still worth extracting.
        """
        from playwright.async_api import Error as PlaywrightError

        try:
            if not await self.accept_consent(page):
                await asyncio.sleep(0.8)
                await self.accept_consent(page)

            if not is_bing:
                for _ in range(2):
                    if await self.dismiss_popups(page):
                        await asyncio.sleep(1.5)
                        break
                    await asyncio.sleep(0.3)

            await self.hover_results(page)
            await self.skim_scroll(page)
            await asyncio.sleep(1.2)
            await page.evaluate("window.scrollTo({top: 0, behavior: 'smooth'})")
            await asyncio.sleep(1.5)
            await self.expand_ai_overview(page, is_bing=is_bing)
        except PlaywrightError as e:
            logger.debug("Page preparation interrupted", error=str(e))

    async def accept_consent(self, page: "Page") -> bool:
        for selector in CONSENT_SELECTORS:
            button = await page.query_selector(selector)
            if button is not None:
                await button.click()
                logger.debug("Consent accepted", selector=selector)
                return True
        return False

    async def dismiss_popups(self, page: "Page") -> bool:
        for dialog in await page.query_selector_all(POPUP_DIALOG_SELECTOR):
            if not await dialog.is_visible():
                continue
            for button in await dialog.query_selector_all(POPUP_BUTTON_SELECTOR):
                if popup_button_matches(await button.inner_text()):
                    await button.click()
                    return True
        return False

    async def hover_results(self, page: "Page") -> None:
        elements = await page.query_selector_all(self._hover.selector)
        if not elements:
            return
        for _ in range(self._hover.count):
            element = self._rng.choice(elements)
            await element.dispatch_event("mouseover")
            await self._pause(self._hover.pause_min_ms, self._hover.pause_max_ms)

    async def skim_scroll(self, page: "Page") -> None:
        dimensions = await page.evaluate(
            "() => ({height: document.body.scrollHeight, viewport: window.innerHeight})"
        )
        steps = self._scroll.generate(
            page_height=int(dimensions.get("height", 2000)),
            viewport_height=int(dimensions.get("viewport", 1080)),
        )
        for step in steps:
            await page.evaluate(f"window.scrollTo({{top: {step.position}, behavior: 'smooth'}})")
            await asyncio.sleep(step.pause_ms / 1000)

    async def expand_ai_overview(self, page: "Page", *, is_bing: bool) -> None:
        await asyncio.sleep(1.0)
        selectors = BING_AI_EXPAND_SELECTORS if is_bing else GOOGLE_AI_EXPAND_SELECTORS
        for selector in selectors:
            button = page.locator(selector).first
            if await button.count() == 0 or not await button.is_visible():
                continue
            await button.scroll_into_view_if_needed()
            await button.dispatch_event("click")
            await asyncio.sleep(1.5 if is_bing else 2.5)
            if not is_bing:
                break
