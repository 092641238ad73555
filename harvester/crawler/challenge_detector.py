"""CAPTCHA / bot-wall detection for search result pages."""

from urllib.parse import urlparse

from bs4 import BeautifulSoup

# URL fragments that mean the engine redirected to a challenge page
CAPTCHA_URL_PATTERNS = (
    "/sorry/",
    "captcha",
    "/challenge",
)

# Body text shown by Google/Bing traffic walls (English and German UIs)
_UNUSUAL_TRAFFIC_PHRASES = (
    "unusual traffic",
    "ungewöhnlicher datenverkehr",
)
_ROBOT_CHECK_PHRASES = (
    "not a robot",
    "kein roboter",
)

_CAPTCHA_FORM_SELECTOR = 'form[action*="Captcha"], form[action*="captcha"]'
_RECAPTCHA_SELECTOR = '.g-recaptcha, #recaptcha, iframe[src*="recaptcha"]'


def is_captcha_url(url: str | None) -> bool:
    """Check whether a URL points at a known challenge page.

    Only host and path are matched; the query carries the search term.

    Args:
        url: Current page URL.

    Returns:
        True if the URL matches a CAPTCHA/"sorry" pattern.
    """
    if not url:
        return False
    parsed = urlparse(url)
    location = f"{parsed.netloc}{parsed.path}".lower()
    return any(pattern in location for pattern in CAPTCHA_URL_PATTERNS)


def looks_resolved(url: str | None, engine_host: str | None = None) -> bool:
    """Check whether a navigation suggests a challenge was solved manually.

    The page must be back on the engine host (when known) and no longer on a
    challenge URL.
    """
    if not url or is_captcha_url(url):
        return False
    if engine_host:
        host = urlparse(url).netloc.lower()
        return engine_host.lower().split(":")[0].removeprefix("www.") in host
    return True


def is_captcha_page(html: str, *, is_bing: bool = False) -> bool:
    """Check if a result page is a CAPTCHA wall.

    A CAPTCHA form or reCAPTCHA widget alone is not enough on Google, since
    consent dialogs embed them too; it must come with traffic-warning or
    robot-check text. Bing shows the widget only on real walls.

    Args:
        html: Page HTML.
        is_bing: Whether the page is served by Bing.

    Returns:
        True if a bot block is detected.
    """
    soup = BeautifulSoup(html, "html.parser")

    title = soup.title.get_text(strip=True).lower() if soup.title else ""
    body = soup.body.get_text(" ", strip=True).lower() if soup.body else ""

    has_captcha_form = soup.select_one(_CAPTCHA_FORM_SELECTOR) is not None
    has_recaptcha = soup.select_one(_RECAPTCHA_SELECTOR) is not None
    unusual_traffic = any(p in body for p in _UNUSUAL_TRAFFIC_PHRASES)
    robot_check = any(p in body for p in _ROBOT_CHECK_PHRASES)

    if (has_captcha_form or has_recaptcha) and (unusual_traffic or robot_check or is_bing):
        return True

    # Google "sorry" interstitial
    if "sorry" in title and unusual_traffic:
        return True

    return False
