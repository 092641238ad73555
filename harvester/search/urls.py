"""Search URL construction for Google and Bing."""

import base64
from urllib.parse import quote

from harvester.storage.models import EngineConfig

RESULTS_PER_PAGE = 10

_UULE_KEY = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"


def _encode_component(value: str) -> str:
    # Same unreserved set as a browser's encodeURIComponent
    return quote(value, safe="!~*'()")


def generate_uule(location: str) -> str:
    """Encode a canonical location name as a Google ``uule`` parameter."""
    key = _UULE_KEY[len(location) % len(_UULE_KEY)]
    encoded = base64.b64encode(location.encode("utf-8")).decode("ascii")
    return f"w+CAIQICI{key}{encoded}"


def build_search_url(term: str, config: EngineConfig, page: int = 1) -> str:
    """Build the result URL for term under config.

    Args:
        term: Search query.
        config: Engine, market and language.
        page: 1-based result page. Pages after the first carry an offset
            parameter so a resumed task continues where it stopped.

    Returns:
        Absolute search URL.
    """
    q = _encode_component(term)
    offset = (max(page, 1) - 1) * RESULTS_PER_PAGE

    if config.engine_id == "bing":
        url = f"https://www.bing.com/search?q={q}&cc={config.country_code or 'us'}"
        if config.lang_code:
            url += f"&setLang={config.lang_code}"
        if offset:
            url += f"&first={offset + 1}"
        return url

    domain = config.domain or "www.google.com"
    url = f"https://{domain}/search?q={q}&gl={config.country_code or 'us'}"
    if config.lang_code:
        url += f"&hl={config.lang_code}"
    if config.location:
        url += f"&uule={generate_uule(config.location)}"
    if offset:
        url += f"&start={offset}"
    return url


def engine_host(config: EngineConfig) -> str:
    """Host serving results for config."""
    if config.engine_id == "bing":
        return "www.bing.com"
    return config.domain or "www.google.com"
