"""
SERP Harvester crawler module.

Provides the page surface (browser tabs), CAPTCHA detection and human-like
page interaction.
"""

from harvester.crawler.challenge_detector import is_captcha_page, is_captcha_url, looks_resolved
from harvester.crawler.surface import PageSurface, SurfaceHandle

__all__ = [
    "PageSurface",
    "SurfaceHandle",
    "is_captcha_page",
    "is_captcha_url",
    "looks_resolved",
]
