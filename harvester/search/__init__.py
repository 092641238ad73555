"""
SERP Harvester search module.

Search URL construction and per-engine result extraction.
"""

from harvester.search.extractor import (
    CaptchaSignal,
    ExtractionResult,
    Extractor,
    PaginationOutcome,
)
from harvester.search.parsers import BingExtractor, GoogleExtractor, get_extractor
from harvester.search.urls import build_search_url

__all__ = [
    "Extractor",
    "ExtractionResult",
    "CaptchaSignal",
    "PaginationOutcome",
    "GoogleExtractor",
    "BingExtractor",
    "get_extractor",
    "build_search_url",
]
