"""
Exception hierarchy for SERP Harvester.

Categories:
- StorageError: persistent store unavailable or failing (fatal for the
  current operation, session stays at its last durable state)
- SurfaceError / ExtractionError: transient page-level failures, recovered
  by the task retry policy
- ProxyConfigError: malformed proxy entries (logged and skipped)
- SessionNotFoundError: command refers to an unknown session
"""

from typing import Any


class HarvesterError(Exception):
    """Base exception for harvester errors."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert error to a broadcastable dict."""
        result: dict[str, Any] = {
            "ok": False,
            "error_type": type(self).__name__,
            "error": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class StorageError(HarvesterError):
    """Persistent store failure."""


class SessionNotFoundError(HarvesterError):
    """Referenced session does not exist."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}", details={"session_id": session_id})
        self.session_id = session_id


class SurfaceError(HarvesterError):
    """Page surface could not open, load or navigate."""


class ExtractionError(HarvesterError):
    """Extraction failed for a reason other than a CAPTCHA."""


class ExtractorDetachedError(ExtractionError):
    """Extractor is no longer attached to the page (page replaced by navigation)."""


class ProxyConfigError(HarvesterError):
    """Proxy entry is malformed."""
