"""
SERP Harvester utilities module.
"""

from harvester.utils.config import ensure_directories, get_project_root, get_settings
from harvester.utils.errors import HarvesterError
from harvester.utils.logging import LogContext, configure_logging, get_logger

__all__ = [
    "get_settings",
    "get_project_root",
    "ensure_directories",
    "get_logger",
    "configure_logging",
    "LogContext",
    "HarvesterError",
]
