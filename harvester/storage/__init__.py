"""
SERP Harvester storage module.
"""

from harvester.storage.database import Database, close_database, get_database
from harvester.storage.models import (
    EngineConfig,
    Page,
    PageArtifact,
    Session,
    SessionStatus,
    Task,
    TaskStatus,
)

__all__ = [
    "Database",
    "get_database",
    "close_database",
    "EngineConfig",
    "Page",
    "PageArtifact",
    "Session",
    "SessionStatus",
    "Task",
    "TaskStatus",
]
