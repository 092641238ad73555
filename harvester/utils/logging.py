"""
Structured logging configuration for SERP Harvester.

Every record goes to stderr and to a daily file under ``logs_dir``. Records
emitted inside a ``LogContext`` carry its session and task fields, so one
session's run can be followed through the scheduler and recovery logs.
"""

import logging
import sys
from collections.abc import Mapping
from contextvars import Token
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from harvester.utils.config import get_project_root, get_settings

# Emitted every pause_poll_interval_ms while a runner waits on a paused session
_POLL_EVENT_PREFIX = "pause_poll"


def _stamp(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """UTC timestamp (Z suffix) and upper-case level."""
    event_dict["timestamp"] = datetime.now(UTC).isoformat().replace("+00:00", "Z")
    event_dict["level"] = method_name.upper()
    return event_dict


def _drop_pause_polls(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    if method_name == "debug" and str(event_dict.get("event", "")).startswith(
        _POLL_EVENT_PREFIX
    ):
        raise structlog.DropEvent
    return event_dict


def default_log_file() -> Path:
    """Today's log file, creating the logs directory if needed."""
    log_dir = get_project_root() / get_settings().general.logs_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / f"harvester_{datetime.now():%Y%m%d}.log"


def configure_logging(
    log_level: str | None = None,
    log_file: str | Path | None = None,
    json_format: bool = True,
) -> None:
    """Route structlog through stdlib logging to stderr and a log file.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR. Defaults to general.log_level.
        log_file: Target file. Defaults to ``default_log_file()``.
        json_format: JSON lines when True, colored console output otherwise.
    """
    level_name = (log_level or get_settings().general.log_level).upper()
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level_name, logging.INFO),
        handlers=[
            logging.StreamHandler(sys.stderr),
            logging.FileHandler(log_file or default_log_file(), encoding="utf-8"),
        ],
        force=True,
    )

    renderer: list[Processor]
    if json_format:
        renderer = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ]
    else:
        renderer = [structlog.dev.ConsoleRenderer(colors=True)]

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            _stamp,
            _drop_pause_polls,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            *renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a logger instance.

    Args:
        name: Logger name (usually __name__).
    """
    return structlog.get_logger(name)


class LogContext:
    """Bind fields to every log record emitted inside the block.

    Nested blocks restore the outer values on exit, so a task context inside a
    session context leaves the session fields in place.

    Example:
        with LogContext(session_id="sess_1", task_index=3):
            logger.info("Processing page")
    """

    def __init__(self, **fields: Any):
        self.fields = fields
        self._tokens: Mapping[str, Token[Any]] = {}

    def __enter__(self) -> "LogContext":
        self._tokens = structlog.contextvars.bind_contextvars(**self.fields)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)
        self._tokens = {}
