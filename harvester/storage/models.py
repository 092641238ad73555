"""
Session, task and page records.

A Session owns its Tasks, a Task owns its Pages. The whole tree is stored as
one JSON document per session; HTML snapshots and screenshots are stored
separately as page artifacts.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SessionStatus(str, Enum):
    """Session lifecycle states."""

    OPEN = "OPEN"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    PAUSED_CAPTCHA = "PAUSED_CAPTCHA"
    DONE = "DONE"


class TaskStatus(str, Enum):
    """Task states."""

    OPEN = "OPEN"
    DONE = "DONE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class LogLevel(str, Enum):
    """Activity log levels."""

    INFO = "INFO"
    WARN = "WARN"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


class PauseReason(str, Enum):
    """Why a session is being paused."""

    USER = "USER"
    CAPTCHA = "CAPTCHA"


def _utc_now() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


# =============================================================================
# Configuration records
# =============================================================================


class EngineConfig(BaseModel):
    """Search engine target: engine, market and language."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    engine_id: str = "google"
    engine_name: str = "Google"
    country_code: str = "us"
    country_name: str = ""
    lang_code: str | None = None
    domain: str | None = None
    location: str | None = None

    def matches(self, other: "EngineConfig") -> bool:
        """Same engine, market, language and domain."""
        return (
            self.engine_id == other.engine_id
            and self.country_code == other.country_code
            and self.lang_code == other.lang_code
            and self.domain == other.domain
        )

    @property
    def label(self) -> str:
        return f"{self.engine_name} {self.country_name or self.country_code.upper()}"


class DelayRange(BaseModel):
    """Inter-page idle window in milliseconds."""

    min_ms: int = Field(default=10000, ge=0)
    max_ms: int = Field(default=20000, ge=0)

    @model_validator(mode="after")
    def _order(self) -> "DelayRange":
        if self.max_ms < self.min_ms:
            raise ValueError("max_ms must be >= min_ms")
        return self


class SessionSettings(BaseModel):
    """Per-session capture and proxy settings."""

    capture_screenshots: bool = False
    capture_html: bool = False
    use_proxies: bool = False
    proxy_list: list[str] = Field(default_factory=list)


# =============================================================================
# Results
# =============================================================================


class SerpEntry(BaseModel):
    """One organic result or ad."""

    model_config = ConfigDict(extra="ignore")

    rank: int = Field(default=0, ge=0)
    title: str = ""
    url: str
    snippet: str = ""


class AiSource(BaseModel):
    """A source cited by an AI overview."""

    title: str = ""
    url: str = ""


class AiOverview(BaseModel):
    """Engine-generated summary block."""

    found: bool = False
    text_full: str = ""
    sources: list[AiSource] = Field(default_factory=list)


class PageResults(BaseModel):
    """Structured content extracted from one result page."""

    organic: list[SerpEntry] = Field(default_factory=list)
    ads: list[SerpEntry] = Field(default_factory=list)
    ai_overview: AiOverview = Field(default_factory=AiOverview)


class Page(BaseModel):
    """One fetched result page."""

    page_number: int = Field(ge=1)
    results: PageResults = Field(default_factory=PageResults)
    fetched_at: str = Field(default_factory=_utc_now)


class PageArtifact(BaseModel):
    """Out-of-band page capture."""

    html: str | None = None
    screenshot: bytes | None = None

    @property
    def is_empty(self) -> bool:
        return self.html is None and self.screenshot is None


# =============================================================================
# Session tree
# =============================================================================


class Task(BaseModel):
    """One (query, engine config) pairing pursued page by page."""

    term: str
    config: EngineConfig
    status: TaskStatus = TaskStatus.OPEN
    pages: list[Page] = Field(default_factory=list)
    total_organic: int = Field(default=0, ge=0)
    retry_count: int = Field(default=0, ge=0)

    @property
    def next_page_number(self) -> int:
        return len(self.pages) + 1

    def recorded_urls(self) -> set[str]:
        """All organic URLs stored for this task so far."""
        return {entry.url for page in self.pages for entry in page.results.organic}

    def organic_count(self) -> int:
        return sum(len(page.results.organic) for page in self.pages)

    def ad_count(self) -> int:
        return sum(len(page.results.ads) for page in self.pages)

    def summary(self, index: int) -> dict[str, Any]:
        """Compact row for task list broadcasts."""
        return {
            "index": index,
            "term": self.term,
            "engine": self.config.engine_name,
            "country": self.config.country_code,
            "lang": self.config.lang_code,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "total_organic": self.total_organic,
            "pages": len(self.pages),
        }


def build_tasks(queries: list[str], configs: list[EngineConfig]) -> list[Task]:
    """Cross product of queries and configs, query-major."""
    return [Task(term=q, config=c) for q in queries for c in configs]


class Session(BaseModel):
    """One study: query x engine-config tasks with shared settings."""

    id: str
    name: str = ""
    status: SessionStatus = SessionStatus.OPEN
    tasks: list[Task] = Field(default_factory=list)
    current_index: int = 0
    quota: int = Field(default=100, ge=1)
    delay_range: DelayRange = Field(default_factory=DelayRange)
    settings: SessionSettings = Field(default_factory=SessionSettings)
    original_queries: list[str] = Field(default_factory=list)
    original_configs: list[EngineConfig] = Field(default_factory=list)
    created_at: str = Field(default_factory=_utc_now)

    def next_open_index(self) -> int | None:
        """First OPEN task by declaration order."""
        for index, task in enumerate(self.tasks):
            if task.status == TaskStatus.OPEN:
                return index
        return None

    def progress(self) -> dict[str, int]:
        return {
            "done": sum(1 for t in self.tasks if t.status == TaskStatus.DONE),
            "total": len(self.tasks),
        }

    def current_query(self) -> str:
        if 0 <= self.current_index < len(self.tasks) and self.status != SessionStatus.DONE:
            return self.tasks[self.current_index].term
        return "Done"

    def list_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "progress": self.progress(),
        }


class LogEntry(BaseModel):
    """Append-only session activity record."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    timestamp: str = Field(default_factory=_utc_now)
    message: str
    level: LogLevel = LogLevel.INFO


class RecoveryState(str, Enum):
    """CAPTCHA recovery states."""

    NORMAL = "NORMAL"
    CAPTCHA_PROXY_RETRY = "CAPTCHA_PROXY_RETRY"
    CAPTCHA_DIRECT_FALLBACK = "CAPTCHA_DIRECT_FALLBACK"
    CAPTCHA_WAIT = "CAPTCHA_WAIT"


class RecoveryCounters(BaseModel):
    """Per-session CAPTCHA counters, stored apart from the session record."""

    session_id: str
    proxy_attempts: int = Field(default=0, ge=0)
    wait_attempts: int = Field(default=0, ge=0)
    state: RecoveryState = RecoveryState.NORMAL

    def reset(self) -> "RecoveryCounters":
        return self.model_copy(
            update={"proxy_attempts": 0, "wait_attempts": 0, "state": RecoveryState.NORMAL}
        )
