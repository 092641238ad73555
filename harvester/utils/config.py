"""
Configuration management for SERP Harvester.
Loads and validates settings from YAML files and environment variables.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator


class GeneralConfig(BaseModel):
    """General configuration."""

    project_name: str = "serp-harvester"
    version: str = "0.1.0"
    log_level: str = "INFO"
    data_dir: str = "data"
    logs_dir: str = "logs"


class StorageConfig(BaseModel):
    """Storage configuration."""

    database_path: str = "data/harvester.db"


class SchedulerConfig(BaseModel):
    """Task queue scheduler configuration.

    All durations are in milliseconds unless the name says otherwise.
    """

    model_config = ConfigDict(extra="forbid")

    max_pages: int = Field(default=15, ge=1, description="Hard ceiling of pages per task")
    max_task_retries: int = Field(default=3, ge=0)
    retry_delay_ms: int = 5000
    cooldown_min_ms: int = 5000
    cooldown_max_ms: int = 10000
    pause_poll_interval_ms: int = Field(default=500, gt=0)
    # Settle waits after page load and after humanizing actions
    load_settle_min_ms: int = 2000
    load_settle_max_ms: int = 4000
    humanize_settle_min_ms: int = 3000
    humanize_settle_max_ms: int = 6000

    # Session defaults
    default_quota: int = 100
    default_delay_min_ms: int = 10000
    default_delay_max_ms: int = 20000


class RecoveryConfig(BaseModel):
    """CAPTCHA recovery configuration."""

    model_config = ConfigDict(extra="forbid")

    max_proxy_attempts: int = 3
    retry_delays_minutes: list[float] = Field(default_factory=lambda: [5, 15, 30, 60])
    observer_settle_ms: int = 1500
    reattach_settle_ms: int = 500

    @model_validator(mode="after")
    def _check_delays(self) -> "RecoveryConfig":
        if not self.retry_delays_minutes:
            raise ValueError("retry_delays_minutes must not be empty")
        return self


class BrowserConfig(BaseModel):
    """Browser configuration for the Playwright page surface."""

    headless: bool = False
    cdp_url: str | None = None  # Connect to a running Chrome instead of launching
    viewport_width: int = 1920
    viewport_height: int = 1080
    locale: str = "en-US"
    user_agent: str | None = None
    navigation_timeout_seconds: int = 45
    screenshot_quality: int = 50


class ProxyConfig(BaseModel):
    """Outbound proxy configuration."""

    scheme: str = "http"
    bypass: list[str] = Field(default_factory=lambda: ["localhost", "127.0.0.1"])
    min_line_length: int = 5


class Settings(BaseModel):
    """Main settings container."""

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dictionaries.

    Args:
        base: Base dictionary.
        override: Override dictionary.

    Returns:
        Merged dictionary.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_dir: Path) -> dict[str, Any]:
    """Load settings.yaml with local.yaml overrides.

    local.yaml is optional and is never committed; it holds machine-specific
    values such as a CDP url or a log level.

    Args:
        config_dir: Configuration directory path.

    Returns:
        Merged configuration dictionary.
    """
    config: dict[str, Any] = {}

    settings_path = config_dir / "settings.yaml"
    if settings_path.exists():
        with open(settings_path, encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}

    local_path = config_dir / "local.yaml"
    if local_path.exists():
        with open(local_path, encoding="utf-8") as f:
            local = yaml.safe_load(f) or {}
        config = _deep_merge(config, local)

    return config


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides.

    Environment variables should be prefixed with HARVESTER_ and use
    double underscore for nesting, e.g. HARVESTER_SCHEDULER__MAX_PAGES=10.

    Args:
        config: Base configuration.

    Returns:
        Configuration with environment overrides.
    """
    prefix = "HARVESTER_"

    for key, value in os.environ.items():
        if not key.startswith(prefix) or key == "HARVESTER_CONFIG_DIR":
            continue

        key_path = key[len(prefix) :].lower().split("__")

        current = config
        for part in key_path[:-1]:
            if part not in current:
                current[part] = {}
            current = current[part]

        final_key = key_path[-1]
        try:
            if value.lower() in ("true", "false"):
                current[final_key] = value.lower() == "true"
            elif "." in value:
                current[final_key] = float(value)
            else:
                current[final_key] = int(value)
        except ValueError:
            current[final_key] = value

    return config


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get application settings.

    Settings are loaded from:
    1. Default values
    2. YAML configuration files
    3. Environment variables (highest priority)

    Returns:
        Settings instance.
    """
    config_dir = Path(os.environ.get("HARVESTER_CONFIG_DIR", "config"))

    config = _load_yaml_config(config_dir)
    config = _apply_env_overrides(config)

    return Settings(**config)


def get_project_root() -> Path:
    """Get the project root directory."""
    # This file lives at harvester/utils/config.py
    return Path(__file__).parent.parent.parent


def ensure_directories() -> None:
    """Ensure all required directories exist."""
    settings = get_settings()
    root = get_project_root()

    for dir_path in (
        root / settings.general.data_dir,
        root / settings.general.logs_dir,
    ):
        dir_path.mkdir(parents=True, exist_ok=True)
