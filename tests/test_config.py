"""
Tests for settings loading.

## Test Perspectives Table

| Case ID | Input / Precondition | Perspective (Equivalence / Boundary) | Expected Result | Notes |
|---------|---------------------|---------------------------------------|-----------------|-------|
| TC-CF-N-01 | no config files | Equivalence – defaults | built-in defaults | - |
| TC-CF-N-02 | settings.yaml + local.yaml | Equivalence – merge | local wins, siblings kept | - |
| TC-CF-N-03 | HARVESTER_* env vars | Equivalence – override | env wins, typed | - |
| TC-CF-A-01 | unknown scheduler key | Abnormal – validation | ValidationError | - |
| TC-CF-A-02 | empty retry tiers | Abnormal – validation | ValidationError | - |
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from harvester.utils.config import RecoveryConfig, SchedulerConfig, get_settings


@pytest.fixture
def config_dir(temp_dir: Path, monkeypatch: pytest.MonkeyPatch):
    """Point settings at an empty temp config dir with a clean cache."""
    monkeypatch.setenv("HARVESTER_CONFIG_DIR", str(temp_dir))
    monkeypatch.delenv("HARVESTER_GENERAL__LOG_LEVEL", raising=False)
    get_settings.cache_clear()
    yield temp_dir
    get_settings.cache_clear()


class TestLoading:
    def test_defaults_without_files(self, config_dir: Path) -> None:
        settings = get_settings()

        assert settings.scheduler.max_pages == 15
        assert settings.scheduler.max_task_retries == 3
        assert settings.recovery.retry_delays_minutes == [5, 15, 30, 60]
        assert settings.recovery.max_proxy_attempts == 3
        assert settings.general.log_level == "INFO"

    def test_local_yaml_overrides_settings_yaml(self, config_dir: Path) -> None:
        # Given: A base file and a local override of one nested key
        (config_dir / "settings.yaml").write_text(
            "scheduler:\n  max_pages: 10\n  default_quota: 50\n", encoding="utf-8"
        )
        (config_dir / "local.yaml").write_text("scheduler:\n  max_pages: 3\n", encoding="utf-8")

        # When: Loading
        settings = get_settings()

        # Then: The override wins, its siblings survive
        assert settings.scheduler.max_pages == 3
        assert settings.scheduler.default_quota == 50

    def test_env_overrides_are_typed(self, config_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        (config_dir / "settings.yaml").write_text("browser:\n  headless: false\n", encoding="utf-8")
        monkeypatch.setenv("HARVESTER_SCHEDULER__MAX_PAGES", "7")
        monkeypatch.setenv("HARVESTER_BROWSER__HEADLESS", "true")
        monkeypatch.setenv("HARVESTER_STORAGE__DATABASE_PATH", "/tmp/other.db")

        settings = get_settings()

        assert settings.scheduler.max_pages == 7
        assert settings.browser.headless is True
        assert settings.storage.database_path == "/tmp/other.db"

    def test_settings_are_cached(self, config_dir: Path) -> None:
        assert get_settings() is get_settings()

    def test_shipped_settings_file_loads(self, monkeypatch: pytest.MonkeyPatch) -> None:
        shipped = Path(__file__).parent.parent / "config"
        monkeypatch.setenv("HARVESTER_CONFIG_DIR", str(shipped))
        get_settings.cache_clear()
        try:
            settings = get_settings()
        finally:
            get_settings.cache_clear()

        assert settings.recovery.retry_delays_minutes == [5, 15, 30, 60]


class TestValidation:
    def test_unknown_scheduler_key_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SchedulerConfig(max_page=10)

    def test_empty_retry_tiers_rejected(self) -> None:
        with pytest.raises(ValidationError):
            RecoveryConfig(retry_delays_minutes=[])

    def test_poll_interval_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            SchedulerConfig(pause_poll_interval_ms=0)
