"""Tests for configuration loading and validation."""

from __future__ import annotations

import pytest

from job_runtime.config import (
    CoordinatorConfig,
    LoggingConfig,
    RetentionConfig,
    Settings,
    StoreConfig,
    SweeperConfig,
    configure,
    get_settings,
    load_env,
    reset_settings,
)
from job_runtime.errors import InvalidConfigError
from job_runtime.jobs.types import JobState

from conftest import make_job


@pytest.fixture(autouse=True)
def _clean_settings():
    reset_settings()
    yield
    reset_settings()


class TestSections:
    """Test per-section validation."""

    def test_defaults(self):
        settings = Settings()
        assert settings.coordinator.workers == 4
        assert settings.coordinator.default_max_retries == 3
        assert settings.sweeper.enabled
        assert settings.store.backend == "memory"
        assert settings.logging.json_output

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"workers": 0},
            {"poll_interval": 0},
            {"lease_timeout": 10, "heartbeat_interval": 20},
            {"execution_timeout": -1},
            {"default_max_retries": 5, "max_retries_limit": 2},
            {"base_delay": 10, "max_delay": 1},
            {"jitter": 2.0},
        ],
    )
    def test_invalid_coordinator(self, kwargs):
        with pytest.raises(InvalidConfigError):
            CoordinatorConfig(**kwargs)

    def test_backoff_policy(self):
        policy = CoordinatorConfig(base_delay=2.0, max_delay=10.0).backoff_policy()
        assert policy.delay(1) == 4.0
        assert policy.delay(5) == 10.0

    def test_invalid_sweeper(self):
        with pytest.raises(InvalidConfigError):
            SweeperConfig(interval=0)

    def test_postgres_requires_dsn(self, monkeypatch):
        monkeypatch.delenv("POSTGRES_DSN", raising=False)
        with pytest.raises(InvalidConfigError):
            StoreConfig(backend="postgres")

    def test_logging_level_normalized(self):
        assert LoggingConfig(level="debug").level == "DEBUG"
        with pytest.raises(InvalidConfigError):
            LoggingConfig(level="LOUD")

    def test_retention_policy(self):
        config = RetentionConfig(
            default={"completed": {"large": 60}},
            types={"report": {"completed": {"small": 7 * 86400}}},
        )
        policy = config.policy()
        assert policy.retention_for(make_job("report"), JobState.COMPLETED, "x") == 7 * 86400
        assert policy.table["completed"]["large"] == 60

    def test_invalid_retention(self):
        with pytest.raises(InvalidConfigError):
            RetentionConfig(default={"completed": {"gigantic": 1}})


class TestFromEnv:
    """Test loading from environment variables."""

    def test_section_fields(self, monkeypatch):
        monkeypatch.setenv("JOBS_COORDINATOR_WORKERS", "8")
        monkeypatch.setenv("JOBS_COORDINATOR_LEASE_TIMEOUT", "60")
        monkeypatch.setenv("JOBS_COORDINATOR_EXECUTION_TIMEOUT", "none")
        monkeypatch.setenv("JOBS_SWEEPER_ENABLED", "false")
        monkeypatch.setenv("JOBS_STORE_JOBS_TABLE", "tracked_jobs")
        settings = Settings.from_env()
        assert settings.coordinator.workers == 8
        assert settings.coordinator.lease_timeout == 60.0
        assert settings.coordinator.execution_timeout is None
        assert settings.sweeper.enabled is False
        assert settings.store.jobs_table == "tracked_jobs"

    def test_retention_entries(self, monkeypatch):
        monkeypatch.setenv("JOBS_RETENTION_COMPLETED_LARGE", "1800")
        settings = Settings.from_env()
        assert settings.retention.policy().table["completed"]["large"] == 1800.0

    def test_log_level_shorthand(self, monkeypatch):
        monkeypatch.setenv("JOBS_LOG_LEVEL", "warning")
        assert Settings.from_env().logging.level == "WARNING"

    def test_custom_prefix(self, monkeypatch):
        monkeypatch.setenv("APP_COORDINATOR_WORKERS", "2")
        assert Settings.from_env(prefix="APP_").coordinator.workers == 2

    def test_bad_value(self, monkeypatch):
        monkeypatch.setenv("JOBS_COORDINATOR_WORKERS", "many")
        with pytest.raises(InvalidConfigError):
            Settings.from_env()


class TestFromFile:
    """Test YAML and TOML configuration files."""

    def test_yaml(self, tmp_path):
        path = tmp_path / "jobs.yaml"
        path.write_text(
            "coordinator:\n"
            "  workers: 3\n"
            "  base_delay: 0.5\n"
            "retention:\n"
            "  default:\n"
            "    failed:\n"
            "      small: 600\n"
        )
        settings = Settings.from_file(path)
        assert settings.coordinator.workers == 3
        assert settings.coordinator.base_delay == 0.5
        assert settings.retention.policy().table["failed"]["small"] == 600

    def test_toml(self, tmp_path):
        path = tmp_path / "jobs.toml"
        path.write_text('[sweeper]\ninterval = 5.0\n\n[logging]\nformat = "text"\n')
        settings = Settings.from_file(path)
        assert settings.sweeper.interval == 5.0
        assert not settings.logging.json_output

    def test_unknown_key_rejected(self, tmp_path):
        path = tmp_path / "jobs.yaml"
        path.write_text("coordinator:\n  wrokers: 3\n")
        with pytest.raises(InvalidConfigError) as exc_info:
            Settings.from_file(path)
        assert "coordinator" in str(exc_info.value)

    def test_unsupported_format(self, tmp_path):
        path = tmp_path / "jobs.ini"
        path.write_text("[coordinator]\n")
        with pytest.raises(InvalidConfigError):
            Settings.from_file(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Settings.from_file(tmp_path / "absent.yaml")

    def test_to_dict_round_trip(self, tmp_path, monkeypatch):
        monkeypatch.delenv("POSTGRES_DSN", raising=False)
        monkeypatch.delenv("REDIS_URL", raising=False)
        original = Settings(coordinator=CoordinatorConfig(workers=6))
        data = original.to_dict()
        assert data["coordinator"]["workers"] == 6
        assert isinstance(data["telemetry"]["duration_buckets"], list)
        assert Settings._from_dict(data).coordinator.workers == 6


class TestGlobalSettings:
    def test_configure_replaces_sections(self):
        settings = configure(Settings(), coordinator=CoordinatorConfig(workers=9))
        assert get_settings() is settings
        assert get_settings().coordinator.workers == 9

    def test_configure_unknown_section(self):
        with pytest.raises(InvalidConfigError):
            configure(Settings(), queue=object())

    def test_load_env(self, tmp_path, monkeypatch):
        # setenv first so teardown removes whatever load_env writes
        monkeypatch.setenv("JOBS_COORDINATOR_WORKERS", "1")
        monkeypatch.delenv("JOBS_COORDINATOR_WORKERS")
        env = tmp_path / ".env"
        env.write_text("JOBS_COORDINATOR_WORKERS=5\n")
        assert load_env(str(env))
        assert Settings.from_env().coordinator.workers == 5
