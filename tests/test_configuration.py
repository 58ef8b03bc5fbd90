"""
Tests for configuration loading and merging.
"""

import pytest
from omegaconf.errors import ConfigKeyError

from production_suite_backend.configuration import find_config_path, load_settings, make_runtime_config


class TestConfiguration:
    """Tests for load_settings and make_runtime_config."""

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("PRODUCTION_SUITE_DB_PATH", "/tmp/elsewhere.db")
        monkeypatch.setenv("PRODUCTION_SUITE_SWEEP_INTERVAL", "30")
        monkeypatch.setenv("PRODUCTION_SUITE_SCHEDULER_ENABLED", "false")

        settings = load_settings()

        assert settings.database_path == "/tmp/elsewhere.db"
        assert settings.scheduler_interval_seconds == 30
        assert settings.scheduler_enabled is False

    def test_explicit_overrides_win(self, monkeypatch):
        monkeypatch.setenv("PRODUCTION_SUITE_SWEEP_INTERVAL", "30")

        settings = load_settings({"scheduler": {"interval_seconds": 5}, "durations": {"print_machine_id": "press-9"}})

        assert settings.scheduler_interval_seconds == 5
        assert settings.print_machine_id == "press-9"

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("PRODUCTION_SUITE_SWEEP_INTERVAL", raising=False)

        settings = load_settings()

        assert settings.scheduler_interval_seconds == 900
        assert settings.scheduler_run_on_start is True
        assert settings.durations_enabled is True

    def test_unknown_keys_are_rejected(self):
        with pytest.raises(ConfigKeyError):
            make_runtime_config({"scheduler": {"interval_minutes": 5}})

    def test_explicit_config_path(self, monkeypatch, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("scheduler:\n  interval_seconds: 60\n")
        monkeypatch.setenv("PRODUCTION_SUITE_CONFIG", str(config_file))

        assert find_config_path() == config_file

    def test_missing_explicit_config_path(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PRODUCTION_SUITE_CONFIG", str(tmp_path / "missing.yaml"))

        with pytest.raises(FileNotFoundError):
            find_config_path()
