"""Tests for Settings loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from omnidesk.config import (
    IngestionConfig,
    LoggingConfig,
    Settings,
    WorkflowConfig,
    get_settings,
    reset_settings,
)


class TestSubModels:
    def test_defaults(self):
        assert WorkflowConfig().max_steps_per_run == 100
        assert IngestionConfig().allowed_kinds == ["message", "edited_message", "callback_query"]

    def test_unknown_key_rejected(self):
        with pytest.raises(ValidationError):
            WorkflowConfig(max_step=5)

    def test_negative_poll_timeout_rejected(self):
        with pytest.raises(ValidationError):
            IngestionConfig(poll_timeout=-1)

    def test_step_cap_clamped_to_one(self):
        assert WorkflowConfig(max_steps_per_run=0).max_steps_per_run == 1

    def test_log_level_normalized(self):
        assert LoggingConfig(level="debug").level == "DEBUG"


class TestSettings:
    def test_toml_and_env(self, tmp_path, monkeypatch):
        (tmp_path / "config.toml").write_text(
            "[workflow]\nmax_steps_per_run = 7\n\n[ingestion]\npoll_timeout = 10\n"
        )
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("INGESTION__POLL_TIMEOUT", "25")

        s = Settings()

        assert s.workflow.max_steps_per_run == 7
        assert s.ingestion.poll_timeout == 25

    def test_relative_database_path_resolved_against_cwd(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        s = Settings()

        assert s.database_path == (tmp_path / "data" / "omnidesk.db").resolve()

    def test_absolute_database_path_kept(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("DATABASE__PATH", "/var/lib/omnidesk/desk.db")

        assert Settings().database_path == Path("/var/lib/omnidesk/desk.db")

    def test_explicit_timezone(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("SCHEDULER__TIMEZONE", "Europe/Berlin")

        assert Settings().timezone == "Europe/Berlin"


class TestSingleton:
    def test_reset_rebuilds(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        first = get_settings()
        assert get_settings() is first

        reset_settings()

        assert get_settings() is not first
