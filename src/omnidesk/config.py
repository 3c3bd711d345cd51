"""Service settings, loaded by pydantic-settings from config.toml, .env and the environment.

Non-secret settings live in config.toml. Environment variables override it
using ``__`` as the nested delimiter (e.g. ``WORKFLOW__MAX_STEPS_PER_RUN``).
Channel credentials are stored on the channel rows, not here.

Strongest source first: constructor arguments, environment, .env, config.toml.

Usage::

    from omnidesk.config import get_settings

    s = get_settings()
    print(s.ingestion.poll_timeout)
"""

from __future__ import annotations

import os
from functools import cached_property
from pathlib import Path

from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sections: one model per [table] in config.toml
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Sections forbid unknown keys, so a misspelled option fails at startup."""

    model_config = {"extra": "forbid"}


class DatabaseConfig(_StrictModel):
    path: str = "data/omnidesk.db"  # relative to project root or absolute


class IngestionConfig(_StrictModel):
    poll_timeout: int = 30  # seconds the transport may hold a long poll open
    idle_sleep: float = 0.1  # seconds between polls when nothing arrived
    backoff_base: float = 1.0  # first retry delay after a transport error
    backoff_max: float = 60.0
    allowed_kinds: list[str] = ["message", "edited_message", "callback_query"]

    @field_validator("poll_timeout")
    @classmethod
    def validate_poll_timeout(cls, v: int) -> int:
        if v < 0:
            raise ValueError("poll_timeout cannot be negative")
        return v


class WorkflowConfig(_StrictModel):
    max_steps_per_run: int = 100
    send_retries: int = 3
    send_retry_base: float = 0.5  # seconds, doubled per attempt
    send_retry_delay: float = 60.0  # seconds before a deferred send is retried
    max_send_failures: int = 5
    history_limit: int = 50
    stale_running_after: float = 60.0  # seconds before an idle running log is retried
    tag_trigger_window: float = 30.0  # seconds; repeat tag triggers per chat are dropped

    @field_validator("max_steps_per_run")
    @classmethod
    def clamp_max_steps(cls, v: int) -> int:
        return max(1, v)


class SchedulerConfig(_StrictModel):
    poll_interval: float = 5.0  # seconds
    timezone: str = ""  # empty → auto-detect


class ServerConfig(_StrictModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8585


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


class TelegramConfig(_StrictModel):
    api_base: str = "https://api.telegram.org"
    request_timeout_slack: float = 5.0  # added on top of the long-poll timeout
    media_base_url: str = ""  # prefix for relative media paths in steps


class PluginConfig(_StrictModel):
    enabled: bool = True


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    database: DatabaseConfig = DatabaseConfig()
    ingestion: IngestionConfig = IngestionConfig()
    workflow: WorkflowConfig = WorkflowConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    server: ServerConfig = ServerConfig()
    logging: LoggingConfig = LoggingConfig()
    telegram: TelegramConfig = TelegramConfig()
    plugins: dict[str, PluginConfig] = {}

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Same order as the module docstring, with the secrets dir last."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Derived values ---

    @cached_property
    def timezone(self) -> str:
        if self.scheduler.timezone:
            return self.scheduler.timezone
        return _detect_timezone()

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def database_path(self) -> Path:
        path = Path(self.database.path)
        if not path.is_absolute():
            path = self.project_root / path
        return path.resolve()


# ---------------------------------------------------------------------------
# Host timezone
# ---------------------------------------------------------------------------


def _detect_timezone() -> str:
    if tz := os.environ.get("TZ"):
        return tz
    try:
        link = os.readlink("/etc/localtime")
        parts = link.split("zoneinfo/")
        if len(parts) > 1:
            return parts[1]
    except OSError:
        pass  # not a symlink on this host
    return "UTC"


# ---------------------------------------------------------------------------
# Process-wide instance
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Build Settings on first use and reuse it afterwards."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Forget the cached Settings; the next get_settings() reloads sources."""
    global _settings
    _settings = None
