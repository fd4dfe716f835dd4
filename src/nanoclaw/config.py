"""Centralized configuration — Pydantic BaseSettings with TOML + dotenv sources.

Non-secret settings live in config.toml. Secrets (Slack tokens) live in .env.
Environment variables override both using ``__`` as the nested delimiter
(e.g. ``SLACK__BOT_TOKEN``). Secrets use SecretStr for masking in logs.

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from nanoclaw.config import get_settings

    s = get_settings()
    print(s.agent.name)
    print(s.container.image)
"""

from __future__ import annotations

import re
from functools import cached_property
from pathlib import Path

from pydantic import BaseModel, SecretStr, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models — reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class AgentConfig(_StrictModel):
    name: str = "Andy"
    trigger_aliases: list[str] = []


class ContainerConfig(_StrictModel):
    image: str = "nanoclaw-agent:latest"
    timeout_ms: int = 1800000  # 30 minutes
    idle_timeout_ms: int = 1800000  # 30 minutes
    max_output_size: int = 10485760  # 10MB
    max_concurrent: int = 5
    runtime: str | None = None  # "docker" | "apple" | None (auto-detect)
    name_prefix: str = "nanoclaw-"
    close_grace_seconds: float = 5.0

    @field_validator("max_concurrent")
    @classmethod
    def clamp_max_concurrent(cls, v: int) -> int:
        return max(1, v)


class IntervalsConfig(_StrictModel):
    ipc_poll: float = 0.5  # seconds


class QueueConfig(_StrictModel):
    max_retries: int = 5
    base_retry_seconds: float = 5.0


class WatchdogConfig(_StrictModel):
    heartbeat_interval: float = 60.0  # seconds between host heartbeat writes
    stale_after_seconds: int = 300  # heartbeat older than this = stalled host
    reaper_margin_ms: int = 300000  # added to timeout + idle timeout for max sandbox age
    # pkill -f regex; matches `nanoclaw`, `nanoclaw run` and `python -m nanoclaw [run]`
    host_pattern: str = "nanoclaw( run)?$"
    log_file: str | None = None  # None → <project>/logs/watchdog.log


class GroupsConfig(_StrictModel):
    main_folder: str = "main"


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


class SlackConfig(_StrictModel):
    bot_token: SecretStr | None = None  # xoxb-... Bot User OAuth Token
    app_token: SecretStr | None = None  # xapp-... App-Level Token (Socket Mode)

    @property
    def enabled(self) -> bool:
        return self.bot_token is not None and self.app_token is not None


class WhatsAppConfig(_StrictModel):
    enabled: bool = False


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    agent: AgentConfig = AgentConfig()
    container: ContainerConfig = ContainerConfig()
    intervals: IntervalsConfig = IntervalsConfig()
    queue: QueueConfig = QueueConfig()
    watchdog: WatchdogConfig = WatchdogConfig()
    groups: GroupsConfig = GroupsConfig()
    logging: LoggingConfig = LoggingConfig()
    slack: SlackConfig = SlackConfig()
    whatsapp: WhatsAppConfig = WhatsAppConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def container_timeout(self) -> float:
        return self.container.timeout_ms / 1000

    @cached_property
    def idle_timeout(self) -> float:
        return self.container.idle_timeout_ms / 1000

    @cached_property
    def max_sandbox_age_ms(self) -> int:
        """Oldest a sandbox may get before the reaper stops it."""
        return (
            self.container.timeout_ms
            + self.container.idle_timeout_ms
            + self.watchdog.reaper_margin_ms
        )

    @cached_property
    def trigger_pattern(self) -> re.Pattern[str]:
        names = [re.escape(self.agent.name)] + [
            re.escape(a.strip()) for a in self.agent.trigger_aliases
        ]
        return re.compile(rf"^@({'|'.join(names)})\b", re.IGNORECASE)

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def groups_dir(self) -> Path:
        return (self.project_root / "groups").resolve()

    @cached_property
    def data_dir(self) -> Path:
        return (self.project_root / "data").resolve()

    @cached_property
    def store_dir(self) -> Path:
        return (self.project_root / "store").resolve()

    @cached_property
    def heartbeat_path(self) -> Path:
        return self.data_dir / "heartbeat"

    @cached_property
    def watchdog_log_path(self) -> Path:
        if self.watchdog.log_file:
            return Path(self.watchdog.log_file).expanduser()
        return self.project_root / "logs" / "watchdog.log"


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
