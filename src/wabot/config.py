"""Process configuration: Pydantic BaseSettings with TOML + dotenv sources.

Service settings (reconnect policy, QR window, storage paths) live in
config.toml. Environment variables override it using ``__`` as the nested
delimiter (e.g. ``LIFECYCLE__MAX_RECONNECT_ATTEMPTS=3``).

Priority (highest wins): init args > env vars > .env > config.toml

The bot behaviour users edit at runtime (auto-reply, templates, working
hours) is not here; see :mod:`wabot.bot_settings`.

Usage::

    from wabot.config import get_settings

    s = get_settings()
    print(s.lifecycle.max_reconnect_attempts)
"""

from __future__ import annotations

from functools import cached_property
from pathlib import Path

from pydantic import BaseModel, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from wabot.logger import LOG_FORMATS

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models: reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class LifecycleConfig(_StrictModel):
    qr_timeout_seconds: float = 60.0
    reconnect_base_delay_seconds: float = 2.0
    reconnect_multiplier: float = 2.0
    max_reconnect_attempts: int = 5

    @field_validator("qr_timeout_seconds", "reconnect_base_delay_seconds")
    @classmethod
    def non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("reconnect_multiplier")
    @classmethod
    def at_least_one(cls, v: float) -> float:
        if v < 1:
            raise ValueError("reconnect_multiplier must be >= 1")
        return v

    @field_validator("max_reconnect_attempts")
    @classmethod
    def clamp_attempts(cls, v: int) -> int:
        return max(0, v)

    def backoff_delay(self, attempt: int) -> float:
        """Delay in seconds before reconnect attempt number *attempt* (1-based)."""
        return self.reconnect_base_delay_seconds * self.reconnect_multiplier ** (attempt - 1)


class StorageConfig(_StrictModel):
    data_dir: str = "data"  # relative to the working directory or absolute


_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


class LoggingConfig(_StrictModel):
    level: str = "INFO"
    format: str = "console"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        level = v.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"level must be one of {sorted(_LOG_LEVELS)}")
        return level

    @field_validator("format")
    @classmethod
    def known_format(cls, v: str) -> str:
        fmt = v.lower()
        if fmt not in LOG_FORMATS:
            raise ValueError(f"format must be one of {list(LOG_FORMATS)}")
        return fmt


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    lifecycle: LifecycleConfig = LifecycleConfig()
    storage: StorageConfig = StorageConfig()
    logging: LoggingConfig = LoggingConfig()

    @model_validator(mode="after")
    def _check_backoff(self) -> Settings:
        lc = self.lifecycle
        if lc.max_reconnect_attempts and lc.reconnect_base_delay_seconds == 0:
            raise ValueError("lifecycle.reconnect_base_delay_seconds must be > 0 when reconnecting")
        return self

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
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def data_dir(self) -> Path:
        p = Path(self.storage.data_dir).expanduser()
        if not p.is_absolute():
            p = self.project_root / p
        return p.resolve()

    @cached_property
    def auth_dir(self) -> Path:
        """Per-session neonize auth databases: data/auth/<session_id>.db."""
        return self.data_dir / "auth"

    @cached_property
    def db_path(self) -> Path:
        return self.data_dir / "wabot.db"


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
