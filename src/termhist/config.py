"""
Runtime configuration for the termhist store.

Settings are read from the environment (the same variable names the shell
integration exports) and may also be passed directly as keyword arguments.
"""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError, InvalidModeError
from .schemas import HistoryMode

LOCAL_URL_PREFIXES = ("sqlite:", "sqlite+", "file:")


def is_local_url(url: str) -> bool:
    return url.startswith(LOCAL_URL_PREFIXES) or url == ":memory:"


class HistorySettings(BaseSettings):
    """Connection, mode and cache settings for a history client."""

    model_config = SettingsConfigDict(
        env_prefix="", extra="ignore", populate_by_name=True
    )

    turso_url: str | None = Field(default=None, alias="TURSO_DATABASE_URL")
    turso_token: str | None = Field(default=None, alias="TURSO_AUTH_TOKEN")
    turso_sync_url: str | None = Field(default=None, alias="TURSO_SYNC_URL")
    turso_sync_interval: int = Field(default=60, alias="TURSO_SYNC_INTERVAL")

    history_mode: HistoryMode = Field(default=HistoryMode.GLOBAL, alias="HISTORY_MODE")

    # Seconds a cached command output stays valid after its last execution
    cache_ttl: int = Field(default=3600, alias="TERMHIST_CACHE_TTL")
    # Recency window applied to the merged hybrid read
    history_window_days: int = Field(default=7, alias="TERMHIST_HISTORY_WINDOW_DAYS")

    machine_id_dir: Path = Field(
        default=Path.home() / ".termhist", alias="TERMHIST_HOME"
    )
    debug: bool = Field(default=False, alias="TERMHIST_DEBUG")

    @field_validator("history_mode", mode="before")
    @classmethod
    def validate_mode(cls, v):
        if isinstance(v, HistoryMode):
            return v
        try:
            return HistoryMode(v)
        except ValueError:
            raise InvalidModeError(v) from None

    @field_validator("cache_ttl", "history_window_days", "turso_sync_interval")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"must be positive, got {v}")
        return v

    def validate_credentials(self) -> None:
        """Raise ConfigError unless the settings can open a connection."""
        if not self.turso_url:
            raise ConfigError(
                "Database URL is required. Set TURSO_DATABASE_URL "
                "(and TURSO_AUTH_TOKEN for remote databases)"
            )
        if not is_local_url(self.turso_url) and not self.turso_token:
            raise ConfigError(
                f"Auth token is required for remote database {self.turso_url}. "
                "Set TURSO_AUTH_TOKEN"
            )
        if self.turso_sync_url and not self.turso_token:
            raise ConfigError("Auth token is required when TURSO_SYNC_URL is set")
