"""Configuration and environment settings for the sync engine."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GoogleSettings(BaseSettings):
    """OAuth client settings used to refresh access tokens."""

    model_config = SettingsConfigDict(extra="forbid")

    client_id: Annotated[str, Field(min_length=1)]
    client_secret: Annotated[str, Field(min_length=1, repr=False)]
    token_uri: Annotated[str, Field(min_length=1)] = "https://oauth2.googleapis.com/token"
    user_id: Annotated[str, Field(min_length=1)] = "me"

    @field_validator("client_id", "client_secret")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        """Reject whitespace-only OAuth client values.

        Args:
            value: Raw setting value.

        Returns:
            Stripped value.

        Raises:
            ValueError: If the value is blank.
        """
        stripped = value.strip()
        if not stripped:
            raise ValueError("OAuth client values must not be blank")
        return stripped


class StorageSettings(BaseSettings):
    """Settings for the local metadata store."""

    model_config = SettingsConfigDict(extra="forbid")

    root_dir: Path = Path("./data")
    sqlite_path_override: Path | None = None

    @field_validator("root_dir")
    @classmethod
    def _root_dir_to_absolute(cls, value: Path) -> Path:
        """Resolve the storage root directory to an absolute path."""
        return value.expanduser().resolve()

    @field_validator("sqlite_path_override")
    @classmethod
    def _path_to_absolute(cls, value: Path | None) -> Path | None:
        """Resolve the optional sqlite override to an absolute path."""
        return value.expanduser().resolve() if value is not None else None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def sqlite_path(self) -> Path:
        """Return the resolved sqlite database path."""
        return (self.sqlite_path_override or (self.root_dir / "mailbox.sqlite3")).resolve()


class SyncSettings(BaseSettings):
    """Batch synchronization and credential lifecycle tuning."""

    model_config = SettingsConfigDict(extra="forbid")

    chunk_size: Annotated[int, Field(ge=1, le=100)] = 25
    chunk_delay_s: Annotated[float, Field(ge=0)] = 0.2
    list_page_size: Annotated[int, Field(ge=1, le=500)] = 500
    default_lookback_days: Annotated[int, Field(ge=1)] = 180
    count_page_cap: Annotated[int, Field(ge=1, le=1000)] = 10

    token_safety_margin_s: Annotated[int, Field(ge=0)] = 300
    token_ttl_s: Annotated[int, Field(ge=60)] = 3600


class SchedulerSettings(BaseSettings):
    """Periodic multi-account scheduler settings."""

    model_config = SettingsConfigDict(extra="forbid")

    enabled: bool = False
    interval_s: Annotated[float, Field(gt=0)] = 600.0
    max_accounts_per_tick: Annotated[int, Field(ge=1, le=10_000)] = 2000
    max_items_per_account: Annotated[int, Field(ge=1, le=10_000)] = 500
    account_delay_s: Annotated[float, Field(ge=0)] = 0.5
    backfill_enabled: bool = True
    backfill_batch_size: Annotated[int, Field(ge=1, le=10_000)] = 500


class LoggingSettings(BaseSettings):
    """Logging configuration settings."""

    model_config = SettingsConfigDict(extra="forbid")

    level: Annotated[str, Field(min_length=1)] = "INFO"
    json_logs: bool = True


class AppSettings(BaseSettings):
    """Top-level application settings."""

    model_config = SettingsConfigDict(
        env_prefix="MBX_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="forbid",
    )

    google: GoogleSettings | None = None
    storage: StorageSettings = Field(default_factory=StorageSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(*, env_file: Path | None) -> AppSettings:
    """Load validated settings from environment and optional file.

    Args:
        env_file: Optional .env file path.

    Returns:
        Validated AppSettings instance.
    """
    if env_file is None:
        return AppSettings()
    return AppSettings(_env_file=env_file)  # type: ignore[call-arg]
