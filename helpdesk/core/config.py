from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service configuration loaded from environment variables.

    Database settings are optional: when any of host, user or name is missing
    the service falls back to a local SQLite file so development and tests do
    not need a MySQL server.
    """

    app_name: str = "Helpdesk Sync"
    environment: str = "development"
    credential_encryption_key: str = Field(
        validation_alias=AliasChoices("CREDENTIAL_ENCRYPTION_KEY", "SECRET_KEY")
    )
    database_host: str | None = Field(default=None, validation_alias="DB_HOST")
    database_user: str | None = Field(default=None, validation_alias="DB_USER")
    database_password: str | None = Field(default=None, validation_alias="DB_PASSWORD")
    database_name: str | None = Field(default=None, validation_alias="DB_NAME")
    sqlite_path: Path | None = Field(default=None, validation_alias="SQLITE_PATH")
    migration_lock_timeout: int = Field(
        default=60, validation_alias="MIGRATION_LOCK_TIMEOUT"
    )
    default_timezone: str = Field(default="UTC", validation_alias="CRON_TIMEZONE")
    log_file_path: Path | None = Field(default=None, validation_alias="LOG_FILE_PATH")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    worker_enabled: bool = Field(default=True, validation_alias="HELPDESK_WORKER_ENABLED")
    worker_tick_seconds: int = Field(
        default=60, ge=5, validation_alias="HELPDESK_WORKER_TICK_SECONDS"
    )
    default_sync_interval: int = Field(
        default=300, ge=30, validation_alias="HELPDESK_DEFAULT_SYNC_INTERVAL"
    )
    max_message_body_chars: int = Field(
        default=5000, ge=100, validation_alias="HELPDESK_MAX_BODY_CHARS"
    )

    retry_max_retries: int = Field(default=5, ge=1, validation_alias="RETRY_MAX_RETRIES")
    retry_base_delay_ms: int = Field(default=1000, ge=0, validation_alias="RETRY_BASE_DELAY_MS")
    retry_max_delay_ms: int = Field(default=30000, ge=0, validation_alias="RETRY_MAX_DELAY_MS")
    retry_backoff_multiplier: float = Field(
        default=2.0, ge=1.0, validation_alias="RETRY_BACKOFF_MULTIPLIER"
    )
    retry_jitter_factor: float = Field(
        default=0.1, ge=0.0, le=1.0, validation_alias="RETRY_JITTER_FACTOR"
    )
    retry_state_max_age_seconds: int = Field(
        default=3600, ge=60, validation_alias="RETRY_STATE_MAX_AGE"
    )

    imap_timeout_seconds: float = Field(default=30.0, validation_alias="IMAP_TIMEOUT")
    smtp_timeout_seconds: float = Field(default=30.0, validation_alias="SMTP_TIMEOUT")

    audit_system_name: str = Field(default="System", validation_alias="AUDIT_SYSTEM_NAME")
    audit_system_email: str = Field(
        default="system@helpdesk.local", validation_alias="AUDIT_SYSTEM_EMAIL"
    )

    @field_validator(
        "database_host",
        "database_user",
        "database_password",
        "database_name",
        "sqlite_path",
        "log_file_path",
        mode="before",
    )
    @classmethod
    def _empty_string_to_none(cls, value):  # type: ignore[override]
        """Coerce blank environment variables to ``None`` so optional values stay optional."""

        if isinstance(value, str) and value.strip() == "":
            return None
        return value

    model_config = SettingsConfigDict(
        env_file=(Path(__file__).resolve().parent.parent.parent / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
