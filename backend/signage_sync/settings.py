from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class InvalidCredentials(ValueError):
    """Raised when the Yodeck token is not in `label:secret` form."""


@dataclass(frozen=True)
class YodeckCredentials:
    """Validated Yodeck API token, built once at startup and injected."""

    label: str
    secret: str

    @classmethod
    def parse(cls, raw: str | None) -> "YodeckCredentials":
        value = (raw or "").strip()
        if not value:
            raise InvalidCredentials("YODECK_AUTH_TOKEN not configured (empty or missing)")
        if ":" not in value:
            raise InvalidCredentials("YODECK_AUTH_TOKEN missing colon separator (expected label:secret)")
        label, secret = value.split(":", 1)
        label, secret = label.strip(), secret.strip()
        if not label:
            raise InvalidCredentials("YODECK_AUTH_TOKEN label part is empty")
        if not secret:
            raise InvalidCredentials("YODECK_AUTH_TOKEN secret part is empty")
        return cls(label=label, secret=secret)

    @property
    def authorization_header(self) -> str:
        return f"Token {self.label}:{self.secret}"

    def masked(self) -> str:
        return f"{self.label}:{self.secret[:4]}…"

    def __repr__(self) -> str:
        return f"YodeckCredentials(label={self.label!r}, secret='***')"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    app_name: str = "signage-sync"
    environment: str = Field(default="local", validation_alias=AliasChoices("ENVIRONMENT", "SIGNAGE_SYNC_ENVIRONMENT"))
    database_url: str = Field(
        default="postgresql+asyncpg://postgres:postgres@db:5432/signage_sync",
        validation_alias=AliasChoices("DATABASE_URL", "SIGNAGE_SYNC_DATABASE_URL"),
    )
    redis_url: str = Field(default="redis://redis:6379/0", validation_alias=AliasChoices("REDIS_URL", "SIGNAGE_SYNC_REDIS_URL"))
    data_dir: str = Field(default="/data", validation_alias=AliasChoices("DATA_DIR", "SIGNAGE_SYNC_DATA_DIR"))

    # Yodeck
    yodeck_auth_token: str | None = Field(default=None, validation_alias=AliasChoices("YODECK_AUTH_TOKEN", "SIGNAGE_SYNC_YODECK_AUTH_TOKEN"))
    yodeck_api_base: str = Field(default="https://app.yodeck.com/api/v2", validation_alias=AliasChoices("YODECK_API_BASE", "SIGNAGE_SYNC_YODECK_API_BASE"))
    yodeck_request_timeout_sec: float = Field(default=60.0, validation_alias=AliasChoices("YODECK_REQUEST_TIMEOUT_SEC", "SIGNAGE_SYNC_YODECK_REQUEST_TIMEOUT_SEC"))
    yodeck_max_retries: int = Field(default=3, validation_alias=AliasChoices("YODECK_MAX_RETRIES", "SIGNAGE_SYNC_YODECK_MAX_RETRIES"))
    yodeck_send_optional_create_fields: bool = Field(default=False, validation_alias=AliasChoices("YODECK_SEND_OPTIONAL_CREATE_FIELDS", "SIGNAGE_SYNC_YODECK_SEND_OPTIONAL_CREATE_FIELDS"))

    # Upload state machine
    upload_verify_delay_sec: float = Field(default=1.0, validation_alias=AliasChoices("UPLOAD_VERIFY_DELAY_SEC", "SIGNAGE_SYNC_UPLOAD_VERIFY_DELAY_SEC"))
    upload_poll_timeout_sec: float = Field(default=60.0, validation_alias=AliasChoices("UPLOAD_POLL_TIMEOUT_SEC", "SIGNAGE_SYNC_UPLOAD_POLL_TIMEOUT_SEC"))
    upload_poll_intervals_sec: list[float] = Field(
        default=[2, 3, 5, 5, 5, 10, 10, 10],
        validation_alias=AliasChoices("UPLOAD_POLL_INTERVALS_SEC", "SIGNAGE_SYNC_UPLOAD_POLL_INTERVALS_SEC"),
    )
    clone_poll_timeout_sec: float = Field(default=120.0, validation_alias=AliasChoices("CLONE_POLL_TIMEOUT_SEC", "SIGNAGE_SYNC_CLONE_POLL_TIMEOUT_SEC"))
    clone_poll_intervals_sec: list[float] = Field(
        default=[2, 3, 5, 8, 10, 15, 20, 30],
        validation_alias=AliasChoices("CLONE_POLL_INTERVALS_SEC", "SIGNAGE_SYNC_CLONE_POLL_INTERVALS_SEC"),
    )
    poll_stuck_after_attempts: int = Field(default=20, validation_alias=AliasChoices("POLL_STUCK_AFTER_ATTEMPTS", "SIGNAGE_SYNC_POLL_STUCK_AFTER_ATTEMPTS"))

    # Playlists
    playlist_reread_delay_sec: float = Field(default=1.5, validation_alias=AliasChoices("PLAYLIST_REREAD_DELAY_SEC", "SIGNAGE_SYNC_PLAYLIST_REREAD_DELAY_SEC"))
    playlist_default_duration_sec: int = Field(default=10, validation_alias=AliasChoices("PLAYLIST_DEFAULT_DURATION_SEC", "SIGNAGE_SYNC_PLAYLIST_DEFAULT_DURATION_SEC"))
    base_playlist_name: str = Field(default="Basis playlist", validation_alias=AliasChoices("BASE_PLAYLIST_NAME", "SIGNAGE_SYNC_BASE_PLAYLIST_NAME"))
    base_playlist_cache_ttl_sec: int = Field(default=300, validation_alias=AliasChoices("BASE_PLAYLIST_CACHE_TTL_SEC", "SIGNAGE_SYNC_BASE_PLAYLIST_CACHE_TTL_SEC"))

    # Watchdog / scheduler / worker
    scheduler_enabled: bool = Field(default=True, validation_alias=AliasChoices("SCHEDULER_ENABLED", "SIGNAGE_SYNC_SCHEDULER_ENABLED"))
    celery_enabled: bool = Field(default=True, validation_alias=AliasChoices("CELERY_ENABLED", "SIGNAGE_SYNC_CELERY_ENABLED"))
    watchdog_enabled: bool = Field(default=True, validation_alias=AliasChoices("WATCHDOG_ENABLED", "SIGNAGE_SYNC_WATCHDOG_ENABLED"))
    watchdog_interval_minutes: int = Field(default=5, validation_alias=AliasChoices("WATCHDOG_INTERVAL_MINUTES", "SIGNAGE_SYNC_WATCHDOG_INTERVAL_MINUTES"))
    outbox_stale_minutes: int = Field(default=30, validation_alias=AliasChoices("OUTBOX_STALE_MINUTES", "SIGNAGE_SYNC_OUTBOX_STALE_MINUTES"))
    upload_stale_minutes: int = Field(default=30, validation_alias=AliasChoices("UPLOAD_STALE_MINUTES", "SIGNAGE_SYNC_UPLOAD_STALE_MINUTES"))

    # Alerts
    telegram_bot_token: str | None = Field(default=None, validation_alias=AliasChoices("TELEGRAM_BOT_TOKEN", "SIGNAGE_SYNC_TELEGRAM_BOT_TOKEN"))
    telegram_chat_id: str | None = Field(default=None, validation_alias=AliasChoices("TELEGRAM_CHAT_ID", "SIGNAGE_SYNC_TELEGRAM_CHAT_ID"))

    @property
    def async_database_url(self) -> str:
        if self.database_url.startswith("postgresql+"):
            return self.database_url
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self.database_url

    def yodeck_credentials(self) -> YodeckCredentials:
        return YodeckCredentials.parse(self.yodeck_auth_token)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
