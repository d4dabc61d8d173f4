"""Pydantic configuration schema for mailsync.

This module defines the configuration schema that mirrors config.yaml.
All configuration is validated against these models on startup and hot-reload.

Usage:
    from mailsync.config_schema import AppConfig

    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1


class ApiConfig(BaseModel):
    """Remote mail API connection settings."""

    base_url: str = Field(
        default="http://localhost:8080",
        description="Base URL of the mail API (paths like /v1/messages are appended)",
    )
    token_env: str = Field(
        default="MAILSYNC_API_TOKEN",
        description="Environment variable holding the bearer token",
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=300,
        description="Default request timeout when no per-resource timeout applies",
    )
    max_retries: int = Field(default=3, ge=0, le=10, description="Retries for transient errors")
    rate_per_second: float = Field(
        default=10.0,
        gt=0,
        le=1000,
        description="Proactive client-side request rate limit",
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Require an http(s) URL and strip the trailing slash."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return v.rstrip("/")


class StorageConfig(BaseModel):
    """Local cache database settings."""

    db_path: str = Field(default="data/mailsync.db", description="SQLite cache file")
    quota_bytes: int = Field(
        default=500 * 1024 * 1024,
        ge=1024 * 1024,
        description="Storage budget used for quota-pressure decisions",
    )

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: str) -> str:
        """Ensure the database path doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class CacheConfig(BaseModel):
    """In-memory cache tuning."""

    debounce_ms: int = Field(
        default=500,
        ge=0,
        le=10_000,
        description="Window in which repeated cache hits skip re-rendering",
    )
    max_debounce_entries: int = Field(default=200, ge=1, le=100_000)
    memory_pages: int = Field(
        default=50,
        ge=1,
        le=10_000,
        description="Folder pages kept in the in-memory page cache",
    )


class ListSyncConfig(BaseModel):
    """Folder list synchronization settings."""

    page_size: int = Field(default=50, ge=1, le=500)
    preview_limit: int = Field(
        default=20,
        ge=1,
        le=500,
        description="Size of the quick first slice fetched when the cache is empty",
    )


class PrefetchConfig(BaseModel):
    """Background body prefetch settings."""

    enabled: bool = True
    limit: int = Field(default=50, ge=1, le=1000)
    concurrency: int = Field(default=3, ge=1, le=32)
    prioritize: bool = True
    quota_threshold: float = Field(
        default=0.9,
        gt=0,
        le=1.0,
        description="Skip prefetch when used/quota is at or above this ratio",
    )


class PgpConfig(BaseModel):
    """PGP decryption pipeline settings."""

    prompt_timeout_seconds: float = Field(default=120.0, gt=0, le=3600)
    notification_timeout_seconds: float = Field(default=60.0, gt=0, le=3600)


class SanitizeConfig(BaseModel):
    """HTML sanitizer defaults."""

    block_remote_images: bool = False
    block_tracking_pixels: bool = True


class MutationQueueConfig(BaseModel):
    """Offline mutation queue retry policy."""

    max_retries: int = Field(default=5, ge=1, le=50)
    base_backoff_seconds: float = Field(default=3.0, gt=0, le=600)
    max_backoff_seconds: float = Field(default=120.0, gt=0, le=3600)
    process_interval_seconds: int = Field(default=30, ge=1, le=3600)


class PollerConfig(BaseModel):
    """Inbox poller settings."""

    interval_minutes: int = Field(default=5, ge=1, le=1440)
    folder: str = Field(default="INBOX", description="Folder refreshed by the poller")


class WorkerConfig(BaseModel):
    """Background sync worker request timeouts."""

    timeout_seconds: float = Field(default=30.0, gt=0, le=600)
    decrypt_timeout_seconds: float = Field(default=30.0, gt=0, le=600)


class LoggingConfig(BaseModel):
    """Log output settings."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_output: bool = Field(default=False, alias="json")

    model_config = {"populate_by_name": True}


class AppConfig(BaseModel):
    """Root configuration model."""

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migrations",
    )
    account: str = Field(default="default", description="Account selected at startup")
    api: ApiConfig = Field(default_factory=ApiConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    list_sync: ListSyncConfig = Field(default_factory=ListSyncConfig)
    prefetch: PrefetchConfig = Field(default_factory=PrefetchConfig)
    pgp: PgpConfig = Field(default_factory=PgpConfig)
    sanitize: SanitizeConfig = Field(default_factory=SanitizeConfig)
    mutation_queue: MutationQueueConfig = Field(default_factory=MutationQueueConfig)
    poller: PollerConfig = Field(default_factory=PollerConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("account")
    @classmethod
    def validate_account(cls, v: str) -> str:
        """Accounts are used in cache keys; reject empty names and colons."""
        v = v.strip()
        if not v:
            raise ValueError("account cannot be empty")
        if ":" in v:
            raise ValueError("account cannot contain ':' (used as a cache key separator)")
        return v
