"""Application configuration management."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Application Settings
    # -------------------------------------------------------------------------
    app_name: str = "booking-sync"
    app_env: Literal["development", "staging", "production", "test"] = "development"
    debug: bool = False
    log_level: str = "INFO"

    # -------------------------------------------------------------------------
    # API Settings
    # -------------------------------------------------------------------------
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_workers: int = 4
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    # -------------------------------------------------------------------------
    # PostgreSQL Database
    # -------------------------------------------------------------------------
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "booking"
    postgres_password: str = ""
    postgres_db: str = "booking_sync"

    # Full SQLAlchemy URL, takes precedence over the postgres_* parts
    database_dsn: str = ""

    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_recycle: int = 1800

    @property
    def database_url(self) -> str:
        """Construct async database connection URL."""
        if self.database_dsn:
            return self.database_dsn
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def database_url_sync(self) -> str:
        """Construct synchronous database URL (for Alembic)."""
        if self.database_dsn:
            return (
                self.database_dsn.replace("+asyncpg", "")
                .replace("+aiosqlite", "")
            )
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # -------------------------------------------------------------------------
    # Redis (Celery broker)
    # -------------------------------------------------------------------------
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str = ""
    redis_db: int = 0

    @property
    def redis_url(self) -> str:
        """Construct Redis connection URL."""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    # -------------------------------------------------------------------------
    # Celery
    # -------------------------------------------------------------------------
    celery_broker_url: str = ""
    celery_result_backend: str = ""

    @property
    def celery_broker(self) -> str:
        """Get Celery broker URL, defaulting to Redis URL."""
        return self.celery_broker_url or self.redis_url

    @property
    def celery_backend(self) -> str:
        """Get Celery result backend URL, defaulting to Redis URL."""
        return self.celery_result_backend or self.redis_url

    # -------------------------------------------------------------------------
    # Booking Slots
    # -------------------------------------------------------------------------
    session_duration: int = 60  # minutes
    buffer_time: int = 15  # minutes
    timezone: str = "Asia/Manila"

    # -------------------------------------------------------------------------
    # Sync Engine
    # -------------------------------------------------------------------------
    # In-process scheduler inside the API. Celery beat is the default trigger;
    # enable this only for deployments without a beat process.
    sync_enabled: bool = False
    batch_size: int = 50
    sync_interval: int = 300  # seconds
    max_sync_duration: int = 600  # seconds
    sync_overlap_minutes: int = 5
    sync_lookback_hours: int = 24
    delay_between_orders: float = 1.0  # seconds
    order_lock_ttl: int = 300  # seconds

    # -------------------------------------------------------------------------
    # Retry Queue
    # -------------------------------------------------------------------------
    max_retries: int = 5
    retry_base_delay: int = 60  # seconds
    retry_max_delay: int = 24 * 60 * 60  # seconds
    retry_jitter_ratio: float = 0.3
    retry_batch_size: int = 10

    # -------------------------------------------------------------------------
    # External Collaborators ("package.module:callable", called with Settings)
    # -------------------------------------------------------------------------
    order_source_factory: str = ""
    calendar_backend_factory: str = ""

    @property
    def slot_minutes(self) -> int:
        """Length of a bookable slot including the trailing buffer."""
        return self.session_duration + self.buffer_time


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
