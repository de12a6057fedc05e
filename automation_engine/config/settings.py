"""
Environment-aware configuration settings for the automation engine.

Supports dev, test, and prod environments with appropriate defaults.
"""

from enum import Enum
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Supported deployment environments."""

    DEV = "dev"
    TEST = "test"
    PROD = "prod"


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = Field(default="localhost", description="Redis server hostname")
    port: int = Field(default=6379, description="Redis server port")
    db: int = Field(default=0, description="Redis database number")
    password: Optional[str] = Field(default=None, description="Redis password")
    max_connections: int = Field(default=50, description="Maximum connection pool size")
    socket_timeout: float = Field(default=10.0, description="Socket timeout (must be > stream_block_ms/1000 + 3)")
    socket_connect_timeout: float = Field(default=5.0, description="Connection timeout")
    stream_block_ms: int = Field(default=5000, description="XREADGROUP block time in ms (must be < socket_timeout)")
    stream_max_length: int = Field(
        default=100000,
        description="Approximate maximum stream length kept on XADD",
    )

    @property
    def url(self) -> str:
        """Generate Redis connection URL."""
        auth = f":{self.password}@" if self.password else ""
        return f"redis://{auth}{self.host}:{self.port}/{self.db}"


class PostgresSettings(BaseSettings):
    """PostgreSQL connection settings."""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = Field(default="localhost", description="PostgreSQL server hostname")
    port: int = Field(default=5432, description="PostgreSQL server port")
    database: str = Field(default="automation_engine", description="Database name")
    user: str = Field(default="postgres", description="Database user")
    password: str = Field(default="postgres", description="Database password")
    pool_size: int = Field(default=10, description="Connection pool size")
    max_overflow: int = Field(default=20, description="Max overflow connections")
    pool_timeout: float = Field(default=10.0, description="Pool timeout in seconds (fail fast)")

    @property
    def url(self) -> str:
        """Generate PostgreSQL connection URL."""
        return (
            f"postgresql+asyncpg://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )


class SchedulerSettings(BaseSettings):
    """Resumption poller settings."""

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_")

    interval: float = Field(default=60.0, description="Seconds between scheduler ticks")
    batch_size: int = Field(default=100, ge=1, description="Executions fetched per page")
    concurrency: int = Field(default=10, ge=1, description="Executions advanced in parallel")
    stall_timeout: float = Field(
        default=300.0,
        description="RUNNING executions untouched this long are re-driven (seconds)",
    )


class EngineSettings(BaseSettings):
    """Execution engine settings."""

    model_config = SettingsConfigDict(env_prefix="ENGINE_")

    max_conflict_retries: int = Field(
        default=5,
        ge=1,
        description="Re-fetch attempts after a version conflict",
    )
    claim_timeout: float = Field(
        default=300.0,
        description="Age after which an in-flight effect claim is considered abandoned (seconds)",
    )


class RetrySettings(BaseSettings):
    """Default retry policy for external effects."""

    model_config = SettingsConfigDict(env_prefix="RETRY_")

    base_delay: float = Field(default=30.0, description="Delay before the second attempt (seconds)")
    factor: float = Field(default=2.0, description="Exponential backoff factor")
    max_attempts: int = Field(default=5, description="Attempts before the execution fails")
    max_delay: float = Field(default=3600.0, description="Maximum backoff delay (seconds)")


class EmailSettings(BaseSettings):
    """Email delivery settings (Resend-compatible HTTP API)."""

    model_config = SettingsConfigDict(env_prefix="EMAIL_")

    api_url: str = Field(default="https://api.resend.com/emails", description="Send endpoint")
    api_key: Optional[str] = Field(default=None, description="API key; delivery is disabled without it")
    sender: Optional[str] = Field(default=None, description="From address, e.g. 'News <news@example.com>'")
    timeout: float = Field(default=15.0, description="HTTP timeout (seconds)")

    @property
    def enabled(self) -> bool:
        """Delivery only happens when both key and sender are configured."""
        return bool(self.api_key and self.sender)


class PlatformSettings(BaseSettings):
    """Platform API used for subscriber lookups and tag mutations."""

    model_config = SettingsConfigDict(env_prefix="PLATFORM_")

    base_url: str = Field(default="http://localhost:3000/api/internal", description="Platform API base URL")
    api_key: Optional[str] = Field(default=None, description="Service token for the platform API")
    timeout: float = Field(default=10.0, description="HTTP timeout (seconds)")


class WorkerSettings(BaseSettings):
    """Event consumer settings."""

    model_config = SettingsConfigDict(env_prefix="WORKER_")

    event_batch_size: int = Field(default=10, ge=1, description="Events read per XREADGROUP call")
    stale_claim_interval: float = Field(default=30.0, description="How often to check for stale events (seconds)")
    stale_event_idle: float = Field(default=120.0, description="Events pending longer than this are claimed (seconds)")
    run_scheduler: bool = Field(default=True, description="Run the resumption scheduler in this worker")


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Subscriber Automation Engine")
    environment: Environment = Field(default=Environment.DEV)
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    api_host: str = Field(default="0.0.0.0", description="Bind address for the API server")
    api_port: int = Field(default=8000, description="Port for the API server")
    store_backend: Literal["postgres", "memory"] = Field(default="postgres")
    event_transport: Literal["redis", "inline"] = Field(
        default="redis",
        description="inline processes API events in-process instead of publishing to Redis",
    )

    # Sub-settings
    redis: RedisSettings = Field(default_factory=RedisSettings)
    postgres: PostgresSettings = Field(default_factory=PostgresSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    email: EmailSettings = Field(default_factory=EmailSettings)
    platform: PlatformSettings = Field(default_factory=PlatformSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: str | Environment) -> Environment:
        """Validate and convert environment string to enum."""
        if isinstance(v, Environment):
            return v
        return Environment(v.lower())

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == Environment.DEV


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
