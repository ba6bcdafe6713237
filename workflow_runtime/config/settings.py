"""
Environment-aware configuration settings for the workflow runtime.

Supports dev, test, and prod environments with appropriate defaults.
"""

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Supported deployment environments."""

    DEV = "dev"
    TEST = "test"
    PROD = "prod"


class RedisSettings(BaseSettings):
    """Redis connection settings (used for the distributed lock provider)."""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = Field(default="localhost", description="Redis server hostname")
    port: int = Field(default=6379, description="Redis server port")
    db: int = Field(default=0, description="Redis database number")
    password: Optional[str] = Field(default=None, description="Redis password")
    max_connections: int = Field(default=50, description="Maximum connection pool size")
    socket_timeout: float = Field(default=5.0, description="Socket timeout")
    socket_connect_timeout: float = Field(default=5.0, description="Connection timeout")
    lock_prefix: str = Field(default="wf:lock:", description="Key prefix for instance locks")

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
    database: str = Field(default="workflow_runtime", description="Database name")
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

    @property
    def sync_url(self) -> str:
        """Generate synchronous PostgreSQL connection URL for migrations."""
        return (
            f"postgresql://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )


class EngineSettings(BaseSettings):
    """
    Workflow engine execution settings.

    The lock duration bounds how long a crashed engine can keep an instance
    blocked; it should exceed the longest expected run between suspensions.
    """

    model_config = SettingsConfigDict(env_prefix="ENGINE_")

    max_activities_per_execution: int = Field(
        default=1000,
        ge=1,
        description="Activities one path may execute before the instance faults (loop guard)",
    )
    enable_locking: bool = Field(default=True, description="Acquire the per-instance advisory lock")
    lock_duration: float = Field(default=2700.0, gt=0, description="Advisory lock lifetime (seconds)")
    max_persistence_retries: int = Field(default=3, ge=1, description="Attempts to save instance state")
    persistence_retry_delay: float = Field(
        default=0.1,
        ge=0.0,
        description="Initial delay between save attempts (seconds), doubled per attempt",
    )
    holder_prefix: str = Field(default="engine", description="Prefix for the lock holder id")


class DispatchSettings(BaseSettings):
    """Timer and scheduled-start dispatch settings."""

    model_config = SettingsConfigDict(env_prefix="DISPATCH_")

    poll_interval: float = Field(default=5.0, gt=0, description="Seconds between dispatch scans")
    batch_size: int = Field(default=100, ge=1, description="Maximum timers/instances per scan")
    start_scheduled_instances: bool = Field(
        default=True,
        description="Start Pending instances whose scheduled start time has passed",
    )


class RetrySettings(BaseSettings):
    """Default retry policy settings for error handlers."""

    model_config = SettingsConfigDict(env_prefix="RETRY_")

    max_retries: int = Field(default=3, description="Maximum retry attempts")
    initial_delay: float = Field(default=1.0, description="Initial retry delay (seconds)")
    max_delay: float = Field(default=300.0, description="Maximum retry delay (seconds)")
    backoff_multiplier: float = Field(default=2.0, description="Exponential backoff base")


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        case_sensitive=False,  # ENGINE_LOCK_DURATION and engine_lock_duration both work
        extra="ignore",        # Ignore unknown environment variables
    )

    # Application
    app_name: str = Field(default="Workflow Runtime")
    environment: Environment = Field(default=Environment.DEV)
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Sub-settings
    engine: EngineSettings = Field(default_factory=EngineSettings)
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    postgres: PostgresSettings = Field(default_factory=PostgresSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)

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

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.environment == Environment.TEST

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == Environment.PROD


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
