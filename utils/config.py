"""
Configuration Utility - Environment Variables Management

Centralized configuration loading from environment variables and .env files
using pydantic-settings. Type-safe access with validation; a missing or invalid
required value fails fast at startup.

Usage:
    from utils.config import get_settings

    settings = get_settings()
    stream = settings.payment_stream
    pg_host = settings.PG_HOST
"""

import socket
from functools import lru_cache

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Backoff cap shared by the store write and dead-letter publish retries
RETRY_WAIT_MAX_SECONDS = 5
# Attempts RedisPublisher.publish makes before giving up
PUBLISH_MAX_ATTEMPTS = 3


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Subscription Configuration
    PROJECT_ID: str = Field(..., min_length=1)
    PAYMENT_SUBSCRIPTION: str = Field(..., min_length=1)
    PAYMENT_TOPIC: str = Field(default="payments", min_length=1)
    CONSUMER_NAME: str = Field(default_factory=socket.gethostname, min_length=1)

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")
    REDIS_MAX_CONNECTIONS: int = Field(default=10, gt=0)
    REDIS_SOCKET_TIMEOUT: float = Field(default=5.0, gt=0)
    REDIS_CONNECT_TIMEOUT: float = Field(default=5.0, gt=0)

    # Receive Loop Configuration
    RECEIVE_BATCH_SIZE: int = Field(default=10, gt=0)
    RECEIVE_BLOCK_MS: int = Field(default=1000, gt=0)
    RECEIVE_MAX_ATTEMPTS: int = Field(default=5, gt=0)
    REDELIVERY_DELAY_MS: int = Field(default=90000, gt=0)
    MAX_IN_FLIGHT: int = Field(default=10, gt=0)
    MAX_DELIVERY_ATTEMPTS: int = Field(default=5, gt=0)
    SHUTDOWN_GRACE_SECONDS: float = Field(default=10.0, ge=0)

    # Database Configuration
    PG_HOST: str = Field(..., min_length=1)
    PG_PORT: int = Field(default=5432, gt=0, lt=65536)
    PG_USER: str = Field(..., min_length=1)
    PG_PASSWORD: SecretStr
    PG_DATABASE: str = Field(..., min_length=1)
    PG_SSLMODE: str = Field(default="disable")
    PG_CONNECT_TIMEOUT_SECONDS: int = Field(default=3, gt=0)
    PG_POOL_MIN: int = Field(default=1, gt=0)
    PG_POOL_MAX: int = Field(default=10, gt=0)

    # Persistence Configuration
    WRITE_TIMEOUT_SECONDS: float = Field(default=5.0, gt=0)
    WRITE_MAX_ATTEMPTS: int = Field(default=3, gt=0)
    STORE_FAILURE_THRESHOLD: int = Field(default=100, ge=0)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")

    # Application Metadata
    ENVIRONMENT: str = Field(default="production")
    APP_NAME: str = Field(default="payment-events-consumer")
    APP_VERSION: str = Field(default="0.1.0")

    @field_validator("LOG_FORMAT")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Only json and text renderers exist."""
        v = v.lower()
        if v not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be 'json' or 'text'")
        return v

    @model_validator(mode="after")
    def validate_pool_bounds(self) -> "Settings":
        if self.PG_POOL_MAX < self.PG_POOL_MIN:
            raise ValueError("PG_POOL_MAX must be greater than or equal to PG_POOL_MIN")
        return self

    @model_validator(mode="after")
    def validate_receive_block(self) -> "Settings":
        """A blocking read must return before the Redis socket times out."""
        if self.RECEIVE_BLOCK_MS / 1000 >= self.REDIS_SOCKET_TIMEOUT:
            raise ValueError("RECEIVE_BLOCK_MS must be shorter than REDIS_SOCKET_TIMEOUT")
        return self

    @model_validator(mode="after")
    def validate_redelivery_delay(self) -> "Settings":
        """
        Pending entries idle for REDELIVERY_DELAY_MS are reclaimed, which counts
        as another delivery. A message still being handled must never get there.
        """
        if self.REDELIVERY_DELAY_MS / 1000 <= self.handling_budget_seconds:
            raise ValueError(
                f"REDELIVERY_DELAY_MS must exceed the worst-case handling time of "
                f"{self.handling_budget_seconds:.0f}s (store writes plus dead-letter publish)"
            )
        return self

    @property
    def handling_budget_seconds(self) -> float:
        """Longest a single delivery can take: every write attempt, then the dead-letter publish."""
        write_attempts = self.WRITE_MAX_ATTEMPTS * (self.WRITE_TIMEOUT_SECONDS + self.PG_CONNECT_TIMEOUT_SECONDS)
        write_backoff = (self.WRITE_MAX_ATTEMPTS - 1) * RETRY_WAIT_MAX_SECONDS
        dead_letter = PUBLISH_MAX_ATTEMPTS * self.REDIS_SOCKET_TIMEOUT + (PUBLISH_MAX_ATTEMPTS - 1) * RETRY_WAIT_MAX_SECONDS
        return write_attempts + write_backoff + dead_letter

    @property
    def payment_stream(self) -> str:
        """Stream key of the payment topic."""
        return f"{self.PROJECT_ID}.{self.PAYMENT_TOPIC}"

    @property
    def dead_letter_stream(self) -> str:
        """Stream key receiving messages that exhausted their delivery attempts."""
        return f"{self.payment_stream}.dlq"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Singleton Settings instance

    Raises:
        pydantic.ValidationError: If a required variable is missing or invalid
    """
    return Settings()
