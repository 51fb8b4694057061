"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Optional

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

    # Service Configuration
    service_host: str = Field(default="0.0.0.0", description="Service host")
    service_port: int = Field(default=8000, description="Service port")
    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(
        default=True, description="Render logs as JSON (false = console renderer)"
    )
    admin_token: Optional[str] = Field(
        default=None, description="Token required by /admin routes (X-Admin-Token)"
    )

    # Redis Connection
    redis_host: str = Field(default="localhost", description="Redis host")
    redis_port: int = Field(default=6379, description="Redis port")
    redis_password: Optional[str] = Field(default=None, description="Redis password")
    redis_db: int = Field(default=0, ge=0, description="Redis database index")
    redis_max_retries_per_request: int = Field(
        default=3,
        ge=0,
        description="Retries for a single Redis command on connection errors",
    )
    redis_enable_ready_check: bool = Field(
        default=False,
        description="Wait until Redis has finished loading its dataset before ready",
    )
    redis_reconnect_step_ms: int = Field(
        default=1000,
        gt=0,
        description="Reconnect delay grows by this step per consecutive failure",
    )
    redis_reconnect_backoff_cap_ms: int = Field(
        default=30000,
        gt=0,
        description="Upper bound for the reconnect delay",
    )
    redis_socket_connect_timeout_s: float = Field(
        default=5.0, gt=0, description="Redis socket connect timeout"
    )

    # Webhook Queue
    webhook_queue_name: str = Field(
        default="paymongo-webhooks", description="Queue name (part of the Redis key prefix)"
    )
    webhook_queue_prefix: str = Field(
        default="bull", description="Redis key namespace for all queues"
    )
    webhook_job_attempts: int = Field(
        default=3, ge=1, description="Total processing attempts per job"
    )
    webhook_backoff_delay_ms: int = Field(
        default=5000,
        ge=0,
        description="First retry delay; doubles on every further attempt",
    )
    webhook_remove_on_complete: int = Field(
        default=100, ge=0, description="Completed jobs kept for debugging"
    )
    webhook_remove_on_fail: int = Field(
        default=500, ge=0, description="Failed jobs kept for analysis"
    )
    webhook_stalled_interval_ms: int = Field(
        default=30000, gt=0, description="How often active jobs are checked for stalls"
    )
    webhook_max_stalled_count: int = Field(
        default=2, ge=0, description="Times a stalled job is restarted before failing"
    )
    webhook_lock_duration_ms: int = Field(
        default=30000,
        gt=0,
        description="Active job lock lifetime; renewed at half this interval",
    )
    webhook_concurrency: int = Field(
        default=1, ge=1, description="Jobs processed concurrently per process"
    )
    webhook_poll_interval_s: float = Field(
        default=1.0, gt=0, description="Idle sleep between claim attempts"
    )
    webhook_shutdown_timeout_s: float = Field(
        default=30.0, ge=0, description="Max wait for in-flight jobs on shutdown"
    )
    webhook_processor: Optional[str] = Field(
        default=None,
        description="Import path of the job processor, e.g. 'payments.webhooks:processor'",
    )

    # Sentry Observability
    sentry_dsn: Optional[str] = Field(
        default=None,
        description="Sentry DSN for error tracking and performance monitoring"
    )
    sentry_environment: str = Field(
        default="development",
        description="Sentry environment tag (development, staging, production)"
    )
    sentry_traces_sample_rate: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Sentry performance tracing sample rate (0.0-1.0)"
    )

    @field_validator("redis_password", "webhook_processor", "admin_token", mode="before")
    @classmethod
    def empty_to_none(cls, v: Optional[str]) -> Optional[str]:
        """Treat blank environment values as unset."""
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def redis_url(self) -> str:
        """Get the Redis URL (password masked)."""
        auth = ":****@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"

    @property
    def queue_key_prefix(self) -> str:
        """Get the Redis key prefix for the webhook queue."""
        return f"{self.webhook_queue_prefix}:{self.webhook_queue_name}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
