"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with sensible defaults.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from mailqueue.constants import MailTransportKind, MissedTickPolicy


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite+aiosqlite:///./mailqueue.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Queue
    queue_max_attempts: int = 3
    queue_backoff_base_seconds: float = 5.0
    queue_backoff_max_seconds: float = 600.0
    queue_backoff_jitter: float = 0.1

    # Worker Configuration
    worker_id: str | None = None
    worker_concurrency: int = 1
    worker_lease_duration_seconds: int = 30
    worker_poll_interval_seconds: float = 1.0
    worker_heartbeat_interval_seconds: float = 10.0

    # Scheduler Configuration
    scheduler_name: str = "email"
    scheduler_interval_seconds: float = 60.0
    scheduler_missed_ticks: MissedTickPolicy = MissedTickPolicy.SKIP
    scheduler_max_backfill: int = 10
    scheduler_email_to: str = "admin@example.com"
    scheduler_email_subject: str = "Scheduled report"
    scheduler_email_title: str = "Scheduled report"
    scheduler_email_body: str = "This message was sent by the mailqueue scheduler."

    # Mail transport
    mail_transport: MailTransportKind = MailTransportKind.LOG
    mail_from: str = "noreply@example.com"
    mail_api_url: str = "https://api.resend.com/emails"
    mail_api_key: str | None = None
    mail_timeout_seconds: float = 10.0

    # Observability
    otel_exporter_otlp_endpoint: str | None = None
    otel_service_name: str = "mailqueue"
    prometheus_port: int | None = None
    log_level: str = "INFO"
    log_format: str = "json"  # json or console


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
