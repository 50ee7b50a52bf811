"""Application settings loaded from environment variables via Pydantic."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class AppSettings(BaseSettings):
    """Central configuration for the cost anomaly pipeline."""

    model_config = {"env_prefix": "APP_", "case_sensitive": False}

    # Database (empty URL selects the in-memory adapters)
    database_url: str = ""
    db_pool_size: int = 10
    db_max_overflow: int = 5
    db_upsert_chunk_size: int = 500
    db_migrate_on_startup: bool = True

    # Credentials
    credentials_encryption_key: str = ""
    auth_secret: str = ""

    # Scheduler entry points
    scheduler_secret: str = ""

    # Billing provider
    cost_explorer_region: str = "us-east-1"
    provider_connect_timeout: float = 5.0
    provider_read_timeout: float = 15.0

    # Sync
    sync_cooldown_seconds: int = 120
    sync_default_days: int = 30
    top_dimensions: int = 12

    # Notifications
    notification_min_severity: str = "warning"
    reservation_stale_minutes: int = 15
    channel_timeout_seconds: float = 10.0
    app_base_url: str = "http://localhost:3000"

    # Email (Resend)
    resend_api_key: str = ""
    resend_from: str = ""
    resend_api_url: str = "https://api.resend.com/emails"

    # Instant message (Twilio WhatsApp)
    whatsapp_provider: str = "twilio"
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_whatsapp_from: str = ""
    twilio_api_base: str = "https://api.twilio.com"

    # Batch jobs
    auto_sync_lock_ttl_minutes: int = 15
    weekly_report_lock_ttl_minutes: int = 20
    auto_sync_max_users: int = 200
    auto_sync_min_hours: int = 6
    auto_sync_concurrency: int = 3
    weekly_report_max_users: int = 300
    weekly_report_concurrency: int = 3

    # Celery
    celery_broker_url: str = "redis://localhost:6379/1"
    celery_result_backend: str = "redis://localhost:6379/2"

    # Logging
    log_level: str = "INFO"

    # CORS
    cors_origins: str = "*"


def get_settings() -> AppSettings:
    """Return the application settings singleton."""
    return AppSettings()
