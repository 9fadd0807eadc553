"""Application configuration using pydantic-settings."""

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Supabase API Keys
    supabase_url: str
    supabase_service_role_key: str  # Engine operations (bypasses RLS)
    supabase_publishable_key: str  # Anon/publishable key for user-scoped requests

    # Plaid
    plaid_client_id: str
    plaid_secret: str
    plaid_env: str = "sandbox"  # sandbox, production
    plaid_webhook_url: str | None = None  # Registered on link tokens
    plaid_webhook_secret: str | None = None  # HMAC secret for inbound webhooks

    # App
    app_name: str = "Budget Planner"
    app_env: str = "development"
    debug: bool = True

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # API
    api_v1_prefix: str = "/app/v1"

    # Encryption
    encryption_key: str  # Fernet key for encrypting Plaid access tokens

    # Redis (job store, connection locks, webhook dedup)
    redis_url: str = "redis://localhost:6379/0"
    queue_prefix: str = "budgetplanner"

    # Scheduled trigger
    cron_secret: str
    enable_cron_jobs: bool = True  # Run the periodic stale-sync task in-process
    cron_interval_seconds: int = 15 * 60
    sync_stale_after_minutes: int = 10

    # Workers
    run_workers: bool = True  # Start worker threads inside the API process
    worker_poll_interval_seconds: float = 1.0
    reaper_interval_seconds: float = 15.0
    sync_worker_concurrency: int = 5
    webhook_worker_concurrency: int = 10
    notification_worker_concurrency: int = 2
    sync_rate_limit_max: int = 10  # Sync jobs claimed per window, 0 disables
    sync_rate_limit_window_seconds: float = 60.0

    # Retry / lease policy
    job_max_attempts: int = 3
    job_backoff_base_seconds: float = 2.0
    job_backoff_max_seconds: float = 300.0
    sync_lease_seconds: int = 300  # Also the per-connection lock timeout
    webhook_lease_seconds: int = 60
    notification_lease_seconds: int = 60
    busy_retry_delay_seconds: float = 5.0
    completed_jobs_retained: int = 100

    # Webhooks
    webhook_dedup_ttl_seconds: int = 60 * 60 * 24

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
