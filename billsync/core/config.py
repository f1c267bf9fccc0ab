from pydantic_settings import BaseSettings
from typing import Optional
import os


class Settings(BaseSettings):
    # Environment configuration
    environment: str = os.getenv("ENVIRONMENT", "development")

    # Database configuration (PostgreSQL via asyncpg)
    database_url: Optional[str] = os.getenv("DATABASE_URL", "")
    database_echo: bool = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Frontend URL (for CORS and checkout redirects)
    frontend_url: str = os.getenv("FRONTEND_URL", "http://localhost:5173")

    # Stripe configuration
    stripe_secret: Optional[str] = os.getenv("STRIPE_SECRET", "")
    stripe_webhook_secret: Optional[str] = os.getenv("STRIPE_WEBHOOK_SECRET", "")

    # Checkout metadata lifetime
    checkout_metadata_ttl_minutes: int = int(os.getenv("CHECKOUT_METADATA_TTL_MINUTES", "30"))

    # Scheduled plan change sweeper
    scheduler_enabled: bool = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"
    scheduled_change_interval_seconds: int = int(os.getenv("SCHEDULED_CHANGE_INTERVAL_SECONDS", "3600"))
    scheduled_change_batch_size: int = int(os.getenv("SCHEDULED_CHANGE_BATCH_SIZE", "50"))

    # Datastore retry and locking
    db_retry_max_attempts: int = int(os.getenv("DB_RETRY_MAX_ATTEMPTS", "3"))
    db_retry_base_delay_ms: int = int(os.getenv("DB_RETRY_BASE_DELAY_MS", "100"))
    db_retry_max_delay_ms: int = int(os.getenv("DB_RETRY_MAX_DELAY_MS", "2000"))
    advisory_lock_timeout_ms: int = int(os.getenv("ADVISORY_LOCK_TIMEOUT_MS", "5000"))
    advisory_lock_ttl_seconds: int = int(os.getenv("ADVISORY_LOCK_TTL_SECONDS", "300"))

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
