from __future__ import annotations
import os
from pydantic import BaseModel

class Settings(BaseModel):
    environment: str = os.getenv("ENVIRONMENT", "dev")
    app_name: str = os.getenv("APP_NAME", "arena-api")
    app_display_name: str = os.getenv("APP_DISPLAY_NAME", "Arena")
    app_version: str = os.getenv("APP_VERSION", "0.1.0")
    git_sha: str = os.getenv("GIT_SHA", "dev")
    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    cors_origins: list[str] = os.getenv("CORS_ORIGINS", "*").split(",")
    database_url: str = os.getenv("DATABASE_URL", "postgresql+asyncpg://postgres:postgres@db:5432/arena_dev")
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    s3_endpoint: str = os.getenv("S3_ENDPOINT", "http://minio:9000")
    s3_access_key: str = os.getenv("S3_ACCESS_KEY", "minioadmin")
    s3_secret_key: str = os.getenv("S3_SECRET_KEY", "minioadmin")
    s3_bucket_uploads: str = os.getenv("S3_BUCKET_UPLOADS", "arena-screenshots-dev")
    media_public_base_url: str = os.getenv("MEDIA_PUBLIC_BASE_URL", "http://minio:9000/arena-screenshots-dev")

    # Stripe configuration
    stripe_secret_key: str = os.getenv("STRIPE_SECRET_KEY", "")
    stripe_webhook_secret: str = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    token_price_usd_cents: int = int(os.getenv("TOKEN_PRICE_USD_CENTS", "1"))
    max_deposit_tokens_day: int = int(os.getenv("MAX_DEPOSIT_TOKENS_DAY", "100000"))

    # Match lifecycle
    registration_buffer_minutes: int = int(os.getenv("REGISTRATION_BUFFER_MINUTES", "30"))
    reveal_buffer_minutes: int = int(os.getenv("REVEAL_BUFFER_MINUTES", "15"))
    leave_cutoff_minutes: int = int(os.getenv("LEAVE_CUTOFF_MINUTES", "60"))
    leave_refund_percent: int = int(os.getenv("LEAVE_REFUND_PERCENT", "90"))

    # Challenges / escrow
    challenge_creation_fee: int = int(os.getenv("CHALLENGE_CREATION_FEE", "0"))
    max_active_challenges: int = int(os.getenv("MAX_ACTIVE_CHALLENGES", "3"))

    # Sweeper
    sweeper_enabled: bool = os.getenv("SWEEPER_ENABLED", "1") == "1"
    sweeper_interval_seconds: int = int(os.getenv("SWEEPER_INTERVAL_SECONDS", "300"))

settings = Settings()
