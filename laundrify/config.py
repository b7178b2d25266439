"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is malformed.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "INFO"

    # Database
    database_url: str = "postgresql+asyncpg://localhost:5432/laundrify"
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis (worker heartbeats + readiness check)
    redis_url: str = "redis://localhost:6379/0"

    # Sentry
    sentry_dsn: str = ""

    # Frontend (referral share links)
    frontend_url: str = "http://localhost:10000"
    allowed_origins: str = ""  # Comma-separated CORS origins

    # Order ids
    order_id_max_attempts: int = 3
    order_id_retry_backoff_seconds: float = 0.1

    # Pricing
    default_handling_fee: float = 9.0

    # Referral program
    referral_discount_percentage: int = 50
    referral_expiry_days: int = 30
    referral_sweep_enabled: bool = True
    referral_sweep_interval_seconds: int = 60 * 60

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
