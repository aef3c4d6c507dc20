"""
Application configuration using pydantic-settings.
Loads from environment variables / .env file.
"""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "homezy"
    app_env: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    secret_key: str = "dev-only-change-me"

    # API Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Database (asyncpg in production, aiosqlite locally)
    database_url: str = "sqlite+aiosqlite:///./homezy.db"

    # Redis (booking locks + celery broker)
    redis_url: str = "redis://localhost:6379/0"
    booking_lock_ttl_seconds: int = 90
    redis_timeout_seconds: float = 2.0

    # Fees
    platform_fee_rate: float = 0.05
    processing_fee_rate: float = 0.029
    processing_fee_fixed: float = 0.30
    default_currency: str = "USD"

    # Booking policy
    cancellation_cutoff_hours: int = 24
    reschedule_cutoff_hours: int = 48

    # Payment gateway
    gateway_mode: Literal["mock", "http"] = "mock"
    gateway_base_url: str = ""
    gateway_api_key: str = ""
    gateway_timeout_seconds: float = 15.0
    mock_gateway_success_rate: float = 0.9

    # Reconciliation
    stale_processing_minutes: int = 30

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
