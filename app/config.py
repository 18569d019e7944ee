"""
Application configuration using pydantic-settings.
Loads from environment variables / .env file.
"""

from functools import lru_cache
from typing import List, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "foodbridge"
    app_env: Literal["development", "staging", "production"] = "development"
    debug: bool = False

    # API Server
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: List[str] = []

    # Postgres
    database_url: str = ""
    database_ssl: bool = False

    # Redis (Celery broker + notification fan-out)
    redis_url: str = "redis://localhost:6379/0"
    notification_channel: str = "foodbridge:donations"
    notification_timeout_seconds: float = 2.0

    # Lifecycle
    # False restricts assignment to donations a recipient has already requested
    allow_assign_without_request: bool = True

    # OTP handshake
    otp_ttl_seconds: int = 300

    # Expiry sweep
    expiry_sweep_minutes: int = 5

    # SMTP (OTP email)
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from_email: str = ""
    smtp_use_tls: bool = True

    # Admin
    admin_api_key: str = ""

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
