"""
Deploy Monitor - Configuration
==============================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from typing import Any, Literal

from pydantic import SecretStr, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "Deploy Monitor"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # ==========================================================================
    # Database
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./deploy_monitor.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    # ==========================================================================
    # Monitoring
    # ==========================================================================
    MONITORING_AUTOSTART: bool = True
    MONITORING_INTERVAL_SECONDS: float = 30.0
    PIPELINE_TIMEOUT_SECONDS: float = 300.0

    # ==========================================================================
    # Storage retention
    # ==========================================================================
    STORAGE_MAX_RECORDS: int = 1000
    STORAGE_CLEANUP_INTERVAL_SECONDS: float = 86400.0

    # ==========================================================================
    # Analytics
    # ==========================================================================
    ANALYTICS_SNAPSHOT_RETENTION: int = 50
    ANALYTICS_STD_DEV_THRESHOLD: float = 2.0
    ANALYTICS_RATIO_MULTIPLIER: float = 1.5
    REPORT_INTERVAL_SECONDS: float = 3600.0

    # ==========================================================================
    # Alerts
    # ==========================================================================
    ALERT_HISTORY_MAX_AGE_DAYS: int = 30
    ALERT_HISTORY_CLEANUP_INTERVAL_SECONDS: float = 86400.0

    # Email channel (SMTP)
    ALERT_EMAIL_ENABLED: bool | None = None
    ALERT_EMAIL_RECIPIENTS: list[str] = []
    ALERT_EMAIL_FROM: str | None = None
    ALERT_SMTP_HOST: str | None = None
    ALERT_SMTP_PORT: int | None = None
    ALERT_SMTP_USERNAME: str | None = None
    ALERT_SMTP_PASSWORD: SecretStr | None = None
    ALERT_SMTP_USE_TLS: bool | None = None

    # Webhook channel
    ALERT_WEBHOOK_ENABLED: bool | None = None
    ALERT_WEBHOOK_URL: str | None = None
    ALERT_WEBHOOK_TIMEOUT_SECONDS: float | None = None
    ALERT_WEBHOOK_VERIFY_SSL: bool | None = None

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    def alert_notification_overrides(self) -> dict[str, Any]:
        """
        Channel settings supplied through the environment.

        Only keys that are actually set are returned, so persisted
        configuration keeps precedence over compiled defaults for the rest.
        """
        email = {
            "enabled": self.ALERT_EMAIL_ENABLED,
            "recipients": self.ALERT_EMAIL_RECIPIENTS or None,
            "from_address": self.ALERT_EMAIL_FROM,
            "smtp_host": self.ALERT_SMTP_HOST,
            "smtp_port": self.ALERT_SMTP_PORT,
            "username": self.ALERT_SMTP_USERNAME,
            "password": self.ALERT_SMTP_PASSWORD.get_secret_value() if self.ALERT_SMTP_PASSWORD else None,
            "use_tls": self.ALERT_SMTP_USE_TLS,
        }
        webhook = {
            "enabled": self.ALERT_WEBHOOK_ENABLED,
            "url": self.ALERT_WEBHOOK_URL,
            "timeout_seconds": self.ALERT_WEBHOOK_TIMEOUT_SECONDS,
            "verify_ssl": self.ALERT_WEBHOOK_VERIFY_SSL,
        }

        overrides: dict[str, Any] = {}
        for channel, values in (("email", email), ("webhook", webhook)):
            present = {key: value for key, value in values.items() if value is not None}
            if present:
                overrides[channel] = present
        return overrides


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
