"""
Configuration management using Pydantic Settings.

All engine and service settings are loaded from environment variables
(or a local .env file) and validated at startup.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BALANCE_POLICIES = ("trusted", "require_settlement")


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    Use .env file for local development.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==============================================================================
    # APPLICATION SETTINGS
    # ==============================================================================
    app_name: str = Field(default="Appointment Lifecycle Engine")
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # ==============================================================================
    # SERVER CONFIGURATION
    # ==============================================================================
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=9847)
    cors_origins: str = Field(default="http://localhost:3000,http://localhost:8000")
    rate_limit: str = Field(default="60/minute")

    # ==============================================================================
    # SECURITY & AUTHENTICATION
    # ==============================================================================
    dashboard_username: str = Field(default="admin")
    dashboard_password: SecretStr = Field(default="changeme")

    # ==============================================================================
    # AUDIT
    # ==============================================================================
    enable_audit_logging: bool = Field(default=True)
    audit_log_file: str = Field(default="audit.log")
    audit_log_rotation_mb: int = Field(default=10)

    # ==============================================================================
    # STATUS ENGINE
    # ==============================================================================
    balance_payment_policy: str = Field(default="trusted")

    # ==============================================================================
    # MONITORING & ALERTING
    # ==============================================================================
    metrics_retention_hours: int = Field(default=24)
    latency_window_minutes: int = Field(default=60)
    metrics_compaction_interval_seconds: int = Field(default=300)
    alert_check_interval_seconds: int = Field(default=300)
    error_rate_alert_threshold_percent: float = Field(default=5.0)
    low_volume_threshold: int = Field(default=5)
    latency_p95_alert_ms: float = Field(default=2000.0)
    alert_webhook_url: Optional[str] = Field(default=None)

    @field_validator("balance_payment_policy")
    @classmethod
    def validate_balance_policy(cls, v):
        """Validate the balance payment policy name."""
        value = v.strip().lower()
        if value not in BALANCE_POLICIES:
            raise ValueError(
                f"balance_payment_policy must be one of {BALANCE_POLICIES}, got {v}"
            )
        return value

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Normalise log level names."""
        level = v.strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level {v}")
        return level

    def get_cors_origins_list(self) -> List[str]:
        """Get CORS origins as a list."""
        return [
            origin.strip() for origin in self.cors_origins.split(",") if origin.strip()
        ]

    def get_sanitized_dict(self) -> dict:
        """
        Get settings as dictionary with sensitive values masked.
        Useful for logging and debugging.
        """
        data = self.model_dump()

        data["dashboard_password"] = "***"
        if data.get("alert_webhook_url"):
            url = str(data["alert_webhook_url"])
            data["alert_webhook_url"] = f"{url[:12]}..." if len(url) > 12 else "***"

        return data

    def validate_for_startup(self) -> List[str]:
        """
        Validate settings for application startup.

        Returns:
            List of warning messages (empty if everything is OK)
        """
        warnings = []

        password_value = self.dashboard_password.get_secret_value()
        if password_value in ["changeme", "admin", "password", "123456", ""]:
            warnings.append(
                "SECURITY: Dashboard password is insecure - Use a strong password"
            )

        if self.debug and self.environment == "production":
            warnings.append("SECURITY: Debug mode enabled in production")

        if not self.alert_webhook_url:
            warnings.append(
                "Alert webhook not configured - alerts will only be logged"
            )

        if self.balance_payment_policy == "trusted" and self.environment == "production":
            warnings.append(
                "Balance payments are trusted without settlement confirmation"
            )

        if self.alert_check_interval_seconds <= 0:
            warnings.append("Alert checks disabled (interval <= 0)")

        if self.latency_window_minutes > self.metrics_retention_hours * 60:
            warnings.append(
                "Latency window is longer than metrics retention - percentiles will be truncated"
            )

        return warnings


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    The instance is cached for the lifetime of the process; tests build
    their own Settings objects instead.
    """
    return Settings()


__all__ = ["Settings", "get_settings", "BALANCE_POLICIES"]
