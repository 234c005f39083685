"""
Application Configuration - Pydantic Settings for type-safe config.

FAIL FAST - Critical config is validated at startup.
"""

import sys
from datetime import tzinfo
from zoneinfo import ZoneInfo

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from wispr.exceptions import ConfigurationError

_SUPPORTED_DATABASE_SCHEMES = ("postgresql", "postgres", "sqlite")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 10
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Wispr Hints API"
    api_version: str = "0.1.0"
    api_description: str = "Hint credits, QPay invoicing and payment reconciliation for Wispr"

    # Auth collaborator: HS256 bearer tokens whose `sub` is the account id
    auth_jwt_secret: str = ""
    auth_jwt_audience: str | None = None

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability
    metrics_enabled: bool = True
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "wispr-hints-api"

    # Hint ledger
    daily_hint_quota: int = 5
    ledger_timezone: str = ""  # IANA name; empty = server-local timezone
    ledger_max_transaction_attempts: int = 4

    # Hint generation (OpenAI)
    openai_api_key: str = ""
    hint_model: str = "gpt-4o-mini"
    hint_language: str = "Mongolian"
    hint_timeout_seconds: float = 20.0

    # Payment gateway - QPay
    qpay_base_url: str = "https://merchant.qpay.mn"
    qpay_username: str = ""
    qpay_password: str = ""
    qpay_invoice_code: str = ""
    qpay_webhook_secret: str = ""
    qpay_timeout_seconds: float = 15.0
    qpay_token_refresh_margin_seconds: int = 60

    # Public base URL used to build gateway callback URLs
    app_base_url: str = ""

    # Optional push relay notified after a payment is credited (empty = disabled)
    push_relay_url: str = ""
    push_timeout_seconds: float = 5.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(_SUPPORTED_DATABASE_SCHEMES):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL or SQLite URL, got: {self.database_url[:20]}..."
            )

        if self.daily_hint_quota <= 0:
            errors.append(f"DAILY_HINT_QUOTA must be positive, got: {self.daily_hint_quota}")

        if self.ledger_max_transaction_attempts < 1:
            errors.append("LEDGER_MAX_TRANSACTION_ATTEMPTS must be at least 1")

        if self.ledger_timezone:
            try:
                ZoneInfo(self.ledger_timezone)
            except (KeyError, ValueError):
                errors.append(f"LEDGER_TIMEZONE is not a known timezone: {self.ledger_timezone}")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def ledger_tz(self) -> tzinfo | None:
        """Timezone used for the daily reset boundary (None = server-local)."""
        return ZoneInfo(self.ledger_timezone) if self.ledger_timezone else None

    @property
    def webhook_signature_required(self) -> bool:
        return bool(self.qpay_webhook_secret)


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
