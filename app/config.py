"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys
from decimal import Decimal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    environment: str = "production"  # production, staging, development, test

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    api_title: str = "Relativit API"
    api_version: str = "1.0.0"
    api_description: str = "Session, credential and metered AI proxy service"
    cors_origins: str = "http://localhost:3000"  # Comma-separated

    # Tokens
    jwt_secret: str = ""  # generate with: openssl rand -hex 32
    jwt_algorithm: str = "HS256"
    access_token_ttl_minutes: int = 15
    refresh_token_ttl_days: int = 30
    refresh_token_bytes: int = 64
    refresh_token_rotation: bool = True

    # Credential encryption
    encryption_key: str = ""

    # Verification codes
    verification_code_ttl_minutes: int = 10
    registration_verification_window_minutes: int = 15
    demo_verification_code_enabled: bool = False
    demo_verification_code: str = "677485"

    # Passwords
    min_password_length: int = 8
    min_name_length: int = 2

    # Email (Resend HTTP API)
    resend_api_key: str = ""
    email_from: str = "noreply@relativit.app"
    email_api_url: str = "https://api.resend.com/emails"
    app_url: str = "https://relativit.app"

    # Trial mode - operator-held credential shared by trial users
    trial_api_key: str = ""
    trial_api_provider: str = "anthropic"
    trial_starting_credits: Decimal = Decimal("0.50")
    # Held per call while the provider request is in flight; settled afterwards.
    trial_hold_amount: Decimal = Decimal("0.05")
    trial_reserve_max_attempts: int = 20

    # AI pricing and limits
    price_per_million_tokens: Decimal = Decimal("0.50")
    max_output_tokens: int = 4096
    max_user_message_length: int = 1000
    provider_timeout_seconds: float = 120.0
    anthropic_model: str = "claude-sonnet-4-20250514"
    openai_model: str = "gpt-4o"
    gemini_model: str = "gemini-1.5-flash"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "relativit-api"

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
        This prevents silent failures that only manifest at runtime.
        """
        errors: list[str] = []

        # DATABASE_URL is absolutely required
        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if len(self.jwt_secret) < 32:
            errors.append("JWT_SECRET is required and must be at least 32 characters")

        if not self.encryption_key:
            errors.append("ENCRYPTION_KEY is required but empty or missing")

        # The fixed demo code must never be reachable in a deployed instance
        if self.demo_verification_code_enabled and self.is_production:
            errors.append("DEMO_VERIFICATION_CODE_ENABLED cannot be set when ENVIRONMENT=production")

        if self.trial_api_provider not in ("anthropic", "openai", "gemini"):
            errors.append(
                f"TRIAL_API_PROVIDER must be anthropic, openai or gemini, got: {self.trial_api_provider}"
            )

        if self.trial_hold_amount <= 0:
            errors.append("TRIAL_HOLD_AMOUNT must be positive")

        # If we have errors, fail immediately with clear messaging
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
    def is_production(self) -> bool:
        """True when running a deployed production instance."""
        return self.environment.lower() == "production"

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url

    @property
    def allowed_cors_origins(self) -> list[str]:
        """Get list of allowed CORS origins."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
