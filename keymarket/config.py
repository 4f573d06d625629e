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

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # Deployment
    environment: str = "development"  # development, staging, production

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "KeyMarket Order Engine"
    api_version: str = "0.1.0"
    api_description: str = "Order and payment lifecycle for license key sales"

    # Security
    internal_api_key: str = ""  # Shared secret for /orders/process-payment
    webhook_secret: str = ""  # HMAC key for gateway webhooks
    identity_jwt_secret: str = ""  # Identity Service token signing key
    identity_jwt_algorithm: str = "HS256"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    trace_sample_ratio: float = 1.0
    service_name: str = "keymarket-orders"

    # Payment Gateway
    payment_gateway: str = "simulated"  # simulated or blockcypher
    gateway_base_url: str = "https://api.blockcypher.com/v1/ltc/main"
    gateway_api_token: str = ""
    gateway_timeout_seconds: float = 10.0
    payment_currency: str = "LTC"

    # Order lifecycle policy
    payment_window_minutes: int = 30
    required_confirmations: int = 3
    amount_tolerance: Decimal = Decimal("0.00000001")
    default_commission_rate: Decimal = Decimal("0.15")
    refund_window_hours: int = 24
    dispute_window_days: int = 7
    assign_max_attempts: int = 10

    # Sweeper
    sweeper_interval_seconds: int = 120

    # Rate limiting (purchase intake, refund requests)
    rate_limit_requests: int = 30
    rate_limit_window_seconds: int = 60
    rate_limit_max_keys: int = 10000
    # Comma-separated peers whose X-Forwarded-For / X-Forwarded-Proto headers are honoured
    trusted_proxies: str = "127.0.0.1"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def is_production(self) -> bool:
        """True when running with production safeguards."""
        return self.environment.lower() == "production"

    @property
    def trusted_proxy_hosts(self) -> set[str]:
        """Parsed trusted_proxies."""
        return {host.strip() for host in self.trusted_proxies.split(",") if host.strip()}

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
        elif not self.database_url.startswith(("postgresql", "postgres", "sqlite")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL or SQLite URL, got: {self.database_url[:20]}..."
            )

        if self.payment_gateway not in ("simulated", "blockcypher"):
            errors.append(f"PAYMENT_GATEWAY must be simulated or blockcypher, got: {self.payment_gateway}")

        if not Decimal("0") <= self.default_commission_rate <= Decimal("1"):
            errors.append("DEFAULT_COMMISSION_RATE must be between 0 and 1")

        if self.required_confirmations < 1:
            errors.append("REQUIRED_CONFIRMATIONS must be at least 1")

        if not 0.0 <= self.trace_sample_ratio <= 1.0:
            errors.append("TRACE_SAMPLE_RATIO must be between 0 and 1")

        if self.is_production:
            if not self.internal_api_key:
                errors.append("INTERNAL_API_KEY is required in production")
            if not self.webhook_secret:
                errors.append("WEBHOOK_SECRET is required in production")
            if not self.identity_jwt_secret:
                errors.append("IDENTITY_JWT_SECRET is required in production")
            if self.payment_gateway == "simulated":
                errors.append("PAYMENT_GATEWAY=simulated is not allowed in production")

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


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
