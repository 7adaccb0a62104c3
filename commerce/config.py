"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

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

    # Service identity
    service_name: str = "commerce-core"
    service_version: str = "0.1.0"

    # Balance ledger limits (smallest currency unit)
    daily_charge_limit: int = 1_000_000
    max_balance_limit: int = 10_000_000

    # Pagination
    default_page_size: int = 20
    max_page_size: int = 100

    # Optimistic concurrency - attempts before ConcurrentModificationError
    optimistic_retry_attempts: int = 5

    # Coupons
    coupon_code_suffix_length: int = 6
    coupon_sweep_interval_seconds: float = 60.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True
    metrics_port: int = 9090

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The service MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres", "sqlite")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL or SQLite URL, got: {self.database_url[:20]}..."
            )

        if self.daily_charge_limit <= 0:
            errors.append("DAILY_CHARGE_LIMIT must be positive")
        if self.max_balance_limit <= 0:
            errors.append("MAX_BALANCE_LIMIT must be positive")
        if not 1 <= self.default_page_size <= self.max_page_size:
            errors.append("DEFAULT_PAGE_SIZE must be between 1 and MAX_PAGE_SIZE")
        if self.optimistic_retry_attempts < 1:
            errors.append("OPTIMISTIC_RETRY_ATTEMPTS must be at least 1")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - SERVICE CANNOT START",
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
    def is_sqlite(self) -> bool:
        """True when the configured store is SQLite (tests, local runs)."""
        return self.database_url.startswith("sqlite")


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
