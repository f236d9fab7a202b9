"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_HOLD_DAYS = 1
MAX_HOLD_DAYS = 30


def clamp_hold_days(days: int) -> int:
    """Clamp a hold period into the supported [1, 30] day range."""
    return max(MIN_HOLD_DAYS, min(MAX_HOLD_DAYS, days))


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_publishable_key: str = Field(default="", description="Stripe publishable key")
    stripe_webhook_secret: str = Field(..., description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")

    # Database Configuration
    database_url: str = Field(..., description="Async SQLAlchemy connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(
        default="redis://localhost:6379/0", description="Redis URL for webhook deduplication"
    )
    webhook_dedup_ttl_seconds: int = Field(
        default=86400 * 7, description="How long processed webhook ids are remembered"
    )

    # Application Configuration
    app_name: str = Field(default="marketplace-settlement", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)",
    )

    # Fees (basis points, 1 bps = 0.01%)
    currency: str = Field(default="USD", description="Settlement currency")
    tax_rate_bps: int = Field(default=725, ge=0, le=10000, description="Flat tax rate")
    platform_fee_rate_bps: int = Field(default=325, ge=0, le=10000, description="Platform fee")
    processor_fee_rate_bps: int = Field(
        default=290, ge=0, le=10000, description="Processor fee deducted from sellers"
    )

    # Held funds
    payment_hold_days: int = Field(default=5, description="Days funds are held after payment")
    release_run_hour: int = Field(
        default=2, ge=0, le=23, description="Hour of day the release sweep runs"
    )
    release_interval_seconds: Optional[int] = Field(
        default=None, gt=0, description="Fixed sweep interval; overrides release_run_hour"
    )
    transfer_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Upper bound for a single processor call"
    )
    reconciliation_stale_minutes: int = Field(
        default=60, gt=0, description="Age after which a processing payout is reconciled"
    )
    order_number_attempts: int = Field(
        default=3, ge=1, description="Retries on order number collision"
    )

    # Seller onboarding
    client_url: str = Field(
        default="http://localhost:3000", description="Storefront base URL for onboarding redirects"
    )
    connect_country: str = Field(default="US", description="Country of new connected accounts")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that Stripe secret key is a test or live key."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("payment_hold_days")
    @classmethod
    def validate_hold_days(cls, v: int) -> int:
        """Out-of-range hold periods are clamped, not rejected."""
        return clamp_hold_days(v)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        if len(v) != 3:
            raise ValueError("Currency must be 3-letter code")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
