"""Configuration for club fee billing.

Security Note:
    - Processor secrets MUST be provided via environment variables
    - Application will fail fast if required secrets are missing in production
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Billing service settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CLUBPAY_",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = Field(
        default="development",
        description="Environment: development, staging, production",
    )
    service_name: str = "clubpay"
    host: str = "0.0.0.0"
    port: int = 8090
    log_level: str = "info"
    log_format: str = "pretty"

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./clubpay.db",
        description="SQLAlchemy async connection URL",
    )
    database_pool_size: int = 5
    database_max_overflow: int = 10

    # Payment processor
    stripe_api_key: Optional[str] = Field(
        default=None,
        description="Stripe secret key (REQUIRED in production)",
    )
    stripe_webhook_secret: str = Field(
        default="",
        description="Signing secret for processor webhooks (REQUIRED in production)",
    )
    stripe_api_version: str = "2024-06-20"
    webhook_tolerance_seconds: int = 300
    default_currency: str = "eur"

    # Timeouts
    processor_timeout_seconds: float = Field(default=20.0, gt=0)
    store_timeout_seconds: float = Field(default=10.0, gt=0)

    # Billing runs
    billing_max_concurrency: int = Field(default=8, ge=1, le=128)
    billing_run_budget_seconds: Optional[float] = Field(default=None, gt=0)
    billing_schedule: str = "0 6 * * *"
    subscription_schedule: str = "0 3 1 * *"
    enable_scheduler: bool = True

    # Subscription enrollment
    checkout_success_url: str = "https://example.com/fees?success=true&session_id={CHECKOUT_SESSION_ID}"
    checkout_cancel_url: str = "https://example.com/fees?canceled=true"

    @field_validator("default_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        if len(v) != 3:
            raise ValueError("Currency must be a 3-letter ISO code")
        return v.lower()

    @model_validator(mode="after")
    def validate_production_secrets(self) -> "Settings":
        """Require live processor secrets in production."""
        if self.is_production:
            if not self.stripe_api_key:
                raise ValueError("CLUBPAY_STRIPE_API_KEY is required in production")
            if not self.stripe_webhook_secret:
                raise ValueError("CLUBPAY_STRIPE_WEBHOOK_SECRET is required in production")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in ("production", "prod", "staging")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
