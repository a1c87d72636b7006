"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups (StripeConfig, BillingConfig) are env-overridable via
the double-underscore delimiter, e.g.:
    STRIPE__SECRET_KEY=sk_test_...
    STRIPE__PRICE_ARTIST_MONTHLY=price_...
    BILLING__RUN_STRIPE_SIMULATION=true
"""

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StripeConfig(BaseModel):
    """Stripe credentials and checkout settings."""

    secret_key: str = ""
    webhook_secret: str = ""

    # Internal plan keys offered at checkout
    price_artist_monthly: str = ""
    price_artist_yearly: str = ""
    price_studio_monthly: str = ""
    price_studio_yearly: str = ""

    frontend_url: str = "http://localhost:5173"
    checkout_success_url: str | None = None
    checkout_cancel_url: str | None = None
    portal_return_url: str | None = None

    @property
    def success_url(self) -> str:
        return self.checkout_success_url or self.frontend_url

    @property
    def cancel_url(self) -> str:
        return self.checkout_cancel_url or self.frontend_url

    @property
    def return_url(self) -> str:
        return self.portal_return_url or self.frontend_url


class BillingConfig(BaseModel):
    """Entitlement reconciliation behaviour.

    Env-overridable via BILLING__KEY format, e.g.:
        BILLING__ENVIRONMENT=production
        BILLING__RUN_STRIPE_SIMULATION=true
        BILLING__SIMULATION_DELAY_SECONDS=2
        BILLING__DAILY_RESET_ENABLED=false
    """

    environment: str = "development"
    # Fabricate checkout completion locally instead of waiting for a webhook
    run_stripe_simulation: bool = False
    simulation_delay_seconds: float = 4.0
    webhook_tolerance_seconds: int = 300
    # Opens each subscriber's AI credit counter for the new UTC day
    daily_reset_enabled: bool = True
    daily_reset_hour_utc: int = Field(default=0, ge=0, le=23)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def simulation_enabled(self) -> bool:
        return not self.is_production and self.run_stripe_simulation


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Supabase
    supabase_url: str = ""
    supabase_secret_key: str = ""

    # App Settings
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:5173"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    stripe: StripeConfig = Field(default_factory=StripeConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
