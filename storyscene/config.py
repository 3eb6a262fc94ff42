"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups (StripeConfig, PayPalConfig, BillingConfig,
SchedulerConfig) are env-overridable via the double-underscore delimiter,
e.g.:
    STRIPE__SECRET_KEY=sk_live_...
    PAYPAL__LIVE=true
    BILLING__FREE_PLAN_CREDITS=3
    SCHEDULER__CYCLE_RESET_INTERVAL_MINUTES=30
"""

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StripeConfig(BaseModel):
    """Stripe credentials and redirect URLs."""

    secret_key: str = ""
    webhook_secret: str = ""
    checkout_success_url: str = ""
    checkout_cancel_url: str = ""
    portal_return_url: str = ""


class PayPalConfig(BaseModel):
    """PayPal REST credentials."""

    client_id: str = ""
    client_secret: str = ""
    webhook_id: str = ""
    live: bool = False  # False -> sandbox
    request_timeout_seconds: float = 30.0

    @property
    def base_url(self) -> str:
        if self.live:
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"


class BillingConfig(BaseModel):
    """Credit metering and storage settings."""

    # Credits reset on this rolling window, independent of invoice dates
    credit_cycle_days: int = 30
    free_plan_credits: int = 2
    admin_user_ids: list[str] = Field(default_factory=list)
    # Add the prorated share of the credit delta on top of the new allotment
    prorate_upgrade_credits: bool = False

    accounts_table: str = "subscription_accounts"
    plans_table: str = "plans"
    payments_table: str = "payments"
    logs_table: str = "subscription_logs"
    webhook_events_table: str = "webhook_events"


class SchedulerConfig(BaseModel):
    """Credit-cycle scheduler settings."""

    enabled: bool = False
    cycle_reset_interval_minutes: int = 60
    expiry_check_hour: int = 0  # UTC hour for the daily expiry scan
    run_on_startup: bool = True


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
    supabase_service_role_key: str = ""

    # Frontend base URL, used to build checkout/portal redirects
    client_url: str = "http://localhost:3000"

    # App Settings
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:3000"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    stripe: StripeConfig = Field(default_factory=StripeConfig)
    paypal: PayPalConfig = Field(default_factory=PayPalConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
