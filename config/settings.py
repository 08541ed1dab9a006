"""
Configuration settings for the application
"""
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Normalized plan names
PLAN_FREE = "FREE"
PLAN_BASIC = "BASIC"
PLAN_PREMIUM = "PREMIUM"

# Metered resource types
RESOURCE_CASE_COMPLETION = "CASE_COMPLETION"
RESOURCE_AI_REQUEST = "AI_REQUEST"
RESOURCE_EXPORT_REPORT = "EXPORT_REPORT"
RESOURCE_CUSTOM_CASE = "CUSTOM_CASE"

RESOURCE_TYPES = (
    RESOURCE_CASE_COMPLETION,
    RESOURCE_AI_REQUEST,
    RESOURCE_EXPORT_REPORT,
    RESOURCE_CUSTOM_CASE,
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Stripe billing configuration
    stripe_secret_key: Optional[str] = Field(default=None, alias="STRIPE_SECRET_KEY")
    stripe_publishable_key: Optional[str] = Field(default=None, alias="STRIPE_PUBLISHABLE_KEY")
    stripe_webhook_secret: Optional[str] = Field(default=None, alias="STRIPE_WEBHOOK_SECRET")

    # Payment gateway calls are bounded and never retried here
    gateway_timeout_seconds: float = Field(default=5.0, alias="GATEWAY_TIMEOUT_SECONDS")

    # Infrastructure configuration
    redis_url: Optional[str] = Field(default=None, alias="REDIS_URL")
    database_url: Optional[str] = Field(default="sqlite+aiosqlite:///./billing.db", alias="DATABASE_URL")

    # Plan defaults
    free_plan_name: str = Field(default=PLAN_FREE, alias="FREE_PLAN_NAME")
    # Quota applied when the catalog has no active FREE plan at all
    free_plan_fallback_limit: int = Field(default=10, alias="FREE_PLAN_FALLBACK_LIMIT")
    expiring_soon_days: int = Field(default=7, alias="EXPIRING_SOON_DAYS")

    # HTTP surface
    rate_limit_per_minute: int = Field(default=30, alias="RATE_LIMIT_PER_MINUTE")

    # Frontend configuration
    frontend_url: Optional[str] = Field(default="http://localhost:5173", alias="FRONTEND_URL")

    # Render.com deployment configuration
    render: Optional[str] = Field(default=None, alias="RENDER")
    render_external_url: Optional[str] = Field(default=None, alias="RENDER_EXTERNAL_URL")
    render_service_name: Optional[str] = Field(default=None, alias="RENDER_SERVICE_NAME")

    # Environment configuration
    env: Optional[str] = Field(default=None, alias="ENV")


# Instantiate settings object
settings = Settings()

# Determine if we're in production mode
IS_PRODUCTION = bool(settings.render) or (settings.env and settings.env.lower() == "production")
