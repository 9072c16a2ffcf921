"""
Provider adapter configuration.

Single source of truth for provider endpoints, paging bounds and rate-limit
behaviour. Per-tenant credentials never live here; they arrive with each call.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderSettings(BaseSettings):
    """Provider adapter settings from environment (PROVIDER_*)."""

    model_config = SettingsConfigDict(
        env_prefix="PROVIDER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    openphone_api_base_url: str = Field(default="https://api.openphone.com/v1")
    twilio_api_base_url: str = Field(default="https://api.twilio.com/2010-04-01")
    twilio_messaging_base_url: str = Field(default="https://messaging.twilio.com/v1")

    http_timeout_seconds: float = Field(default=30.0, gt=0, le=300)

    # 429 handling
    rate_limit_max_attempts: int = Field(default=3, ge=1, le=10)
    rate_limit_fallback_delay_seconds: float = Field(default=2.0, ge=0)

    # Bounded fan-out for per-candidate probes and per-number queries
    verification_batch_size: int = Field(default=5, ge=1, le=50)

    # Pagination bounds
    page_size: int = Field(default=100, ge=1, le=100)
    max_pages: int = Field(default=200, ge=1)
    contact_page_size: int = Field(default=50, ge=1, le=50)
    max_contact_pages: int = Field(default=100, ge=1)

    # Recent conversations
    recent_window_days: int = Field(default=30, ge=1)
    recent_max_pages: int = Field(default=10, ge=1)

    twilio_max_message_pages: int = Field(default=10, ge=1)


@lru_cache(maxsize=1)
def get_provider_settings() -> ProviderSettings:
    """Return cached ProviderSettings loaded from OS env + .env."""
    return ProviderSettings()
