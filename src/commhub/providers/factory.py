"""
Communication provider factory.

Adapters hold no tenant state, so one cached instance per provider type is
shared by every workspace; credentials travel with each call.
"""

from __future__ import annotations

from functools import lru_cache

from commhub.communication.models import ProviderType
from commhub.providers.config import get_provider_settings
from commhub.providers.interface import CommunicationProvider
from commhub.providers.openphone import OpenPhoneAdapter
from commhub.providers.twilio import TwilioAdapter
from commhub.shared.logging import get_logger

logger = get_logger(__name__)


@lru_cache(maxsize=None)
def get_provider(provider_type: ProviderType | str) -> CommunicationProvider:
    """Create and cache the adapter for ``provider_type``."""
    provider_type = ProviderType(provider_type)
    settings = get_provider_settings()

    logger.info(
        "Provider adapter resolved",
        extra={
            "provider_type": provider_type.value,
            "http_timeout_seconds": settings.http_timeout_seconds,
            "rate_limit_max_attempts": settings.rate_limit_max_attempts,
        },
    )

    if provider_type == ProviderType.OPENPHONE:
        return OpenPhoneAdapter(settings)
    if provider_type == ProviderType.TWILIO:
        return TwilioAdapter(settings)

    raise ValueError(f"Unsupported provider_type: {provider_type}")
