"""
Per-tenant provider credentials.

Integrations store credentials as an opaque JSON bundle; adapters receive the
parsed, typed form. Secret fields never appear in repr().
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from commhub.communication.models import ProviderType
from commhub.providers.interface import ConfigurationError


@dataclass(frozen=True)
class OpenPhoneCredentials:
    api_key: str = field(repr=False)


@dataclass(frozen=True)
class TwilioCredentials:
    account_sid: str
    auth_token: str = field(repr=False)
    phone_number: str | None = None
    phone_number_sid: str | None = None


Credentials = Union[OpenPhoneCredentials, TwilioCredentials]


def _pick(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value:
            return value
    return None


def parse_credentials(provider: ProviderType | str, raw: dict[str, Any]) -> Credentials:
    """Build typed credentials from a stored bundle (camelCase or snake_case keys).

    Raises:
        ConfigurationError: If the bundle lacks a required secret.
    """
    provider = ProviderType(provider)
    if provider == ProviderType.OPENPHONE:
        api_key = _pick(raw, "api_key", "apiKey")
        if not api_key:
            raise ConfigurationError(
                "OpenPhone API key is missing",
                error_code="missing_credentials",
            )
        return OpenPhoneCredentials(api_key=api_key)

    account_sid = _pick(raw, "account_sid", "accountSid")
    auth_token = _pick(raw, "auth_token", "authToken")
    if not account_sid or not auth_token:
        raise ConfigurationError(
            "Twilio account SID and auth token are required",
            error_code="missing_credentials",
        )
    return TwilioCredentials(
        account_sid=account_sid,
        auth_token=auth_token,
        phone_number=_pick(raw, "phone_number", "phoneNumber"),
        phone_number_sid=_pick(raw, "phone_number_sid", "phoneNumberSid"),
    )
