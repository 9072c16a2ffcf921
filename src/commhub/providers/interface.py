"""
Communication provider interface definition.

Every adapter implements CommunicationProvider; the sync engine and webhook
ingestion depend on nothing else. Provider failures leave an adapter only as
ProviderError subclasses, each tagged with an ErrorKind.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from commhub.communication.models import (
    CallData,
    CallHandle,
    Channel,
    ContactData,
    ConversationData,
    ConversationListing,
    MessageData,
    PhoneNumberInfo,
    ProviderType,
    RecentConversation,
    RemoteWebhook,
    SendResult,
    TranscriptResult,
    WebhookRegistration,
)

if TYPE_CHECKING:
    from commhub.providers.credentials import Credentials


class ErrorKind(str, Enum):
    """Error taxonomy shared by all adapters."""

    TRANSIENT = "transient"
    PARTIAL = "partial"
    CONFIGURATION = "configuration"
    NOT_FOUND = "not_found"


class ProviderError(Exception):
    """Base exception for communication provider errors."""

    kind: ErrorKind = ErrorKind.PARTIAL

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        provider_response: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.provider_response = provider_response or {}
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Timeouts, connection failures and 5xx responses."""

    kind = ErrorKind.TRANSIENT


class RateLimitedError(TransientProviderError):
    """HTTP 429 from the provider."""

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("status_code", 429)
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ProviderResponseError(ProviderError):
    """Rejected request or unexpected response shape."""

    kind = ErrorKind.PARTIAL


class ProviderNotFoundError(ProviderResponseError):
    kind = ErrorKind.NOT_FOUND


class ConfigurationError(ProviderError):
    """Missing or unusable configuration; never retried."""

    kind = ErrorKind.CONFIGURATION


class InvalidCredentialsError(ConfigurationError):
    """Provider rejected the credentials (401/403)."""


class NoSendingNumberError(ConfigurationError):
    """No owned number is available to send from."""


class UnsupportedChannelError(ConfigurationError):
    """Provider cannot deliver on the requested channel."""


class CommunicationProvider(ABC):
    """Abstract capability surface of a communication provider.

    Adapters are stateless with respect to tenants: credentials arrive with
    every call and no provider client outlives a request.
    """

    provider_type: ProviderType

    @abstractmethod
    async def send_message(
        self,
        credentials: Credentials,
        to: str,
        body: str,
        from_number: str | None = None,
        channel: Channel = Channel.SMS,
        status_callback_url: str | None = None,
    ) -> SendResult:
        """Send a message, resolving a default sender when none is given."""
        ...

    @abstractmethod
    async def get_phone_numbers(self, credentials: Credentials) -> dict[str, PhoneNumberInfo]:
        """Owned numbers keyed by provider id. Never raises; empty on failure."""
        ...

    @abstractmethod
    async def discover_conversations(
        self,
        credentials: Credentials,
        limit: int | None = None,
        phone_number_id: str | None = None,
        since: datetime | None = None,
    ) -> ConversationListing:
        """Conversations ranked by recency, plus whether the listing was complete.

        With ``since``, only conversations with a message created after it are
        returned. A failure on the first listing page raises.
        """
        ...

    async def get_conversations(
        self,
        credentials: Credentials,
        limit: int | None = None,
        phone_number_id: str | None = None,
        since: datetime | None = None,
    ) -> list[ConversationData]:
        listing = await self.discover_conversations(credentials, limit, phone_number_id, since)
        return listing.conversations

    @abstractmethod
    async def get_recent_conversations(
        self,
        credentials: Credentials,
        limit: int = 10,
    ) -> list[RecentConversation]:
        ...

    @abstractmethod
    async def get_messages(
        self,
        credentials: Credentials,
        conversation: ConversationData,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[MessageData]:
        ...

    @abstractmethod
    async def get_calls(
        self,
        credentials: Credentials,
        conversation: ConversationData,
        since: datetime | None = None,
    ) -> list[CallData]:
        ...

    @abstractmethod
    async def get_contacts(
        self,
        credentials: Credentials,
        limit: int | None = None,
    ) -> list[ContactData]:
        ...

    @abstractmethod
    def initiate_call(self, to: str) -> CallHandle:
        """Client-actionable call handles; never dials."""
        ...

    @abstractmethod
    async def validate_credentials(self, credentials: Credentials) -> bool:
        ...

    @abstractmethod
    async def register_webhooks(
        self,
        credentials: Credentials,
        callback_url: str,
    ) -> WebhookRegistration:
        ...

    @abstractmethod
    async def delete_webhooks(self, credentials: Credentials, ids: list[str]) -> None:
        ...

    @abstractmethod
    async def list_webhooks(self, credentials: Credentials) -> list[RemoteWebhook]:
        ...

    @abstractmethod
    async def download_recording(self, credentials: Credentials, url: str) -> bytes | None:
        """Recording bytes, or None when the recording cannot be retrieved."""
        ...

    @abstractmethod
    async def get_call_transcript(
        self,
        credentials: Credentials,
        call_id: str,
    ) -> TranscriptResult:
        ...
