"""
Provider-agnostic communication model.

Every adapter produces these types; storage, sync and webhook ingestion only
ever see them, never provider payloads.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

# Owned number used when the provider cannot tell which line a record belongs to.
UNKNOWN_NUMBER = "unknown"


class ProviderType(str, Enum):
    """Supported communication providers."""

    OPENPHONE = "openphone"
    TWILIO = "twilio"


class Channel(str, Enum):
    """Delivery channel for outgoing messages."""

    SMS = "sms"
    WHATSAPP = "whatsapp"
    VOICE = "voice"


class MessageDirection(str, Enum):
    IN = "in"
    OUT = "out"


class MessageStatus(str, Enum):
    """Message lifecycle: pending -> sent -> delivered | failed."""

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


class CallDirection(str, Enum):
    IN = "in"
    OUT = "out"


class CallStatus(str, Enum):
    COMPLETED = "completed"
    MISSED = "missed"
    CANCELLED = "cancelled"
    VOICEMAIL = "voicemail"


class TranscriptStatus(str, Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    ABSENT = "absent"


_MESSAGE_STATUS_RANK: dict[MessageStatus, int] = {
    MessageStatus.PENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.FAILED: 2,
}


def advance_message_status(current: MessageStatus, observed: MessageStatus) -> MessageStatus:
    """Return the status a message should hold after observing ``observed``.

    Status only moves forward; delivered and failed are terminal.
    """
    if _MESSAGE_STATUS_RANK[observed] > _MESSAGE_STATUS_RANK[current]:
        return observed
    return current


def conversation_key(owned_number: str, participant: str) -> str:
    """Identity of a conversation for providers without native conversation objects."""
    return f"{owned_number or UNKNOWN_NUMBER}:{participant}"


@dataclass(frozen=True)
class A2PCompliance:
    """US A2P 10DLC messaging registration state of an owned number."""

    is_registered: bool
    campaign_status: str = "NOT_REGISTERED"
    messaging_service_sid: str | None = None
    brand_status: str | None = None


@dataclass(frozen=True)
class PhoneNumberInfo:
    """Owned number as reported by the provider (provider is authoritative)."""

    id: str
    number: str
    name: str | None = None
    sms: bool = True
    voice: bool = True
    mms: bool = False
    compliance: A2PCompliance | None = None


@dataclass(frozen=True)
class ConversationData:
    external_id: str
    owned_number: str
    participant: str
    participants: tuple[str, ...] = ()
    created_at: datetime | None = None
    last_message_at: datetime | None = None
    # False when last_message_at comes from listing metadata that was not cross-checked.
    last_message_verified: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def pair_key(self) -> str:
        return conversation_key(self.owned_number, self.participant)


@dataclass(frozen=True)
class ConversationListing:
    """Conversations returned by discovery; incomplete when paging stopped early."""

    conversations: list[ConversationData]
    complete: bool = True


@dataclass(frozen=True)
class MessageData:
    provider_message_id: str
    direction: MessageDirection
    body: str
    from_number: str
    to_number: str
    status: MessageStatus
    created_at: datetime
    media_urls: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CallData:
    provider_call_id: str
    direction: CallDirection
    duration: int
    from_number: str
    to_number: str
    status: CallStatus
    created_at: datetime
    recording_url: str | None = None
    voicemail_url: str | None = None
    transcript_status: TranscriptStatus | None = None
    transcript: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ContactData:
    external_id: str
    display_name: str
    phone_numbers: tuple[str, ...] = ()
    first_name: str | None = None
    last_name: str | None = None
    company: str | None = None
    emails: tuple[str, ...] = ()
    notes: str | None = None
    custom_fields: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RecentConversation:
    """A conversation ranked by its verified latest message."""

    conversation: ConversationData
    last_message_at: datetime
    preview: str
    direction: str
    verified: bool = True


@dataclass(frozen=True)
class SendResult:
    provider_message_id: str
    status: MessageStatus
    sent_at: datetime


@dataclass(frozen=True)
class CallHandle:
    """Client-actionable handles for placing a call; nothing is dialed server-side."""

    deep_link: str
    web_fallback: str
    message: str = ""


@dataclass(frozen=True)
class TranscriptResult:
    status: TranscriptStatus
    transcript: str = ""


@dataclass(frozen=True)
class WebhookRegistration:
    ids: tuple[str, ...]
    shared_secret: str | None = None


@dataclass(frozen=True)
class RemoteWebhook:
    id: str
    url: str
    events: tuple[str, ...] = ()
    status: str = "enabled"
