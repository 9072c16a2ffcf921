"""
Canonical domain events emitted by sync and webhook ingestion.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from commhub.communication.models import (
    CallData,
    MessageData,
    MessageDirection,
    MessageStatus,
    ProviderType,
)


class EventKind(str, Enum):
    """Every kind a subscriber can receive."""

    MESSAGE_RECEIVED = "message.received"
    MESSAGE_DELIVERED = "message.delivered"
    MESSAGE_FAILED = "message.failed"
    CALL_COMPLETED = "call.completed"
    CALL_RINGING = "call.ringing"
    CALL_RECORDING_COMPLETED = "call.recording.completed"


class CanonicalEvent(BaseModel):
    """Provider-agnostic event published to real-time and outbound subscribers."""

    model_config = ConfigDict(frozen=True)

    kind: EventKind
    workspace_id: str
    provider: ProviderType
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    conversation_id: UUID | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        """JSON body delivered to subscribers."""
        return {
            "event": self.kind.value,
            "timestamp": self.occurred_at.isoformat(),
            "data": {
                "workspace_id": self.workspace_id,
                "provider": self.provider.value,
                "conversation_id": str(self.conversation_id) if self.conversation_id else None,
                **self.data,
            },
        }


def message_event_kind(message: MessageData) -> EventKind | None:
    """Kind announcing a newly observed message, if it warrants one."""
    if message.direction == MessageDirection.IN:
        return EventKind.MESSAGE_RECEIVED
    if message.status == MessageStatus.DELIVERED:
        return EventKind.MESSAGE_DELIVERED
    if message.status == MessageStatus.FAILED:
        return EventKind.MESSAGE_FAILED
    return None


def message_event(
    kind: EventKind,
    workspace_id: str,
    provider: ProviderType,
    message: MessageData,
    conversation_id: UUID | None = None,
) -> CanonicalEvent:
    return CanonicalEvent(
        kind=kind,
        workspace_id=workspace_id,
        provider=provider,
        conversation_id=conversation_id,
        data={
            "message": {
                "provider_message_id": message.provider_message_id,
                "direction": message.direction.value,
                "body": message.body,
                "from": message.from_number,
                "to": message.to_number,
                "status": message.status.value,
                "created_at": message.created_at.isoformat(),
                "media_urls": list(message.media_urls),
            }
        },
    )


def call_event(
    kind: EventKind,
    workspace_id: str,
    provider: ProviderType,
    call: CallData,
    conversation_id: UUID | None = None,
) -> CanonicalEvent:
    return CanonicalEvent(
        kind=kind,
        workspace_id=workspace_id,
        provider=provider,
        conversation_id=conversation_id,
        data={
            "call": {
                "provider_call_id": call.provider_call_id,
                "direction": call.direction.value,
                "status": call.status.value,
                "duration": call.duration,
                "from": call.from_number,
                "to": call.to_number,
                "recording_url": call.recording_url,
                "voicemail_url": call.voicemail_url,
                "created_at": call.created_at.isoformat(),
            }
        },
    )
