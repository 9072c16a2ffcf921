"""
SQLAlchemy models for integrations, canonical entities, sync checkpoints
and webhook bookkeeping.

Every row is scoped by the caller-supplied workspace id. Column types are
dialect-neutral (Uuid, JSON) so the same models run on PostgreSQL and SQLite.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from commhub.communication.models import (
    CallDirection,
    CallStatus,
    MessageDirection,
    MessageStatus,
    ProviderType,
    TranscriptStatus,
)
from commhub.shared.database import Base


def _enum(enum_cls: type[Enum], name: str) -> SQLEnum:
    # Stored by value ("delivered"), portable across dialects.
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class _Timestamps:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class IntegrationRecord(_Timestamps, Base):
    """A workspace's connection to one provider."""

    __tablename__ = "integrations"
    __table_args__ = (UniqueConstraint("workspace_id", "provider", name="uq_integration_workspace_provider"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider: Mapped[ProviderType] = mapped_column(_enum(ProviderType, "provider_type"), nullable=False)
    # Opaque credential bundle; never logged.
    credentials: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    # Opaque path segment of the provider callback URL.
    webhook_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    webhook_secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    remote_webhook_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<IntegrationRecord(workspace={self.workspace_id}, provider={self.provider})>"


class ConversationRecord(_Timestamps, Base):
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("workspace_id", "provider", "external_id", name="uq_conversation_external"),
        Index("ix_conversation_pair", "workspace_id", "provider", "owned_number", "participant_number"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider: Mapped[ProviderType] = mapped_column(_enum(ProviderType, "provider_type"), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    owned_number: Mapped[str] = mapped_column(String(64), nullable=False)
    participant_number: Mapped[str] = mapped_column(String(64), nullable=False)
    participants: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    extra_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)

    def __repr__(self) -> str:
        return f"<ConversationRecord(id={self.id}, pair={self.owned_number}:{self.participant_number})>"


class MessageRecord(_Timestamps, Base):
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("workspace_id", "provider", "provider_message_id", name="uq_message_provider_id"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider: Mapped[ProviderType] = mapped_column(_enum(ProviderType, "provider_type"), nullable=False)
    conversation_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider_message_id: Mapped[str] = mapped_column(String(255), nullable=False)
    direction: Mapped[MessageDirection] = mapped_column(_enum(MessageDirection, "message_direction"), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    from_number: Mapped[str] = mapped_column(String(64), nullable=False)
    to_number: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[MessageStatus] = mapped_column(_enum(MessageStatus, "message_status"), nullable=False)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    media_urls: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    extra_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)


class CallRecord(_Timestamps, Base):
    __tablename__ = "calls"
    __table_args__ = (
        UniqueConstraint("workspace_id", "provider", "provider_call_id", name="uq_call_provider_id"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider: Mapped[ProviderType] = mapped_column(_enum(ProviderType, "provider_type"), nullable=False)
    conversation_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider_call_id: Mapped[str] = mapped_column(String(255), nullable=False)
    direction: Mapped[CallDirection] = mapped_column(_enum(CallDirection, "call_direction"), nullable=False)
    status: Mapped[CallStatus] = mapped_column(_enum(CallStatus, "call_status"), nullable=False)
    duration: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    from_number: Mapped[str] = mapped_column(String(64), nullable=False)
    to_number: Mapped[str] = mapped_column(String(64), nullable=False)
    recording_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    voicemail_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    transcript_status: Mapped[TranscriptStatus | None] = mapped_column(
        _enum(TranscriptStatus, "transcript_status"), nullable=True
    )
    transcript: Mapped[str | None] = mapped_column(Text, nullable=True)
    placed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    extra_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)


class ContactRecord(_Timestamps, Base):
    __tablename__ = "contacts"
    __table_args__ = (
        UniqueConstraint("workspace_id", "provider", "external_id", name="uq_contact_external"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider: Mapped[ProviderType] = mapped_column(_enum(ProviderType, "provider_type"), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    primary_phone: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    phone_numbers: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    emails: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    company: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    custom_fields: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)


class SyncCheckpoint(_Timestamps, Base):
    """Outcome of the last finished sync run per workspace and provider."""

    __tablename__ = "sync_checkpoints"
    __table_args__ = (UniqueConstraint("workspace_id", "provider", name="uq_checkpoint_workspace_provider"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider: Mapped[ProviderType] = mapped_column(_enum(ProviderType, "provider_type"), nullable=False)
    last_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_status: Mapped[str] = mapped_column(String(32), nullable=False)
    counts: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)


class WebhookEventRecord(Base):
    """One processed provider webhook delivery (idempotency ledger)."""

    __tablename__ = "webhook_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider: Mapped[ProviderType] = mapped_column(_enum(ProviderType, "provider_type"), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(400), nullable=False, unique=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class WebhookSubscriptionRecord(_Timestamps, Base):
    """Tenant-configured outbound webhook."""

    __tablename__ = "webhook_subscriptions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Empty list means every event kind.
    events: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_success_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_failure_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<WebhookSubscriptionRecord(id={self.id}, url={self.url}, active={self.is_active})>"
