"""
Repositories for canonical entities, integrations and webhook bookkeeping.

All writes are upserts keyed by provider ids so that sync runs and webhook
deliveries converge regardless of arrival order.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from commhub.communication.models import (
    UNKNOWN_NUMBER,
    CallData,
    ContactData,
    ConversationData,
    MessageData,
    ProviderType,
    TranscriptStatus,
    advance_message_status,
    conversation_key,
)
from commhub.communication.phone import normalize_e164
from commhub.shared.database import DatabaseManager
from commhub.storage.models import (
    CallRecord,
    ContactRecord,
    ConversationRecord,
    IntegrationRecord,
    MessageRecord,
    SyncCheckpoint,
    WebhookEventRecord,
    WebhookSubscriptionRecord,
    as_utc,
)


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of an idempotent write."""

    id: UUID
    created: bool
    changed: bool = False


def _later(current: datetime | None, observed: datetime | None) -> datetime | None:
    current, observed = as_utc(current), as_utc(observed)
    if current is None:
        return observed
    if observed is None:
        return current
    return max(current, observed)


class CommunicationStore(Protocol):
    """Protocol for canonical entity persistence."""

    async def upsert_conversation(
        self,
        workspace_id: str,
        provider: ProviderType,
        conversation: ConversationData,
    ) -> UpsertResult:
        ...

    async def upsert_message(
        self,
        workspace_id: str,
        provider: ProviderType,
        conversation_id: UUID,
        message: MessageData,
    ) -> UpsertResult:
        ...

    async def upsert_call(
        self,
        workspace_id: str,
        provider: ProviderType,
        conversation_id: UUID,
        call: CallData,
        *,
        update_existing: bool = True,
    ) -> UpsertResult:
        ...

    async def attach_recording(
        self,
        workspace_id: str,
        provider: ProviderType,
        provider_call_id: str,
        recording_url: str | None,
        *,
        duration: int | None = None,
        transcript_status: TranscriptStatus | None = None,
    ) -> UpsertResult | None:
        ...

    async def upsert_contact(
        self,
        workspace_id: str,
        provider: ProviderType,
        contact: ContactData,
    ) -> UpsertResult:
        ...

    async def get_last_completed_at(self, workspace_id: str, provider: ProviderType) -> datetime | None:
        ...

    async def save_checkpoint(
        self,
        workspace_id: str,
        provider: ProviderType,
        *,
        status: str,
        counts: dict[str, Any],
        completed_at: datetime | None = None,
    ) -> None:
        ...


class CommunicationRepository:
    """SQLAlchemy implementation of CommunicationStore."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: Async database session.
        """
        self._session = session

    async def get_conversation(self, conversation_id: UUID) -> ConversationRecord | None:
        stmt = select(ConversationRecord).where(ConversationRecord.id == conversation_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_conversation(
        self,
        workspace_id: str,
        provider: ProviderType,
        conversation: ConversationData,
    ) -> ConversationRecord | None:
        scope = (
            ConversationRecord.workspace_id == workspace_id,
            ConversationRecord.provider == provider,
        )
        stmt = select(ConversationRecord).where(
            *scope, ConversationRecord.external_id == conversation.external_id
        )
        record = (await self._session.execute(stmt)).scalar_one_or_none()
        if record is not None or conversation.owned_number == UNKNOWN_NUMBER:
            return record

        # Same pair seen under a different id (webhook before first sync).
        stmt = (
            select(ConversationRecord)
            .where(
                *scope,
                ConversationRecord.owned_number == conversation.owned_number,
                ConversationRecord.participant_number == conversation.participant,
            )
            .limit(1)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def upsert_conversation(
        self,
        workspace_id: str,
        provider: ProviderType,
        conversation: ConversationData,
    ) -> UpsertResult:
        """Create or update a conversation.

        Conversations are matched by external id first, then by the
        (owned number, participant) pair. ``last_message_at`` only moves
        forward.

        Args:
            workspace_id: Caller-supplied tenant scope.
            provider: Provider the conversation came from.
            conversation: Canonical conversation.

        Returns:
            UpsertResult with the stored conversation id.
        """
        record = await self._find_conversation(workspace_id, provider, conversation)
        if record is None:
            record = ConversationRecord(
                workspace_id=workspace_id,
                provider=provider,
                external_id=conversation.external_id,
                owned_number=conversation.owned_number,
                participant_number=conversation.participant,
                participants=list(conversation.participants or (conversation.participant,)),
                started_at=conversation.created_at,
                last_message_at=conversation.last_message_at,
                extra_metadata=dict(conversation.metadata),
            )
            self._session.add(record)
            await self._session.flush()
            return UpsertResult(id=record.id, created=True, changed=True)

        synthetic = conversation_key(record.owned_number, record.participant_number)
        if record.external_id == synthetic and conversation.external_id != synthetic:
            # Native provider id wins over the pair key.
            record.external_id = conversation.external_id
        if record.owned_number == UNKNOWN_NUMBER and conversation.owned_number != UNKNOWN_NUMBER:
            record.owned_number = conversation.owned_number
        if conversation.participants:
            record.participants = list(conversation.participants)
        if record.started_at is None:
            record.started_at = conversation.created_at
        latest = _later(record.last_message_at, conversation.last_message_at)
        changed = latest != as_utc(record.last_message_at)
        record.last_message_at = latest
        record.extra_metadata = {**(record.extra_metadata or {}), **conversation.metadata}
        await self._session.flush()
        return UpsertResult(id=record.id, created=False, changed=changed)

    async def touch_conversation(self, conversation_id: UUID, observed: datetime) -> None:
        record = await self.get_conversation(conversation_id)
        if record is None:
            return
        record.last_message_at = _later(record.last_message_at, observed)

    async def upsert_message(
        self,
        workspace_id: str,
        provider: ProviderType,
        conversation_id: UUID,
        message: MessageData,
    ) -> UpsertResult:
        """Create a message or advance the status of a known one.

        Args:
            workspace_id: Caller-supplied tenant scope.
            provider: Provider the message came from.
            conversation_id: Owning conversation.
            message: Canonical message.

        Returns:
            UpsertResult; ``changed`` is set when the stored status moved.
        """
        stmt = select(MessageRecord).where(
            MessageRecord.workspace_id == workspace_id,
            MessageRecord.provider == provider,
            MessageRecord.provider_message_id == message.provider_message_id,
        )
        record = (await self._session.execute(stmt)).scalar_one_or_none()

        if record is None:
            record = MessageRecord(
                workspace_id=workspace_id,
                provider=provider,
                conversation_id=conversation_id,
                provider_message_id=message.provider_message_id,
                direction=message.direction,
                body=message.body or "",
                from_number=message.from_number,
                to_number=message.to_number,
                status=message.status,
                sent_at=message.created_at,
                media_urls=list(message.media_urls),
                extra_metadata=dict(message.metadata),
            )
            self._session.add(record)
            await self.touch_conversation(conversation_id, message.created_at)
            created, changed = True, True
        else:
            status = advance_message_status(record.status, message.status)
            changed = status != record.status
            record.status = status
            if message.body and not record.body:
                record.body = message.body
            created = False

        await self._session.flush()
        return UpsertResult(id=record.id, created=created, changed=changed)

    async def upsert_call(
        self,
        workspace_id: str,
        provider: ProviderType,
        conversation_id: UUID,
        call: CallData,
        *,
        update_existing: bool = True,
    ) -> UpsertResult:
        """Create or update a call.

        With ``update_existing=False`` a stored call is left untouched; used for
        provisional states such as ringing that must not overwrite an outcome.
        """
        stmt = select(CallRecord).where(
            CallRecord.workspace_id == workspace_id,
            CallRecord.provider == provider,
            CallRecord.provider_call_id == call.provider_call_id,
        )
        record = (await self._session.execute(stmt)).scalar_one_or_none()

        if record is None:
            record = CallRecord(
                workspace_id=workspace_id,
                provider=provider,
                conversation_id=conversation_id,
                provider_call_id=call.provider_call_id,
                direction=call.direction,
                status=call.status,
                duration=call.duration,
                from_number=call.from_number,
                to_number=call.to_number,
                recording_url=call.recording_url,
                voicemail_url=call.voicemail_url,
                transcript_status=call.transcript_status,
                transcript=call.transcript,
                placed_at=call.created_at,
                started_at=call.started_at,
                ended_at=call.ended_at,
                extra_metadata=dict(call.metadata),
            )
            self._session.add(record)
            await self._session.flush()
            return UpsertResult(id=record.id, created=True, changed=True)

        if not update_existing:
            return UpsertResult(id=record.id, created=False, changed=False)

        before = (record.status, record.duration, record.recording_url, record.transcript_status)
        record.status = call.status
        record.duration = max(record.duration or 0, call.duration)
        record.recording_url = call.recording_url or record.recording_url
        record.voicemail_url = call.voicemail_url or record.voicemail_url
        record.transcript_status = call.transcript_status or record.transcript_status
        record.transcript = call.transcript or record.transcript
        record.started_at = record.started_at or call.started_at
        record.ended_at = call.ended_at or record.ended_at
        after = (record.status, record.duration, record.recording_url, record.transcript_status)
        await self._session.flush()
        return UpsertResult(id=record.id, created=False, changed=before != after)

    async def attach_recording(
        self,
        workspace_id: str,
        provider: ProviderType,
        provider_call_id: str,
        recording_url: str | None,
        *,
        duration: int | None = None,
        transcript_status: TranscriptStatus | None = None,
    ) -> UpsertResult | None:
        """Attach recording details to a known call; None when the call is unknown."""
        stmt = select(CallRecord).where(
            CallRecord.workspace_id == workspace_id,
            CallRecord.provider == provider,
            CallRecord.provider_call_id == provider_call_id,
        )
        record = (await self._session.execute(stmt)).scalar_one_or_none()
        if record is None:
            return None
        before = (record.recording_url, record.transcript_status)
        record.recording_url = recording_url or record.recording_url
        if duration is not None and not record.duration:
            record.duration = duration
        record.transcript_status = transcript_status or record.transcript_status
        await self._session.flush()
        return UpsertResult(id=record.id, created=False, changed=before != (record.recording_url, record.transcript_status))

    async def upsert_contact(
        self,
        workspace_id: str,
        provider: ProviderType,
        contact: ContactData,
    ) -> UpsertResult:
        stmt = select(ContactRecord).where(
            ContactRecord.workspace_id == workspace_id,
            ContactRecord.provider == provider,
            ContactRecord.external_id == contact.external_id,
        )
        record = (await self._session.execute(stmt)).scalar_one_or_none()
        numbers = [normalize_e164(n) for n in contact.phone_numbers if n]
        values = {
            "display_name": contact.display_name or "",
            "primary_phone": numbers[0] if numbers else None,
            "phone_numbers": numbers,
            "emails": list(contact.emails),
            "company": contact.company,
            "notes": contact.notes,
            "custom_fields": dict(contact.custom_fields),
        }

        if record is None:
            record = ContactRecord(
                workspace_id=workspace_id,
                provider=provider,
                external_id=contact.external_id,
                **values,
            )
            self._session.add(record)
            await self._session.flush()
            return UpsertResult(id=record.id, created=True, changed=True)

        changed = any(getattr(record, key) != value for key, value in values.items())
        for key, value in values.items():
            setattr(record, key, value)
        await self._session.flush()
        return UpsertResult(id=record.id, created=False, changed=changed)

    async def list_conversations(self, workspace_id: str, provider: ProviderType) -> Sequence[ConversationRecord]:
        stmt = (
            select(ConversationRecord)
            .where(
                ConversationRecord.workspace_id == workspace_id,
                ConversationRecord.provider == provider,
            )
            .order_by(ConversationRecord.last_message_at.desc())
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def list_messages(self, conversation_id: UUID) -> Sequence[MessageRecord]:
        stmt = (
            select(MessageRecord)
            .where(MessageRecord.conversation_id == conversation_id)
            .order_by(MessageRecord.sent_at)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def list_calls(self, conversation_id: UUID) -> Sequence[CallRecord]:
        stmt = select(CallRecord).where(CallRecord.conversation_id == conversation_id).order_by(CallRecord.placed_at)
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def _get_checkpoint(self, workspace_id: str, provider: ProviderType) -> SyncCheckpoint | None:
        stmt = select(SyncCheckpoint).where(
            SyncCheckpoint.workspace_id == workspace_id,
            SyncCheckpoint.provider == provider,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_last_completed_at(self, workspace_id: str, provider: ProviderType) -> datetime | None:
        checkpoint = await self._get_checkpoint(workspace_id, provider)
        return as_utc(checkpoint.last_completed_at) if checkpoint else None

    async def save_checkpoint(
        self,
        workspace_id: str,
        provider: ProviderType,
        *,
        status: str,
        counts: dict[str, Any],
        completed_at: datetime | None = None,
    ) -> None:
        """Record the outcome of a finished run.

        ``last_completed_at`` only changes when ``completed_at`` is given, so a
        failed run never moves the incremental floor.
        """
        checkpoint = await self._get_checkpoint(workspace_id, provider)
        if checkpoint is None:
            checkpoint = SyncCheckpoint(workspace_id=workspace_id, provider=provider, last_status=status)
            self._session.add(checkpoint)
        checkpoint.last_status = status
        checkpoint.counts = dict(counts)
        if completed_at is not None:
            checkpoint.last_completed_at = completed_at
        await self._session.flush()


class IntegrationRepositoryProtocol(Protocol):
    """Protocol for integration lookups."""

    async def get_by_webhook_id(self, webhook_id: str) -> IntegrationRecord | None:
        ...

    async def get_for_workspace(self, workspace_id: str, provider: ProviderType) -> IntegrationRecord | None:
        ...


class IntegrationRepository:
    """Repository for provider integrations."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_webhook_id(self, webhook_id: str) -> IntegrationRecord | None:
        """Get an active integration by the opaque callback path segment.

        Args:
            webhook_id: Path segment of the provider callback URL.

        Returns:
            IntegrationRecord if found and active, None otherwise.
        """
        stmt = select(IntegrationRecord).where(
            IntegrationRecord.webhook_id == webhook_id,
            IntegrationRecord.is_active.is_(True),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_for_workspace(self, workspace_id: str, provider: ProviderType) -> IntegrationRecord | None:
        stmt = select(IntegrationRecord).where(
            IntegrationRecord.workspace_id == workspace_id,
            IntegrationRecord.provider == provider,
            IntegrationRecord.is_active.is_(True),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def save(
        self,
        workspace_id: str,
        provider: ProviderType,
        *,
        credentials: dict[str, Any],
        webhook_id: str,
        webhook_secret: str | None = None,
        remote_webhook_ids: list[str] | None = None,
    ) -> IntegrationRecord:
        """Create or replace the workspace's integration for ``provider``."""
        stmt = select(IntegrationRecord).where(
            IntegrationRecord.workspace_id == workspace_id,
            IntegrationRecord.provider == provider,
        )
        record = (await self._session.execute(stmt)).scalar_one_or_none()
        if record is None:
            record = IntegrationRecord(workspace_id=workspace_id, provider=provider, webhook_id=webhook_id)
            self._session.add(record)
        record.credentials = credentials
        record.webhook_id = webhook_id
        record.webhook_secret = webhook_secret
        record.remote_webhook_ids = list(remote_webhook_ids or [])
        record.is_active = True
        await self._session.flush()
        await self._session.refresh(record)
        return record


class WebhookEventStore(Protocol):
    """Protocol for the webhook idempotency ledger."""

    async def record_once(
        self,
        workspace_id: str,
        provider: ProviderType,
        event_type: str,
        external_id: str,
        payload: dict[str, Any],
    ) -> bool:
        ...


def idempotency_key(provider: ProviderType, event_type: str, external_id: str) -> str:
    return f"{provider.value}:{event_type}:{external_id}"


class WebhookEventRepository:
    """Ledger of processed provider webhook deliveries."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record_once(
        self,
        workspace_id: str,
        provider: ProviderType,
        event_type: str,
        external_id: str,
        payload: dict[str, Any],
    ) -> bool:
        """Record a delivery; False when the same event was already processed."""
        key = idempotency_key(provider, event_type, external_id)
        stmt = select(WebhookEventRecord.id).where(WebhookEventRecord.idempotency_key == key)
        if (await self._session.execute(stmt)).scalar_one_or_none() is not None:
            return False

        try:
            async with self._session.begin_nested():
                self._session.add(
                    WebhookEventRecord(
                        workspace_id=workspace_id,
                        provider=provider,
                        event_type=event_type,
                        external_id=external_id,
                        idempotency_key=key,
                        payload=payload,
                    )
                )
        except IntegrityError:
            # Concurrent delivery of the same event won the insert.
            return False
        return True


class WebhookSubscriptionStore(Protocol):
    """Protocol for tenant outbound webhook subscriptions."""

    async def list_active(self, workspace_id: str, event: str) -> Sequence[WebhookSubscriptionRecord]:
        ...

    async def get(self, workspace_id: str, subscription_id: UUID) -> WebhookSubscriptionRecord | None:
        ...

    async def record_success(self, subscription_id: UUID) -> None:
        ...

    async def record_failure(self, subscription_id: UUID, error: str, max_failures: int) -> bool:
        ...


class WebhookSubscriptionRepository:
    """Repository for outbound webhook subscriptions."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        workspace_id: str,
        url: str,
        secret: str | None = None,
        events: list[str] | None = None,
    ) -> WebhookSubscriptionRecord:
        subscription = WebhookSubscriptionRecord(
            workspace_id=workspace_id,
            url=url,
            secret=secret,
            events=list(events or []),
            is_active=True,
            failure_count=0,
        )
        self._session.add(subscription)
        await self._session.flush()
        await self._session.refresh(subscription)
        return subscription

    async def get(self, workspace_id: str, subscription_id: UUID) -> WebhookSubscriptionRecord | None:
        stmt = select(WebhookSubscriptionRecord).where(
            WebhookSubscriptionRecord.id == subscription_id,
            WebhookSubscriptionRecord.workspace_id == workspace_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_active(self, workspace_id: str, event: str) -> Sequence[WebhookSubscriptionRecord]:
        """Active subscriptions of a workspace interested in ``event``.

        Args:
            workspace_id: Tenant scope.
            event: Canonical event kind, e.g. ``message.received``.

        Returns:
            Matching subscriptions; an empty ``events`` list matches everything.
        """
        stmt = select(WebhookSubscriptionRecord).where(
            WebhookSubscriptionRecord.workspace_id == workspace_id,
            WebhookSubscriptionRecord.is_active.is_(True),
        )
        result = await self._session.execute(stmt)
        return [s for s in result.scalars().all() if not s.events or event in s.events]

    async def _by_id(self, subscription_id: UUID) -> WebhookSubscriptionRecord | None:
        stmt = select(WebhookSubscriptionRecord).where(WebhookSubscriptionRecord.id == subscription_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def record_success(self, subscription_id: UUID) -> None:
        subscription = await self._by_id(subscription_id)
        if subscription is None:
            return
        subscription.failure_count = 0
        subscription.last_success_at = datetime.now(timezone.utc)
        subscription.last_error = None
        await self._session.flush()

    async def record_failure(self, subscription_id: UUID, error: str, max_failures: int) -> bool:
        """Count a failed delivery; returns True when the subscription got paused."""
        subscription = await self._by_id(subscription_id)
        if subscription is None:
            return False
        subscription.failure_count = (subscription.failure_count or 0) + 1
        subscription.last_failure_at = datetime.now(timezone.utc)
        subscription.last_error = error[:1000]
        paused = subscription.is_active and subscription.failure_count >= max_failures
        if paused:
            subscription.is_active = False
        await self._session.flush()
        return paused


@asynccontextmanager
async def communication_store(manager: DatabaseManager) -> AsyncIterator[CommunicationRepository]:
    """One committed unit of work against the canonical store."""
    async with manager.session() as session:
        yield CommunicationRepository(session)


@asynccontextmanager
async def webhook_subscriptions(manager: DatabaseManager) -> AsyncIterator[WebhookSubscriptionRepository]:
    async with manager.session() as session:
        yield WebhookSubscriptionRepository(session)
