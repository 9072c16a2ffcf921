"""
Webhook event handler: idempotency, canonical upsert, event construction.
"""

from dataclasses import dataclass

from commhub.events.models import CanonicalEvent, EventKind, call_event, message_event
from commhub.shared.logging import get_logger
from commhub.storage.repository import CommunicationStore, WebhookEventStore
from commhub.webhooks.normalizer import NormalizedEvent

logger = get_logger(__name__)


@dataclass(frozen=True)
class HandleResult:
    processed: bool
    event: CanonicalEvent | None = None


class WebhookHandler:
    """Applies normalized webhook events to the canonical store.

    The store and the idempotency ledger are expected to share one unit of
    work, so a failed upsert also forgets the delivery and the provider's
    retry is processed again.
    """

    def __init__(self, store: CommunicationStore, ledger: WebhookEventStore) -> None:
        """Initialize webhook handler.

        Args:
            store: Canonical entity store.
            ledger: Idempotency ledger of processed deliveries.
        """
        self._store = store
        self._ledger = ledger

    async def handle(self, workspace_id: str, event: NormalizedEvent) -> HandleResult:
        """Process one normalized delivery.

        Args:
            workspace_id: Workspace resolved from the callback path.
            event: Normalized provider event.

        Returns:
            HandleResult; ``processed`` is False for duplicate deliveries.
        """
        log_extra = {
            "workspace_id": workspace_id,
            "provider": event.provider.value,
            "event_type": event.event_type,
            "external_id": event.external_id,
        }

        first = await self._ledger.record_once(
            workspace_id,
            event.provider,
            event.event_type,
            event.external_id,
            event.payload,
        )
        if not first:
            logger.info("Duplicate webhook skipped", extra=log_extra)
            return HandleResult(processed=False)

        if event.recording is not None:
            return HandleResult(processed=True, event=await self._apply_recording(workspace_id, event, log_extra))

        if event.conversation is None:
            logger.warning("Webhook without conversation context", extra=log_extra)
            return HandleResult(processed=True)

        conversation = await self._store.upsert_conversation(workspace_id, event.provider, event.conversation)
        canonical: CanonicalEvent | None = None

        if event.message is not None:
            result = await self._store.upsert_message(workspace_id, event.provider, conversation.id, event.message)
            logger.info(
                "Webhook message applied",
                extra={**log_extra, "is_new": result.created, "status_changed": result.changed},
            )
            if event.kind is not None:
                canonical = message_event(event.kind, workspace_id, event.provider, event.message, conversation.id)

        if event.call is not None:
            result = await self._store.upsert_call(
                workspace_id,
                event.provider,
                conversation.id,
                event.call,
                update_existing=not event.provisional,
            )
            logger.info(
                "Webhook call applied",
                extra={**log_extra, "is_new": result.created, "changed": result.changed},
            )
            if event.kind is not None:
                canonical = call_event(event.kind, workspace_id, event.provider, event.call, conversation.id)

        return HandleResult(processed=True, event=canonical)

    async def _apply_recording(
        self,
        workspace_id: str,
        event: NormalizedEvent,
        log_extra: dict,
    ) -> CanonicalEvent | None:
        recording = event.recording
        result = await self._store.attach_recording(
            workspace_id,
            event.provider,
            recording.provider_call_id,
            recording.recording_url,
            duration=recording.duration,
            transcript_status=recording.transcript_status,
        )
        if result is None:
            logger.warning("Recording for unknown call", extra={**log_extra, "call_id": recording.provider_call_id})
        if event.kind != EventKind.CALL_RECORDING_COMPLETED:
            return None
        return CanonicalEvent(
            kind=EventKind.CALL_RECORDING_COMPLETED,
            workspace_id=workspace_id,
            provider=event.provider,
            data={
                "call": {
                    "provider_call_id": recording.provider_call_id,
                    "recording_url": recording.recording_url,
                    "duration": recording.duration,
                }
            },
        )
