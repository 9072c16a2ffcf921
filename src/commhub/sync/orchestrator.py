"""
Sync orchestrator.

Pulls conversations, messages, calls and contacts from a provider adapter
into the canonical store. Runs execute as background asyncio tasks, one per
(workspace, provider); progress, cancellation and the single-active-run rule
live in SyncRegistry.

Failure semantics:
    - configuration errors and a failed first listing page fail the run
    - a failure fetching one conversation's messages or calls is counted and
      skipped
    - a listing that stopped early completes the run flagged as partial
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache

from commhub.communication.models import (
    UNKNOWN_NUMBER,
    ContactData,
    ConversationData,
    ProviderType,
)
from commhub.communication.phone import ContactIndex, has_real_name, normalize_e164
from commhub.events.fanout import EventFanout, get_event_fanout
from commhub.events.models import CanonicalEvent, EventKind, call_event, message_event, message_event_kind
from commhub.providers.credentials import Credentials, parse_credentials
from commhub.providers.factory import get_provider
from commhub.providers.interface import CommunicationProvider, ConfigurationError, ProviderError
from commhub.shared.database import DatabaseManager, get_database_manager
from commhub.shared.logging import get_logger, log_context
from commhub.storage.models import as_utc
from commhub.storage.repository import CommunicationStore, IntegrationRepository, communication_store
from commhub.sync.state import SyncMode, SyncPhase, SyncRegistry, SyncRun, SyncStatus

logger = get_logger(__name__)

StoreFactory = Callable[[], AbstractAsyncContextManager[CommunicationStore]]
CredentialsLoader = Callable[[str, ProviderType], Awaitable[Credentials]]
ProviderResolver = Callable[[ProviderType], CommunicationProvider]

CONTACT_BATCH_SIZE = 50


@dataclass(frozen=True)
class SyncOptions:
    """Options of one sync run."""

    provider: ProviderType
    limit: int | None = None
    since: datetime | None = None
    until: datetime | None = None
    sync_messages: bool = True
    only_saved_contacts: bool = False
    phone_number_id: str | None = None
    # Count re-observed messages and calls as synced, not only new ones.
    force_refresh: bool = False
    # Use the last completed checkpoint as ``since`` when none is given.
    incremental: bool = False
    mode: SyncMode = SyncMode.FULL


def load_integration_credentials(manager: DatabaseManager) -> CredentialsLoader:
    """Credentials loader backed by the integrations table."""

    async def load(workspace_id: str, provider: ProviderType) -> Credentials:
        async with manager.session() as session:
            integration = await IntegrationRepository(session).get_for_workspace(workspace_id, provider)
        if integration is None:
            raise ConfigurationError(
                f"No active {provider.value} integration for workspace",
                error_code="integration_not_found",
            )
        return parse_credentials(provider, integration.credentials)

    return load


def _in_window(conversation: ConversationData, since: datetime | None, until: datetime | None) -> bool:
    last = as_utc(conversation.last_message_at)
    if last is None:
        return False
    if since is not None and last < since:
        return False
    if until is not None and last > until:
        return False
    return True


class SyncOrchestrator:
    """Drives sync runs against the canonical store."""

    def __init__(
        self,
        store_factory: StoreFactory,
        credentials_loader: CredentialsLoader,
        *,
        provider_resolver: ProviderResolver = get_provider,
        fanout: EventFanout | None = None,
        registry: SyncRegistry | None = None,
    ) -> None:
        self._store_factory = store_factory
        self._load_credentials = credentials_loader
        self._resolve_provider = provider_resolver
        self._fanout = fanout
        self._registry = registry or SyncRegistry()
        self._tasks: dict[tuple[str, ProviderType], asyncio.Task[SyncRun]] = {}

    # ---- control surface

    async def start(self, workspace_id: str, options: SyncOptions) -> dict:
        """Accept a run and execute it in the background.

        Raises:
            SyncAlreadyRunningError: A run for this workspace and provider is active.
        """
        run = await self._registry.begin(workspace_id, options.provider)
        task = asyncio.create_task(self._execute(run, options), name=f"sync:{workspace_id}:{options.provider.value}")
        self._tasks[(workspace_id, options.provider)] = task
        logger.info(
            "Sync accepted",
            extra={
                "workspace_id": workspace_id,
                "provider": options.provider.value,
                "mode": options.mode.value,
                "limit": options.limit,
                "since": options.since.isoformat() if options.since else None,
                "incremental": options.incremental,
            },
        )
        return run.snapshot()

    async def run(self, workspace_id: str, options: SyncOptions) -> SyncRun:
        """Execute a run inline and return its final state."""
        run = await self._registry.begin(workspace_id, options.provider)
        return await self._execute(run, options)

    def status(self, workspace_id: str, provider: ProviderType) -> dict:
        return self._registry.snapshot(workspace_id, provider)

    async def cancel(self, workspace_id: str, provider: ProviderType) -> bool:
        requested = await self._registry.request_cancel(workspace_id, provider)
        if requested:
            logger.info("Sync cancellation requested", extra={"workspace_id": workspace_id, "provider": provider.value})
        return requested

    async def wait(self, workspace_id: str, provider: ProviderType) -> dict:
        task = self._tasks.get((workspace_id, provider))
        if task is not None:
            await task
        return self.status(workspace_id, provider)

    async def shutdown(self) -> None:
        """Cancel background runs that are still going (application shutdown)."""
        pending = [task for task in self._tasks.values() if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info("Background sync runs cancelled", extra={"count": len(pending)})
        self._tasks.clear()

    # ---- execution

    async def _execute(self, run: SyncRun, options: SyncOptions) -> SyncRun:
        with log_context(workspace_id=run.workspace_id, provider=run.provider.value, sync_mode=options.mode.value):
            return await self._execute_run(run, options)

    async def _execute_run(self, run: SyncRun, options: SyncOptions) -> SyncRun:
        try:
            credentials = await self._load_credentials(run.workspace_id, run.provider)
            provider = self._resolve_provider(run.provider)

            since = as_utc(options.since)
            if since is None and options.incremental:
                async with self._store_factory() as store:
                    since = await store.get_last_completed_at(run.workspace_id, run.provider)

            if options.mode == SyncMode.CONTACTS:
                await self._sync_contacts(run, provider, credentials, options)
            elif options.mode == SyncMode.CONTACTS_FROM_PARTICIPANTS:
                await self._sync_participant_contacts(run, provider, credentials, options, since)
            else:
                await self._sync_conversations(run, provider, credentials, options, since)

            if run.cancel_requested:
                run.finish(SyncStatus.CANCELLED)
            else:
                run.finish(SyncStatus.COMPLETED)
        except ConfigurationError as e:
            logger.error(
                "Sync failed: configuration error",
                extra={"workspace_id": run.workspace_id, "provider": run.provider.value, "error": str(e)},
            )
            run.counts.errors += 1
            run.finish(SyncStatus.FAILED, error=str(e))
        except ProviderError as e:
            logger.error(
                "Sync failed: provider listing error",
                extra={
                    "workspace_id": run.workspace_id,
                    "provider": run.provider.value,
                    "error": str(e),
                    "error_kind": e.kind.value,
                },
            )
            run.counts.errors += 1
            run.finish(SyncStatus.FAILED, error=str(e))
        except Exception as e:
            logger.exception(
                "Sync failed",
                extra={"workspace_id": run.workspace_id, "provider": run.provider.value},
            )
            run.counts.errors += 1
            run.finish(SyncStatus.FAILED, error=str(e) or e.__class__.__name__)

        await self._save_checkpoint(run)
        logger.info(
            "Sync finished",
            extra={
                "workspace_id": run.workspace_id,
                "provider": run.provider.value,
                "status": run.status.value,
                "partial": run.partial,
                **run.counts.as_dict(),
            },
        )
        return run

    async def _save_checkpoint(self, run: SyncRun) -> None:
        # The run start is the next floor; activity during the run is re-read.
        completed_at = run.started_at if run.status == SyncStatus.COMPLETED and not run.partial else None
        try:
            async with self._store_factory() as store:
                await store.save_checkpoint(
                    run.workspace_id,
                    run.provider,
                    status=run.status.value,
                    counts=run.counts.as_dict(),
                    completed_at=completed_at,
                )
        except Exception:
            logger.exception(
                "Failed to save sync checkpoint",
                extra={"workspace_id": run.workspace_id, "provider": run.provider.value},
            )

    async def _publish(self, events: Sequence[CanonicalEvent]) -> None:
        if self._fanout is None:
            return
        for event in events:
            # Tenant webhooks only see live pushes, not history.
            await self._fanout.publish(event, deliver_outbound=False)

    # ---- conversations

    async def _sync_conversations(
        self,
        run: SyncRun,
        provider: CommunicationProvider,
        credentials: Credentials,
        options: SyncOptions,
        since: datetime | None,
    ) -> None:
        run.enter_phase(SyncPhase.CONVERSATIONS, 0)
        listing = await provider.discover_conversations(credentials, options.limit, options.phone_number_id, since)
        conversations = list(listing.conversations)
        run.partial = not listing.complete
        run.counts.conversations_from_provider = len(conversations)
        run.total = len(conversations)

        until = as_utc(options.until)
        if since is not None or until is not None:
            kept = [c for c in conversations if _in_window(c, since, until)]
            run.counts.conversations_skipped += len(conversations) - len(kept)
            conversations = kept

        if options.only_saved_contacts:
            conversations = await self._saved_contacts_only(run, provider, credentials, conversations)

        if options.limit and len(conversations) > options.limit:
            run.counts.conversations_skipped += len(conversations) - options.limit
            conversations = conversations[: options.limit]

        logger.info(
            "Conversations selected for sync",
            extra={
                "workspace_id": run.workspace_id,
                "provider": run.provider.value,
                "from_provider": run.counts.conversations_from_provider,
                "selected": len(conversations),
                "partial": run.partial,
            },
        )

        run.enter_phase(SyncPhase.MESSAGES, len(conversations))
        for conversation in conversations:
            if run.cancel_requested:
                logger.info(
                    "Sync cancelled between conversations",
                    extra={"workspace_id": run.workspace_id, "processed": run.processed, "total": run.total},
                )
                return
            try:
                await self._sync_conversation(run, provider, credentials, options, conversation, since, until)
            except Exception:
                logger.exception(
                    "Failed to sync conversation, skipping",
                    extra={"workspace_id": run.workspace_id, "conversation_id": conversation.external_id},
                )
                run.counts.errors += 1
                run.counts.conversations_skipped += 1
            run.advance()

    async def _saved_contacts_only(
        self,
        run: SyncRun,
        provider: CommunicationProvider,
        credentials: Credentials,
        conversations: list[ConversationData],
    ) -> list[ConversationData]:
        try:
            contacts = await provider.get_contacts(credentials)
        except ProviderError as e:
            logger.warning(
                "Cannot fetch contacts, saved contacts filter disabled",
                extra={"workspace_id": run.workspace_id, "error": str(e)},
            )
            return conversations

        index = ContactIndex(contacts)
        if not index:
            logger.warning(
                "No contacts found, saved contacts filter disabled",
                extra={"workspace_id": run.workspace_id},
            )
            return conversations

        kept = []
        for conversation in conversations:
            contact = index.lookup(conversation.participant)
            if contact is not None and has_real_name(contact):
                kept.append(conversation)
        run.counts.conversations_skipped += len(conversations) - len(kept)
        return kept

    async def _sync_conversation(
        self,
        run: SyncRun,
        provider: CommunicationProvider,
        credentials: Credentials,
        options: SyncOptions,
        conversation: ConversationData,
        since: datetime | None,
        until: datetime | None,
    ) -> None:
        log_extra = {"workspace_id": run.workspace_id, "conversation_id": conversation.external_id}
        messages, calls = [], []

        if options.sync_messages:
            try:
                messages = await provider.get_messages(credentials, conversation, since=since)
            except ProviderError as e:
                logger.warning("Failed to fetch messages, skipping", extra={**log_extra, "error": str(e)})
                run.counts.errors += 1
            try:
                calls = await provider.get_calls(credentials, conversation, since=since)
            except ProviderError as e:
                logger.warning("Failed to fetch calls, skipping", extra={**log_extra, "error": str(e)})
                run.counts.errors += 1

        if until is not None:
            messages = [m for m in messages if as_utc(m.created_at) <= until]
            calls = [c for c in calls if as_utc(c.created_at) <= until]

        events: list[CanonicalEvent] = []
        async with self._store_factory() as store:
            stored = await store.upsert_conversation(run.workspace_id, run.provider, conversation)
            for message in messages:
                result = await store.upsert_message(run.workspace_id, run.provider, stored.id, message)
                if result.created or options.force_refresh:
                    run.counts.messages_synced += 1
                kind = message_event_kind(message)
                if result.created and kind is not None:
                    events.append(message_event(kind, run.workspace_id, run.provider, message, stored.id))
            for call in calls:
                result = await store.upsert_call(run.workspace_id, run.provider, stored.id, call)
                if result.created or options.force_refresh:
                    run.counts.calls_synced += 1
                if result.created:
                    events.append(call_event(EventKind.CALL_COMPLETED, run.workspace_id, run.provider, call, stored.id))

        run.counts.conversations_synced += 1
        await self._publish(events)

    # ---- contacts

    async def _store_contacts(self, run: SyncRun, contacts: Sequence[ContactData]) -> None:
        run.enter_phase(SyncPhase.CONTACTS, len(contacts))
        for start in range(0, len(contacts), CONTACT_BATCH_SIZE):
            if run.cancel_requested:
                return
            batch = contacts[start : start + CONTACT_BATCH_SIZE]
            async with self._store_factory() as store:
                for contact in batch:
                    result = await store.upsert_contact(run.workspace_id, run.provider, contact)
                    if result.created:
                        run.counts.contacts_created += 1
                    elif result.changed:
                        run.counts.contacts_updated += 1
            run.advance(len(batch))

    async def _sync_contacts(
        self,
        run: SyncRun,
        provider: CommunicationProvider,
        credentials: Credentials,
        options: SyncOptions,
    ) -> None:
        run.enter_phase(SyncPhase.CONTACTS, 0)
        contacts = await provider.get_contacts(credentials, options.limit)
        await self._store_contacts(run, [c for c in contacts if c.external_id])

    async def _sync_participant_contacts(
        self,
        run: SyncRun,
        provider: CommunicationProvider,
        credentials: Credentials,
        options: SyncOptions,
        since: datetime | None,
    ) -> None:
        run.enter_phase(SyncPhase.CONVERSATIONS, 0)
        listing = await provider.discover_conversations(credentials, options.limit, options.phone_number_id, since)
        run.partial = not listing.complete
        run.counts.conversations_from_provider = len(listing.conversations)

        seen: dict[str, ContactData] = {}
        for conversation in listing.conversations:
            numbers = conversation.participants or (conversation.participant,)
            for number in numbers:
                e164 = normalize_e164(number)
                if not e164 or number == UNKNOWN_NUMBER or e164 in seen:
                    continue
                seen[e164] = ContactData(
                    external_id=f"participant:{e164}",
                    display_name=e164,
                    phone_numbers=(e164,),
                )
        await self._store_contacts(run, list(seen.values()))


@lru_cache(maxsize=1)
def get_sync_orchestrator() -> SyncOrchestrator:
    """Process-wide orchestrator wired to the default database."""
    manager = get_database_manager()
    return SyncOrchestrator(
        lambda: communication_store(manager),
        load_integration_credentials(manager),
        fanout=get_event_fanout(),
    )
