"""
Shared pytest fixtures and in-memory fakes.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

import httpx
import pytest
import pytest_asyncio

import commhub.storage.models  # noqa: F401  (registers tables on Base.metadata)
from commhub.communication.models import (
    CallData,
    ContactData,
    ConversationData,
    MessageData,
    ProviderType,
    TranscriptStatus,
    advance_message_status,
)
from commhub.providers.config import ProviderSettings
from commhub.shared.database import DatabaseManager
from commhub.storage.repository import UpsertResult


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def provider_settings() -> ProviderSettings:
    return ProviderSettings(
        openphone_api_base_url="https://op.test/v1",
        twilio_api_base_url="https://tw.test/2010-04-01",
        twilio_messaging_base_url="https://msg.tw.test/v1",
        rate_limit_fallback_delay_seconds=2.0,
    )


class SleepRecorder:
    """Stand-in for anyio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ---- database


@pytest.fixture
def sqlite_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'commhub.db'}"


@pytest_asyncio.fixture
async def db_manager(sqlite_url: str) -> AsyncIterator[DatabaseManager]:
    manager = DatabaseManager(sqlite_url)
    await manager.create_all()
    yield manager
    await manager.close()


@pytest.fixture
def sync_db_manager(sqlite_url: str):
    """DatabaseManager for sync tests (TestClient runs its own event loop)."""
    manager = DatabaseManager(sqlite_url)
    asyncio.run(manager.create_all())
    yield manager
    asyncio.run(manager.close())


# ---- in-memory canonical store


class FakeStore:
    """In-memory CommunicationStore keyed the same way as the SQL repository."""

    def __init__(self) -> None:
        self.conversations: dict[str, dict[str, Any]] = {}
        self.messages: dict[str, dict[str, Any]] = {}
        self.calls: dict[str, dict[str, Any]] = {}
        self.contacts: dict[str, ContactData] = {}
        self.recordings: dict[str, str | None] = {}
        self.last_completed_at: datetime | None = None
        self.checkpoints: list[dict[str, Any]] = []

    async def upsert_conversation(
        self, workspace_id: str, provider: ProviderType, conversation: ConversationData
    ) -> UpsertResult:
        entry = self.conversations.get(conversation.external_id)
        if entry is None:
            entry = {"id": uuid4(), "data": conversation, "last_message_at": conversation.last_message_at}
            self.conversations[conversation.external_id] = entry
            return UpsertResult(id=entry["id"], created=True, changed=True)
        observed = conversation.last_message_at
        if observed and (entry["last_message_at"] is None or observed > entry["last_message_at"]):
            entry["last_message_at"] = observed
        return UpsertResult(id=entry["id"], created=False)

    async def upsert_message(
        self, workspace_id: str, provider: ProviderType, conversation_id: UUID, message: MessageData
    ) -> UpsertResult:
        entry = self.messages.get(message.provider_message_id)
        if entry is None:
            entry = {"id": uuid4(), "status": message.status, "conversation_id": conversation_id}
            self.messages[message.provider_message_id] = entry
            return UpsertResult(id=entry["id"], created=True, changed=True)
        status = advance_message_status(entry["status"], message.status)
        changed = status != entry["status"]
        entry["status"] = status
        return UpsertResult(id=entry["id"], created=False, changed=changed)

    async def upsert_call(
        self,
        workspace_id: str,
        provider: ProviderType,
        conversation_id: UUID,
        call: CallData,
        *,
        update_existing: bool = True,
    ) -> UpsertResult:
        entry = self.calls.get(call.provider_call_id)
        if entry is None:
            entry = {"id": uuid4(), "status": call.status}
            self.calls[call.provider_call_id] = entry
            return UpsertResult(id=entry["id"], created=True, changed=True)
        if not update_existing:
            return UpsertResult(id=entry["id"], created=False)
        changed = entry["status"] != call.status
        entry["status"] = call.status
        return UpsertResult(id=entry["id"], created=False, changed=changed)

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
        entry = self.calls.get(provider_call_id)
        if entry is None:
            return None
        self.recordings[provider_call_id] = recording_url
        return UpsertResult(id=entry["id"], created=False, changed=True)

    async def upsert_contact(
        self, workspace_id: str, provider: ProviderType, contact: ContactData
    ) -> UpsertResult:
        existing = self.contacts.get(contact.external_id)
        self.contacts[contact.external_id] = contact
        if existing is None:
            return UpsertResult(id=uuid4(), created=True, changed=True)
        return UpsertResult(id=uuid4(), created=False, changed=existing != contact)

    async def get_last_completed_at(self, workspace_id: str, provider: ProviderType) -> datetime | None:
        return self.last_completed_at

    async def save_checkpoint(
        self,
        workspace_id: str,
        provider: ProviderType,
        *,
        status: str,
        counts: dict[str, Any],
        completed_at: datetime | None = None,
    ) -> None:
        self.checkpoints.append({"status": status, "counts": counts, "completed_at": completed_at})
        if completed_at is not None:
            self.last_completed_at = completed_at


class FakeLedger:
    def __init__(self) -> None:
        self.keys: set[tuple[str, str, str]] = set()

    async def record_once(
        self,
        workspace_id: str,
        provider: ProviderType,
        event_type: str,
        external_id: str,
        payload: dict[str, Any],
    ) -> bool:
        key = (provider.value, event_type, external_id)
        if key in self.keys:
            return False
        self.keys.add(key)
        return True


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def store_factory(fake_store: FakeStore):
    @asynccontextmanager
    async def factory() -> AsyncIterator[FakeStore]:
        yield fake_store

    return factory
