"""API tests for provider webhook callbacks (SQLite-backed)."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from commhub.communication.models import MessageDirection, ProviderType
from commhub.events.fanout import EventFanout, RealtimeBroker, get_event_fanout
from commhub.events.models import EventKind
from commhub.main import create_app
from commhub.providers.credentials import OpenPhoneCredentials
from commhub.shared.database import DatabaseManager, get_database_manager
from commhub.storage.repository import CommunicationRepository, IntegrationRepository
from commhub.webhooks.router import EMPTY_TWIML
from commhub.webhooks.verification import twilio_signature

OURS = "+15559990000"
THEM = "+15550000001"
SIGNING_KEY = b"op-signing-key"


class RecordingDispatcher:
    def __init__(self) -> None:
        self.dispatched = []

    async def dispatch(self, event) -> dict:
        self.dispatched.append(event)
        return {}


def seed_integration(
    manager: DatabaseManager,
    provider: ProviderType,
    webhook_id: str,
    credentials: dict,
    secret: str | None = None,
) -> None:
    async def save() -> None:
        async with manager.session() as session:
            await IntegrationRepository(session).save(
                "ws-1", provider, credentials=credentials, webhook_id=webhook_id, webhook_secret=secret
            )

    asyncio.run(save())


def stored_messages(manager: DatabaseManager, provider: ProviderType) -> list:
    async def load() -> list:
        async with manager.session() as session:
            repo = CommunicationRepository(session)
            messages = []
            for conversation in await repo.list_conversations("ws-1", provider):
                messages.extend(await repo.list_messages(conversation.id))
            return messages

    return asyncio.run(load())


def openphone_body(event_type: str = "message.received", message_id: str = "AC1") -> bytes:
    return json.dumps(
        {
            "id": "EV1",
            "type": event_type,
            "data": {
                "object": {
                    "id": message_id,
                    "from": THEM,
                    "to": [OURS],
                    "direction": "incoming",
                    "text": "hello there",
                    "status": "received",
                    "createdAt": "2026-02-10T12:00:00Z",
                    "phoneNumberId": "PN1",
                    "conversationId": "CN1",
                }
            },
        }
    ).encode()


def openphone_signature(body: bytes, timestamp: str = "1767225600000") -> str:
    digest = hmac.new(SIGNING_KEY, timestamp.encode() + b"." + body, hashlib.sha256).digest()
    return f"hmac;1;{timestamp};{base64.b64encode(digest).decode()}"


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def client(sync_db_manager, dispatcher, monkeypatch) -> TestClient:
    monkeypatch.setenv("PUBLIC_BASE_URL", "https://hub.example.com")
    app = create_app()
    app.dependency_overrides[get_database_manager] = lambda: sync_db_manager
    app.dependency_overrides[get_event_fanout] = lambda: EventFanout(RealtimeBroker(queue_size=10), dispatcher)
    return TestClient(app)


class TestRouting:
    def test_unknown_webhook_id_is_not_found(self, client) -> None:
        response = client.post("/webhooks/openphone/nope", content=openphone_body())

        assert response.status_code == 404

    def test_provider_mismatch_is_not_found(self, client, sync_db_manager) -> None:
        seed_integration(sync_db_manager, ProviderType.OPENPHONE, "op-hook", {"api_key": "k"})

        response = client.post("/webhooks/twilio/op-hook", data={"MessageSid": "SM1"})

        assert response.status_code == 404

    def test_unknown_provider_segment(self, client) -> None:
        assert client.post("/webhooks/whatsapp/x", content=b"{}").status_code == 422


class TestOpenPhoneWebhooks:
    def test_message_is_stored_and_published_once(self, client, sync_db_manager, dispatcher) -> None:
        seed_integration(sync_db_manager, ProviderType.OPENPHONE, "op-hook", {"api_key": "k"})

        first = client.post("/webhooks/openphone/op-hook", content=openphone_body())
        duplicate = client.post("/webhooks/openphone/op-hook", content=openphone_body())

        assert first.status_code == 200
        assert first.json() == {"received": True}
        assert duplicate.status_code == 200

        messages = stored_messages(sync_db_manager, ProviderType.OPENPHONE)
        assert len(messages) == 1
        assert messages[0].direction == MessageDirection.IN
        assert messages[0].body == "hello there"

        assert len(dispatcher.dispatched) == 1
        assert dispatcher.dispatched[0].kind == EventKind.MESSAGE_RECEIVED
        assert dispatcher.dispatched[0].workspace_id == "ws-1"

    def test_signed_delivery_is_verified(self, client, sync_db_manager) -> None:
        seed_integration(
            sync_db_manager,
            ProviderType.OPENPHONE,
            "op-hook",
            {"api_key": "k"},
            secret=base64.b64encode(SIGNING_KEY).decode(),
        )
        body = openphone_body()

        missing = client.post("/webhooks/openphone/op-hook", content=body)
        forged = client.post(
            "/webhooks/openphone/op-hook",
            content=body,
            headers={"openphone-signature": openphone_signature(b"something else")},
        )
        valid = client.post(
            "/webhooks/openphone/op-hook",
            content=body,
            headers={"openphone-signature": openphone_signature(body)},
        )

        assert missing.status_code == 401
        assert forged.status_code == 401
        assert valid.status_code == 200
        assert len(stored_messages(sync_db_manager, ProviderType.OPENPHONE)) == 1

    def test_invalid_json_is_bad_request(self, client, sync_db_manager) -> None:
        seed_integration(sync_db_manager, ProviderType.OPENPHONE, "op-hook", {"api_key": "k"})

        assert client.post("/webhooks/openphone/op-hook", content=b"not json").status_code == 400
        assert client.post("/webhooks/openphone/op-hook", content=b"[1, 2]").status_code == 400

    def test_unhandled_event_type_is_acknowledged(self, client, sync_db_manager, dispatcher) -> None:
        seed_integration(sync_db_manager, ProviderType.OPENPHONE, "op-hook", {"api_key": "k"})

        response = client.post("/webhooks/openphone/op-hook", content=openphone_body("contact.updated"))

        assert response.status_code == 200
        assert dispatcher.dispatched == []


class TestTwilioWebhooks:
    FORM = {"MessageSid": "SM1", "SmsStatus": "received", "From": THEM, "To": OURS, "Body": "hi"}
    URL = "https://hub.example.com/webhooks/twilio/tw-hook"

    @pytest.fixture(autouse=True)
    def integration(self, sync_db_manager) -> None:
        seed_integration(
            sync_db_manager, ProviderType.TWILIO, "tw-hook", {"account_sid": "AC1", "auth_token": "tok"}
        )

    def test_signed_inbound_sms_returns_empty_twiml(self, client, sync_db_manager, dispatcher) -> None:
        signature = twilio_signature("tok", self.URL, self.FORM)

        response = client.post(
            "/webhooks/twilio/tw-hook", data=self.FORM, headers={"X-Twilio-Signature": signature}
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert response.text == EMPTY_TWIML
        assert [m.provider_message_id for m in stored_messages(sync_db_manager, ProviderType.TWILIO)] == ["SM1"]
        assert dispatcher.dispatched[0].kind == EventKind.MESSAGE_RECEIVED

    def test_missing_signature_is_rejected(self, client, sync_db_manager) -> None:
        response = client.post("/webhooks/twilio/tw-hook", data=self.FORM)

        assert response.status_code == 401
        assert stored_messages(sync_db_manager, ProviderType.TWILIO) == []

    def test_signature_for_another_url_is_rejected(self, client) -> None:
        signature = twilio_signature("tok", "https://elsewhere.test/webhooks/twilio/tw-hook", self.FORM)

        response = client.post(
            "/webhooks/twilio/tw-hook", data=self.FORM, headers={"X-Twilio-Signature": signature}
        )

        assert response.status_code == 401

    def test_credentials_of_another_provider_are_rejected(self, client, sync_db_manager, monkeypatch) -> None:
        monkeypatch.setattr(
            "commhub.webhooks.router.parse_credentials", lambda provider, raw: OpenPhoneCredentials(api_key="k")
        )
        signature = twilio_signature("tok", self.URL, self.FORM)

        response = client.post(
            "/webhooks/twilio/tw-hook", data=self.FORM, headers={"X-Twilio-Signature": signature}
        )

        assert response.status_code == 401
        assert stored_messages(sync_db_manager, ProviderType.TWILIO) == []
