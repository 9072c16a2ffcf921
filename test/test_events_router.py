"""API tests for the realtime stream and subscription test delivery."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from uuid import uuid4

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import mock_client

from commhub.communication.models import ProviderType
from commhub.events.fanout import EventFanout, get_event_fanout
from commhub.events.models import CanonicalEvent, EventKind
from commhub.events.outbound import TEST_HEADER, OutboundWebhookDispatcher
from commhub.main import create_app
from commhub.shared.database import get_database_manager
from commhub.storage.repository import WebhookSubscriptionRepository, webhook_subscriptions


class PrefilledBroker:
    """Broker whose subscription queue already holds the given events."""

    def __init__(self, events: list[CanonicalEvent]) -> None:
        self.events = events
        self.subscribed: list[str] = []

    @asynccontextmanager
    async def subscribe(self, workspace_id: str):
        self.subscribed.append(workspace_id)
        queue: asyncio.Queue[CanonicalEvent] = asyncio.Queue()
        for event in self.events:
            queue.put_nowait(event)
        yield queue


def app_with(fanout: EventFanout, db_manager=None) -> TestClient:
    app = create_app()
    app.dependency_overrides[get_event_fanout] = lambda: fanout
    if db_manager is not None:
        app.dependency_overrides[get_database_manager] = lambda: db_manager
    return TestClient(app)


class TestRealtimeStream:
    def test_subscriber_receives_workspace_events(self) -> None:
        event = CanonicalEvent(
            kind=EventKind.MESSAGE_RECEIVED,
            workspace_id="ws-1",
            provider=ProviderType.OPENPHONE,
            data={"message": {"provider_message_id": "AC1", "body": "hi"}},
        )
        broker = PrefilledBroker([event])
        client = app_with(EventFanout(broker))

        with client.websocket_connect("/ws/ws-1") as websocket:
            received = websocket.receive_json()

        assert broker.subscribed == ["ws-1"]
        assert received["event"] == "message.received"
        assert received["data"]["workspace_id"] == "ws-1"
        assert received["data"]["message"]["body"] == "hi"


class TestSubscriptionTestDelivery:
    @pytest.fixture
    def subscription_id(self, sync_db_manager):
        async def create():
            async with sync_db_manager.session() as session:
                subscription = await WebhookSubscriptionRepository(session).create(
                    "ws-1", "https://tenant.test/hook", secret="whsec"
                )
                return subscription.id

        return asyncio.run(create())

    def test_sends_marked_test_payload(self, sync_db_manager, subscription_id) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200)

        dispatcher = OutboundWebhookDispatcher(
            lambda: webhook_subscriptions(sync_db_manager),
            http_client=mock_client(handler),
        )
        client = app_with(EventFanout(PrefilledBroker([]), dispatcher), sync_db_manager)

        response = client.post(f"/webhook-subscriptions/ws-1/{subscription_id}/test")

        assert response.status_code == 200
        assert response.json() == {"success": True, "status_code": 200, "error": None}
        assert str(requests[0].url) == "https://tenant.test/hook"
        assert requests[0].headers[TEST_HEADER] == "true"

    def test_failed_test_delivery_is_reported(self, sync_db_manager, subscription_id) -> None:
        dispatcher = OutboundWebhookDispatcher(
            lambda: webhook_subscriptions(sync_db_manager),
            http_client=mock_client(lambda request: httpx.Response(503)),
        )
        client = app_with(EventFanout(PrefilledBroker([]), dispatcher), sync_db_manager)

        response = client.post(f"/webhook-subscriptions/ws-1/{subscription_id}/test")

        assert response.json() == {"success": False, "status_code": 503, "error": "HTTP 503"}

    def test_unknown_or_foreign_subscription_is_not_found(self, sync_db_manager, subscription_id) -> None:
        client = app_with(EventFanout(PrefilledBroker([])), sync_db_manager)

        assert client.post(f"/webhook-subscriptions/ws-1/{uuid4()}/test").status_code == 404
        assert client.post(f"/webhook-subscriptions/ws-2/{subscription_id}/test").status_code == 404

    def test_without_dispatcher_is_a_bad_request(self, sync_db_manager, subscription_id) -> None:
        client = app_with(EventFanout(PrefilledBroker([])), sync_db_manager)

        response = client.post(f"/webhook-subscriptions/ws-1/{subscription_id}/test")

        assert response.status_code == 400
        assert "not configured" in response.json()["detail"]
