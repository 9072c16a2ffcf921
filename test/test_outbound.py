"""Tests for outbound tenant webhook delivery."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from uuid import UUID, uuid4

import httpx
import pytest

from conftest import mock_client

from commhub.communication.models import ProviderType
from commhub.events.models import CanonicalEvent, EventKind
from commhub.events.outbound import (
    EVENT_HEADER,
    SIGNATURE_HEADER,
    TEST_HEADER,
    OutboundWebhookDispatcher,
    encode_payload,
    sign_payload,
)

WS = "ws-1"


@dataclass
class Subscription:
    url: str
    secret: str | None = "whsec"
    events: list[str] = field(default_factory=list)
    workspace_id: str = WS
    id: UUID = field(default_factory=uuid4)
    failures: int = 0
    active: bool = True
    last_error: str | None = None


class FakeSubscriptionStore:
    def __init__(self, subscriptions: list[Subscription]) -> None:
        self.subscriptions = {s.id: s for s in subscriptions}

    async def list_active(self, workspace_id: str, event: str) -> list[Subscription]:
        return [
            s
            for s in self.subscriptions.values()
            if s.active and s.workspace_id == workspace_id and (not s.events or event in s.events)
        ]

    async def record_success(self, subscription_id: UUID) -> None:
        self.subscriptions[subscription_id].failures = 0

    async def record_failure(self, subscription_id: UUID, error: str, max_failures: int) -> bool:
        subscription = self.subscriptions[subscription_id]
        subscription.failures += 1
        subscription.last_error = error
        if subscription.failures >= max_failures:
            subscription.active = False
        return not subscription.active


def dispatcher_for(store: FakeSubscriptionStore, handler, max_failures: int = 3) -> OutboundWebhookDispatcher:
    @asynccontextmanager
    async def factory():
        yield store

    return OutboundWebhookDispatcher(
        factory,
        http_client=mock_client(handler),
        timeout_seconds=5.0,
        max_failures=max_failures,
    )


def received_event(workspace_id: str = WS) -> CanonicalEvent:
    return CanonicalEvent(
        kind=EventKind.MESSAGE_RECEIVED,
        workspace_id=workspace_id,
        provider=ProviderType.TWILIO,
        data={"message": {"provider_message_id": "SM1", "body": "hi"}},
    )


class TestDispatch:
    @pytest.mark.asyncio
    async def test_posts_signed_payload_to_matching_subscriptions(self) -> None:
        hit = Subscription(url="https://tenant.test/hook", events=["message.received"])
        other_kind = Subscription(url="https://tenant.test/calls", events=["call.completed"])
        everything = Subscription(url="https://tenant.test/all", secret=None)
        store = FakeSubscriptionStore([hit, other_kind, everything])
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(204)

        event = received_event()
        results = await dispatcher_for(store, handler).dispatch(event)

        assert set(results) == {str(hit.id), str(everything.id)}
        assert all(r.success for r in results.values())
        by_url = {str(r.url): r for r in requests}
        signed = by_url["https://tenant.test/hook"]
        assert signed.headers[EVENT_HEADER] == "message.received"
        assert signed.headers[SIGNATURE_HEADER] == sign_payload("whsec", signed.content)
        assert json.loads(signed.content) == event.to_payload()
        assert SIGNATURE_HEADER not in by_url["https://tenant.test/all"].headers

    @pytest.mark.asyncio
    async def test_no_subscriptions_means_no_requests(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no delivery expected")

        store = FakeSubscriptionStore([Subscription(url="https://tenant.test/hook", workspace_id="ws-2")])

        assert await dispatcher_for(store, handler).dispatch(received_event()) == {}

    @pytest.mark.asyncio
    async def test_failures_are_recorded_and_pause_the_subscription(self) -> None:
        sub = Subscription(url="https://tenant.test/hook")
        store = FakeSubscriptionStore([sub])

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500)

        dispatcher = dispatcher_for(store, handler, max_failures=2)

        first = await dispatcher.dispatch(received_event())
        assert first[str(sub.id)].status_code == 500
        assert sub.active is True

        await dispatcher.dispatch(received_event())
        assert sub.active is False
        assert sub.last_error == "HTTP 500"

        assert await dispatcher.dispatch(received_event()) == {}

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self) -> None:
        sub = Subscription(url="https://tenant.test/hook", failures=2)
        store = FakeSubscriptionStore([sub])

        await dispatcher_for(store, lambda request: httpx.Response(200)).dispatch(received_event())

        assert sub.failures == 0

    @pytest.mark.asyncio
    async def test_timeout_is_reported_not_raised(self) -> None:
        sub = Subscription(url="https://tenant.test/slow")
        store = FakeSubscriptionStore([sub])

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        results = await dispatcher_for(store, handler).dispatch(received_event())

        assert results[str(sub.id)].success is False
        assert results[str(sub.id)].error == "timeout"
        assert sub.failures == 1

    @pytest.mark.asyncio
    async def test_one_failing_tenant_does_not_block_another(self) -> None:
        broken = Subscription(url="https://down.test/hook")
        healthy = Subscription(url="https://tenant.test/hook")
        store = FakeSubscriptionStore([broken, healthy])

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "down.test":
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200)

        results = await dispatcher_for(store, handler).dispatch(received_event())

        assert results[str(broken.id)].success is False
        assert results[str(healthy.id)].success is True


class TestTestDelivery:
    @pytest.mark.asyncio
    async def test_marks_request_and_reports_outcome(self) -> None:
        sub = Subscription(url="https://tenant.test/hook")
        store = FakeSubscriptionStore([sub])
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200)

        outcome = await dispatcher_for(store, handler).test_delivery(sub)

        assert outcome == {"success": True, "status_code": 200, "error": None}
        assert requests[0].headers[TEST_HEADER] == "true"
        body = json.loads(requests[0].content)
        assert body["event"] == "test"
        assert body["data"]["subscription_id"] == str(sub.id)
        # test deliveries are not recorded
        assert sub.failures == 0


def test_encoding_is_compact_and_stable() -> None:
    assert encode_payload({"b": 1, "a": "x"}) == b'{"b":1,"a":"x"}'
