"""
Outbound tenant webhook delivery.

Each canonical event is POSTed once to every active subscription of the
workspace. Results are recorded on the subscription; there is no retry
queue. A subscription is paused after too many consecutive failures.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import anyio
import httpx

from commhub.config import get_settings
from commhub.events.models import CanonicalEvent
from commhub.shared.logging import get_logger
from commhub.storage.models import WebhookSubscriptionRecord
from commhub.storage.repository import WebhookSubscriptionStore

logger = get_logger(__name__)

EVENT_HEADER = "X-Commhub-Event"
TIMESTAMP_HEADER = "X-Commhub-Timestamp"
SIGNATURE_HEADER = "X-Commhub-Signature"
TEST_HEADER = "X-Commhub-Test"

SubscriptionStoreFactory = Callable[[], AbstractAsyncContextManager[WebhookSubscriptionStore]]


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    status_code: int | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"success": self.success, "status_code": self.status_code, "error": self.error}


def sign_payload(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the raw JSON body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def encode_payload(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")


class OutboundWebhookDispatcher:
    """Signs and POSTs canonical events to tenant subscriptions."""

    def __init__(
        self,
        subscriptions: SubscriptionStoreFactory,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float | None = None,
        max_failures: int | None = None,
    ) -> None:
        settings = get_settings()
        self._subscriptions = subscriptions
        self._http_client = http_client
        self._timeout = timeout_seconds or settings.outbound_webhook_timeout_seconds
        self._max_failures = max_failures or settings.outbound_webhook_max_failures

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            yield client

    async def deliver(
        self,
        client: httpx.AsyncClient,
        subscription: WebhookSubscriptionRecord,
        payload: dict[str, Any],
        *,
        test: bool = False,
    ) -> DeliveryResult:
        """POST one payload; never raises."""
        body = encode_payload(payload)
        headers = {
            "Content-Type": "application/json",
            EVENT_HEADER: str(payload.get("event", "")),
            TIMESTAMP_HEADER: str(payload.get("timestamp", "")),
        }
        if subscription.secret:
            headers[SIGNATURE_HEADER] = sign_payload(subscription.secret, body)
        if test:
            headers[TEST_HEADER] = "true"

        try:
            response = await client.post(subscription.url, content=body, headers=headers, timeout=self._timeout)
        except httpx.TimeoutException:
            return DeliveryResult(success=False, error="timeout")
        except httpx.HTTPError as e:
            return DeliveryResult(success=False, error=str(e) or e.__class__.__name__)

        if response.is_success:
            return DeliveryResult(success=True, status_code=response.status_code)
        return DeliveryResult(
            success=False,
            status_code=response.status_code,
            error=f"HTTP {response.status_code}",
        )

    async def dispatch(self, event: CanonicalEvent) -> dict[str, DeliveryResult]:
        """Deliver ``event`` to every matching subscription and record outcomes.

        Returns:
            Delivery result per subscription id.
        """
        async with self._subscriptions() as store:
            subscriptions = list(await store.list_active(event.workspace_id, event.kind.value))
        if not subscriptions:
            return {}

        payload = event.to_payload()
        results: dict[str, DeliveryResult] = {}

        async with self._client() as client:

            async def run(subscription: WebhookSubscriptionRecord) -> None:
                results[str(subscription.id)] = await self.deliver(client, subscription, payload)

            async with anyio.create_task_group() as tg:
                for subscription in subscriptions:
                    tg.start_soon(run, subscription)

        async with self._subscriptions() as store:
            for subscription in subscriptions:
                result = results[str(subscription.id)]
                if result.success:
                    await store.record_success(subscription.id)
                    continue
                paused = await store.record_failure(subscription.id, result.error or "unknown", self._max_failures)
                logger.warning(
                    "Outbound webhook delivery failed",
                    extra={
                        "workspace_id": event.workspace_id,
                        "subscription_id": str(subscription.id),
                        "event": event.kind.value,
                        "status_code": result.status_code,
                        "error": result.error,
                        "paused": paused,
                    },
                )

        logger.info(
            "Outbound webhooks dispatched",
            extra={
                "workspace_id": event.workspace_id,
                "event": event.kind.value,
                "subscriptions": len(subscriptions),
                "succeeded": sum(1 for r in results.values() if r.success),
            },
        )
        return results

    async def test_delivery(self, subscription: WebhookSubscriptionRecord) -> dict[str, Any]:
        """Send a test payload and report the outcome without recording anything."""
        payload = {
            "event": "test",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": {
                "message": "Test webhook delivery",
                "subscription_id": str(subscription.id),
                "workspace_id": subscription.workspace_id,
            },
        }
        async with self._client() as client:
            result = await self.deliver(client, subscription, payload, test=True)
        return result.as_dict()
