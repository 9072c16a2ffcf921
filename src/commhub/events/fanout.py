"""
In-process real-time fanout keyed by workspace.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import lru_cache

from commhub.config import get_settings
from commhub.events.models import CanonicalEvent
from commhub.events.outbound import OutboundWebhookDispatcher
from commhub.shared.database import get_database_manager
from commhub.shared.logging import get_logger
from commhub.storage.repository import webhook_subscriptions

logger = get_logger(__name__)


class RealtimeBroker:
    """Publish/subscribe by workspace; every subscriber owns a bounded queue."""

    def __init__(self, queue_size: int | None = None) -> None:
        self._queue_size = queue_size or get_settings().realtime_queue_size
        self._subscribers: dict[str, set[asyncio.Queue[CanonicalEvent]]] = {}

    @asynccontextmanager
    async def subscribe(self, workspace_id: str) -> AsyncIterator[asyncio.Queue[CanonicalEvent]]:
        queue: asyncio.Queue[CanonicalEvent] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.setdefault(workspace_id, set()).add(queue)
        try:
            yield queue
        finally:
            subscribers = self._subscribers.get(workspace_id)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[workspace_id]

    def subscriber_count(self, workspace_id: str) -> int:
        return len(self._subscribers.get(workspace_id, ()))

    def publish(self, event: CanonicalEvent) -> int:
        """Enqueue for every subscriber of the workspace; returns how many got it."""
        delivered = 0
        for queue in list(self._subscribers.get(event.workspace_id, ())):
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(
                    "Realtime subscriber queue full, dropping event",
                    extra={"workspace_id": event.workspace_id, "event": event.kind.value},
                )
        return delivered


class EventFanout:
    """Single publish point for canonical events."""

    def __init__(
        self,
        broker: RealtimeBroker,
        dispatcher: OutboundWebhookDispatcher | None = None,
    ) -> None:
        self.broker = broker
        self.dispatcher = dispatcher

    async def publish(self, event: CanonicalEvent, *, deliver_outbound: bool = True) -> None:
        self.broker.publish(event)
        if deliver_outbound and self.dispatcher is not None:
            await self.dispatcher.dispatch(event)

    async def deliver_outbound(self, event: CanonicalEvent) -> None:
        if self.dispatcher is not None:
            await self.dispatcher.dispatch(event)


@lru_cache(maxsize=1)
def get_event_fanout() -> EventFanout:
    """Process-wide fanout wired to the default database."""
    manager = get_database_manager()
    return EventFanout(
        RealtimeBroker(),
        OutboundWebhookDispatcher(lambda: webhook_subscriptions(manager)),
    )
