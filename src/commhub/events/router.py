"""
Real-time websocket stream and outbound webhook test delivery.
"""

from typing import Annotated, Any
from uuid import UUID

import anyio
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from commhub.events.fanout import EventFanout, get_event_fanout
from commhub.shared.database import DatabaseManager, get_database_manager
from commhub.shared.exceptions import NotFoundError, ValidationError
from commhub.shared.logging import get_logger
from commhub.storage.repository import WebhookSubscriptionRepository

logger = get_logger(__name__)

router = APIRouter(tags=["events"])


@router.websocket("/ws/{workspace_id}")
async def stream_events(
    websocket: WebSocket,
    workspace_id: str,
    fanout: Annotated[EventFanout, Depends(get_event_fanout)],
) -> None:
    await websocket.accept()
    logger.info("Realtime subscriber connected", extra={"workspace_id": workspace_id})
    async with fanout.broker.subscribe(workspace_id) as queue, anyio.create_task_group() as tg:

        async def forward() -> None:
            while True:
                event = await queue.get()
                await websocket.send_json(event.to_payload())

        tg.start_soon(forward)
        try:
            # Client frames are ignored; reading them is how a disconnect surfaces.
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.info("Realtime subscriber disconnected", extra={"workspace_id": workspace_id})
        finally:
            tg.cancel_scope.cancel()


@router.post("/webhook-subscriptions/{workspace_id}/{subscription_id}/test")
async def test_webhook_subscription(
    workspace_id: str,
    subscription_id: UUID,
    db: Annotated[DatabaseManager, Depends(get_database_manager)],
    fanout: Annotated[EventFanout, Depends(get_event_fanout)],
) -> dict[str, Any]:
    """Send a test payload to one subscription and report the outcome."""
    async with db.session() as session:
        subscription = await WebhookSubscriptionRepository(session).get(workspace_id, subscription_id)
    if subscription is None:
        raise NotFoundError(f"Webhook subscription {subscription_id} not found")
    if fanout.dispatcher is None:
        raise ValidationError("Outbound webhooks are not configured")
    return await fanout.dispatcher.test_delivery(subscription)
