"""
FastAPI router for provider webhook callbacks.

Key constraints:
- providers retry or disable webhooks that are slow or failing, so the
  request only does verification, one committed upsert and the real-time
  publish; outbound tenant delivery runs as a background task
- unknown callback paths and bad signatures are rejected before any payload
  is interpreted
"""

import json
from typing import Annotated, Any
from uuid import uuid4

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response, status

from commhub.communication.models import ProviderType
from commhub.config import get_settings
from commhub.events.fanout import EventFanout, get_event_fanout
from commhub.providers.credentials import TwilioCredentials, parse_credentials
from commhub.providers.interface import ConfigurationError
from commhub.shared.database import DatabaseManager, get_database_manager
from commhub.shared.logging import get_logger, log_context
from commhub.storage.models import IntegrationRecord
from commhub.storage.repository import CommunicationRepository, IntegrationRepository, WebhookEventRepository
from commhub.webhooks.handler import WebhookHandler
from commhub.webhooks.normalizer import NormalizedEvent, normalize_openphone, normalize_twilio
from commhub.webhooks.verification import (
    OPENPHONE_LEGACY_SIGNATURE_HEADER,
    OPENPHONE_SIGNATURE_HEADER,
    TWILIO_SIGNATURE_HEADER,
    verify_openphone_legacy_signature,
    verify_openphone_signature,
    verify_twilio_signature,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


def _reject(reason: str, extra: dict[str, Any]) -> HTTPException:
    logger.warning("Webhook rejected", extra={**extra, "reason": reason})
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")


def _verify_openphone(request: Request, integration: IntegrationRecord, body: bytes, extra: dict[str, Any]) -> None:
    secret = integration.webhook_secret
    if not secret:
        # Registration returned no key; the opaque path is the only binding.
        return
    header = request.headers.get(OPENPHONE_SIGNATURE_HEADER)
    if header:
        if not verify_openphone_signature(secret, body, header):
            raise _reject("signature_mismatch", extra)
        return
    legacy = request.headers.get(OPENPHONE_LEGACY_SIGNATURE_HEADER)
    if legacy:
        if not verify_openphone_legacy_signature(secret, body, legacy):
            raise _reject("signature_mismatch", extra)
        return
    raise _reject("signature_missing", extra)


def _verify_twilio(
    request: Request,
    integration: IntegrationRecord,
    webhook_id: str,
    form: dict[str, str],
    extra: dict[str, Any],
) -> None:
    signature = request.headers.get(TWILIO_SIGNATURE_HEADER)
    if not signature:
        raise _reject("signature_missing", extra)
    try:
        credentials = parse_credentials(ProviderType.TWILIO, integration.credentials)
    except ConfigurationError:
        raise _reject("credentials_missing", extra)
    if not isinstance(credentials, TwilioCredentials):
        raise _reject("credentials_missing", extra)

    # Twilio signs the public URL it was configured with, query string included.
    url = get_settings().webhook_callback_url(ProviderType.TWILIO.value, webhook_id)
    if request.url.query:
        url = f"{url}?{request.url.query}"
    if not verify_twilio_signature(credentials.auth_token, url, form, signature):
        raise _reject("signature_mismatch", extra)


@router.post("/{provider}/{webhook_id}")
async def receive_webhook(
    provider: ProviderType,
    webhook_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Annotated[DatabaseManager, Depends(get_database_manager)],
    fanout: Annotated[EventFanout, Depends(get_event_fanout)],
) -> Response:
    """Receive a provider push event for one tenant registration."""
    request_id = request.headers.get("x-request-id") or uuid4().hex
    with log_context(request_id=request_id, provider=provider.value, webhook_id=webhook_id):
        return await _process(provider, webhook_id, request, background_tasks, db, fanout)


async def _process(
    provider: ProviderType,
    webhook_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    db: DatabaseManager,
    fanout: EventFanout,
) -> Response:
    extra: dict[str, Any] = {}

    async with db.session() as session:
        integration = await IntegrationRepository(session).get_by_webhook_id(webhook_id)
    if integration is None or integration.provider != provider:
        logger.warning("Webhook for unknown registration", extra=extra)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invalid webhook URL")
    extra["workspace_id"] = integration.workspace_id

    normalized: NormalizedEvent | None
    if provider == ProviderType.OPENPHONE:
        body = await request.body()
        _verify_openphone(request, integration, body, extra)
        try:
            payload = json.loads(body or b"{}")
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")
        if not isinstance(payload, dict):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")
        normalized = normalize_openphone(payload)
    else:
        form = {key: str(value) for key, value in (await request.form()).items()}
        _verify_twilio(request, integration, webhook_id, form, extra)
        normalized = normalize_twilio(form)

    if normalized is not None:
        async with db.session() as session:
            handler = WebhookHandler(CommunicationRepository(session), WebhookEventRepository(session))
            result = await handler.handle(integration.workspace_id, normalized)

        if result.event is not None:
            await fanout.publish(result.event, deliver_outbound=False)
            background_tasks.add_task(fanout.deliver_outbound, result.event)

    if provider == ProviderType.TWILIO:
        return Response(content=EMPTY_TWIML, media_type="application/xml")
    return Response(content=json.dumps({"received": True}), media_type="application/json")
