"""
OpenPhone provider adapter.

Talks to the OpenPhone public REST API (https://api.openphone.com/v1) with
the tenant's API key in the Authorization header (raw key, no scheme).

OpenPhone quirks absorbed here:
- senders are addressed by phone-number id, not by number;
- /conversations reports lastActivityAt values that can be stale, so
  recency is reconciled against /messages (see commhub.sync.discovery);
- /messages and /calls require phoneNumberId plus a participants list.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import quote

import httpx

from commhub.communication.models import (
    UNKNOWN_NUMBER,
    CallData,
    CallDirection,
    CallHandle,
    CallStatus,
    Channel,
    ContactData,
    ConversationData,
    ConversationListing,
    MessageData,
    MessageDirection,
    MessageStatus,
    PhoneNumberInfo,
    ProviderType,
    RecentConversation,
    RemoteWebhook,
    SendResult,
    TranscriptResult,
    TranscriptStatus,
    WebhookRegistration,
)
from commhub.communication.phone import normalize_e164
from commhub.providers.credentials import Credentials, OpenPhoneCredentials
from commhub.providers.http import HttpProvider, map_records, parse_timestamp, record, records
from commhub.providers.interface import (
    CommunicationProvider,
    ConfigurationError,
    NoSendingNumberError,
    ProviderError,
    ProviderNotFoundError,
    ProviderResponseError,
    UnsupportedChannelError,
)
from commhub.providers.pagination import Page, PaginationResult, gather_in_batches, paginate
from commhub.shared.logging import get_logger
from commhub.sync.discovery import (
    LatestMessage,
    candidate_window,
    filter_active_since,
    rank_by_listing,
    reconcile_recent,
)

logger = get_logger(__name__)

OPENPHONE_MESSAGE_STATUS_MAP: dict[str, MessageStatus] = {
    "delivered": MessageStatus.DELIVERED,
    "received": MessageStatus.DELIVERED,
    "sent": MessageStatus.SENT,
    "failed": MessageStatus.FAILED,
    "pending": MessageStatus.PENDING,
}

OPENPHONE_TRANSCRIPT_STATUS_MAP: dict[str, TranscriptStatus] = {
    "completed": TranscriptStatus.COMPLETED,
    "pending": TranscriptStatus.PENDING,
    "in-progress": TranscriptStatus.PENDING,
    "processing": TranscriptStatus.PENDING,
}

_MISSED_STATUSES = {"missed", "no-answer", "unanswered"}
_CANCELLED_STATUSES = {"cancelled", "canceled"}

NOTES_FIELD_NAMES = {"notes", "note", "comments"}

MESSAGE_WEBHOOK_EVENTS = ("message.received", "message.delivered")
CALL_WEBHOOK_EVENTS = ("call.completed", "call.ringing", "call.recording.completed")

PREVIEW_LENGTH = 100


def map_message_status(status: str | None) -> MessageStatus:
    return OPENPHONE_MESSAGE_STATUS_MAP.get((status or "").lower(), MessageStatus.PENDING)


def map_call_status(
    status: str | None,
    *,
    voicemail_url: str | None = None,
    duration: int | None = None,
    answered_at: str | None = None,
    direction: str | None = None,
) -> CallStatus:
    """Normalize OpenPhone's call status vocabulary (total; defaults to completed)."""
    if voicemail_url:
        return CallStatus.VOICEMAIL

    normalized = (status or "").lower()
    if normalized in _MISSED_STATUSES:
        return CallStatus.MISSED
    if normalized in _CANCELLED_STATUSES:
        return CallStatus.CANCELLED
    if normalized == "voicemail":
        return CallStatus.VOICEMAIL

    # Incoming and never answered
    if direction == "incoming" and not duration and not answered_at:
        return CallStatus.MISSED

    return CallStatus.COMPLETED


def _first(value: Any) -> str:
    if isinstance(value, list):
        return str(value[0]) if value else ""
    return str(value) if value else ""


def _created_at(raw: dict[str, Any]) -> datetime:
    return parse_timestamp(raw.get("createdAt")) or datetime.now(timezone.utc)


def map_message(raw: dict[str, Any], phone_number_id: str | None = None) -> MessageData:
    """Map an OpenPhone message object (REST or webhook shape)."""
    media = raw.get("media") or []
    media_urls = tuple(m["url"] for m in media if isinstance(m, dict) and m.get("url"))
    return MessageData(
        provider_message_id=str(raw.get("id", "")),
        direction=MessageDirection.IN if raw.get("direction") == "incoming" else MessageDirection.OUT,
        body=raw.get("content") or raw.get("text") or raw.get("body") or "",
        from_number=_first(raw.get("from")) or UNKNOWN_NUMBER,
        to_number=_first(raw.get("to")) or UNKNOWN_NUMBER,
        status=map_message_status(raw.get("status")),
        created_at=_created_at(raw),
        media_urls=media_urls,
        metadata={
            "type": raw.get("type"),
            "phone_number_id": raw.get("phoneNumberId") or phone_number_id,
            "conversation_id": raw.get("conversationId"),
            "media": media,
        },
    )


def map_call(raw: dict[str, Any], owned_number: str | None = None) -> CallData:
    """Map an OpenPhone call object; from/to are derived from direction when absent."""
    participants = raw.get("participants") or []
    participant = participants[0] if participants else ""
    direction = raw.get("direction")

    if direction == "incoming":
        from_number = _first(raw.get("from")) or participant or owned_number
        to_number = _first(raw.get("to")) or owned_number or participant
    else:
        from_number = _first(raw.get("from")) or owned_number or participant
        to_number = _first(raw.get("to")) or participant or owned_number

    recording_url = raw.get("recordingUrl")
    voicemail_url = raw.get("voicemailUrl")
    media = raw.get("media") or []
    if media and isinstance(media[0], dict):
        recording_url = recording_url or media[0].get("url")

    duration = int(raw.get("duration") or 0)
    answered_at = raw.get("answeredAt")

    return CallData(
        provider_call_id=str(raw.get("id", "")),
        direction=CallDirection.IN if direction == "incoming" else CallDirection.OUT,
        duration=duration,
        from_number=from_number or UNKNOWN_NUMBER,
        to_number=to_number or UNKNOWN_NUMBER,
        status=map_call_status(
            raw.get("status"),
            voicemail_url=voicemail_url,
            duration=duration,
            answered_at=answered_at,
            direction=direction,
        ),
        created_at=_created_at(raw),
        recording_url=recording_url,
        voicemail_url=voicemail_url,
        started_at=parse_timestamp(answered_at),
        ended_at=parse_timestamp(raw.get("completedAt")),
        metadata={
            "phone_number_id": raw.get("phoneNumberId"),
            "user_id": raw.get("userId"),
            "participants": participants,
            "original_status": raw.get("status"),
        },
    )


def map_contact(raw: dict[str, Any]) -> ContactData:
    fields = raw.get("defaultFields") or {}
    custom_fields = raw.get("customFields") or []

    notes = None
    for cf in custom_fields:
        if str(cf.get("name", "")).lower() in NOTES_FIELD_NAMES and isinstance(cf.get("value"), str):
            notes = cf["value"]
            break

    first_name = fields.get("firstName") or None
    last_name = fields.get("lastName") or None
    company = fields.get("company") or None
    display_name = " ".join(p for p in (first_name, last_name) if p) or company or ""

    return ContactData(
        external_id=str(raw.get("id", "")),
        display_name=display_name,
        phone_numbers=tuple(
            p["value"] for p in fields.get("phoneNumbers") or [] if p.get("value")
        ),
        first_name=first_name,
        last_name=last_name,
        company=company,
        emails=tuple(e["value"] for e in fields.get("emails") or [] if e.get("value")),
        notes=notes,
        custom_fields={
            cf.get("name"): cf.get("value") for cf in custom_fields if cf.get("name")
        },
    )


def message_preview(raw: dict[str, Any]) -> str:
    text = (raw.get("content") or raw.get("text") or raw.get("body") or "")[:PREVIEW_LENGTH]
    if text:
        return text
    media = raw.get("media") or []
    if media:
        first = media[0] if isinstance(media[0], dict) else {}
        return f"[{first.get('type') or 'Media'}]"
    if raw.get("type") == "call":
        return "[Call]"
    return f"[{raw['type']}]" if raw.get("type") else "(no content)"


class OpenPhoneAdapter(HttpProvider, CommunicationProvider):
    """OpenPhone implementation of CommunicationProvider."""

    provider_type = ProviderType.OPENPHONE
    provider_name = "OpenPhone"

    @property
    def _base_url(self) -> str:
        return self._settings.openphone_api_base_url.rstrip("/")

    @staticmethod
    def _credentials(credentials: Credentials) -> OpenPhoneCredentials:
        if not isinstance(credentials, OpenPhoneCredentials):
            raise ConfigurationError("OpenPhone adapter requires OpenPhone credentials")
        return credentials

    def _headers(self, credentials: Credentials) -> dict[str, str]:
        return {
            "Authorization": self._credentials(credentials).api_key,
            "Content-Type": "application/json",
        }

    async def _get(
        self,
        client: httpx.AsyncClient,
        credentials: Credentials,
        path: str,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return await self._request_json(
            client,
            "GET",
            f"{self._base_url}{path}",
            params=params,
            headers=self._headers(credentials),
        )

    # ---- phone numbers

    async def _fetch_phone_numbers(
        self,
        client: httpx.AsyncClient,
        credentials: Credentials,
    ) -> dict[str, PhoneNumberInfo]:
        numbers: dict[str, PhoneNumberInfo] = {}
        try:
            body = await self._get(client, credentials, "/phone-numbers")
        except ProviderError as e:
            logger.warning(
                "Failed to fetch phone numbers, continuing without them",
                extra={"provider": self.provider_type.value, "error": str(e)},
            )
            return numbers

        for pn in records(body, "data", provider=self.provider_name):
            if not isinstance(pn.get("id"), str):
                continue
            number = pn.get("number") or pn.get("phoneNumber") or ""
            numbers[pn["id"]] = PhoneNumberInfo(
                id=pn["id"],
                number=number,
                name=pn.get("name") or pn.get("formattedNumber") or number,
            )
        logger.info(
            "Fetched phone numbers",
            extra={"provider": self.provider_type.value, "count": len(numbers)},
        )
        return numbers

    async def get_phone_numbers(self, credentials: Credentials) -> dict[str, PhoneNumberInfo]:
        async with self._client() as client:
            return await self._fetch_phone_numbers(client, credentials)

    # ---- sending

    async def send_message(
        self,
        credentials: Credentials,
        to: str,
        body: str,
        from_number: str | None = None,
        channel: Channel = Channel.SMS,
        status_callback_url: str | None = None,
    ) -> SendResult:
        if channel != Channel.SMS:
            raise UnsupportedChannelError(
                f"OpenPhone does not support the {channel.value} channel",
                error_code="unsupported_channel",
            )

        async with self._client() as client:
            numbers = await self._fetch_phone_numbers(client, credentials)
            sender_id = self._resolve_sender_id(numbers, from_number)
            to_number = normalize_e164(to)

            logger.info(
                "Sending message via OpenPhone",
                extra={"from_id": sender_id, "to": to_number},
            )
            data = await self._request_json(
                client,
                "POST",
                f"{self._base_url}/messages",
                json={"from": sender_id, "to": [to_number], "content": body},
                headers=self._headers(credentials),
                retry=False,
            )

        message = record(data, "data")
        if not message.get("id"):
            raise ProviderResponseError(
                "OpenPhone send response has no message id",
                provider_response=data,
            )
        return SendResult(
            provider_message_id=message["id"],
            status=MessageStatus.SENT,
            sent_at=datetime.now(timezone.utc),
        )

    @staticmethod
    def _resolve_sender_id(
        numbers: dict[str, PhoneNumberInfo],
        from_number: str | None,
    ) -> str:
        if from_number:
            if from_number in numbers:
                return from_number
            wanted = normalize_e164(from_number)
            for pn_id, info in numbers.items():
                if normalize_e164(info.number) == wanted:
                    return pn_id
        if numbers:
            first_id = next(iter(numbers))
            logger.info("Using first available phone number", extra={"from_id": first_id})
            return first_id
        raise NoSendingNumberError(
            "No valid OpenPhone phone number is available to send from",
            error_code="no_sending_number",
        )

    # ---- conversations

    def _map_conversation(
        self,
        raw: dict[str, Any],
        numbers: dict[str, PhoneNumberInfo],
    ) -> ConversationData:
        phone_number_id = raw.get("phoneNumberId") or raw.get("_phoneNumberId")
        info = numbers.get(phone_number_id) if phone_number_id else None
        if info is None:
            logger.warning(
                "Conversation phone number not found, may have been deleted",
                extra={"conversation_id": raw.get("id"), "phone_number_id": phone_number_id},
            )
        participants = tuple(raw.get("participants") or ())
        return ConversationData(
            external_id=str(raw.get("id", "")),
            owned_number=info.number if info and info.number else UNKNOWN_NUMBER,
            participant=participants[0] if participants else "",
            participants=participants,
            created_at=parse_timestamp(raw.get("createdAt")),
            last_message_at=parse_timestamp(raw.get("lastActivityAt")),
            metadata={
                "phone_number_id": phone_number_id,
                "phone_number_name": info.name if info else None,
                "conversation_name": raw.get("name"),
                "unread_count": raw.get("unreadCount"),
                "is_archived": raw.get("isArchived"),
                "participant_count": len(participants),
                "last_activity_at": raw.get("lastActivityAt"),
            },
        )

    async def _list_conversations(
        self,
        client: httpx.AsyncClient,
        credentials: Credentials,
        *,
        phone_number_id: str | None = None,
        updated_after: datetime | None = None,
        exclude_inactive: bool = False,
        max_pages: int,
        stop_after_one_page: bool = False,
    ) -> PaginationResult[dict[str, Any]]:
        page_size = self._settings.page_size

        async def fetch(cursor: str | None) -> Page[dict[str, Any]]:
            params: dict[str, Any] = {"maxResults": page_size}
            if cursor:
                params["pageToken"] = cursor
            if phone_number_id:
                params["phoneNumbers"] = [phone_number_id]
            if updated_after:
                params["updatedAfter"] = updated_after.isoformat()
            if exclude_inactive:
                params["excludeInactive"] = "true"
            body = await self._get(client, credentials, "/conversations", params)
            items = records(body, "data", provider=self.provider_name)
            if phone_number_id:
                for item in items:
                    item.setdefault("_phoneNumberId", phone_number_id)
            return Page(items=items, next_cursor=body.get("nextPageToken"))

        stop_when = (lambda items: len(items) >= page_size) if stop_after_one_page else None
        return await paginate(fetch, max_pages=max_pages, stop_when=stop_when, label="conversations")

    async def discover_conversations(
        self,
        credentials: Credentials,
        limit: int | None = None,
        phone_number_id: str | None = None,
        since: datetime | None = None,
    ) -> ConversationListing:
        async with self._client() as client:
            numbers = await self._fetch_phone_numbers(client, credentials)
            # A small limit only needs one full page to rank from.
            listing = await self._list_conversations(
                client,
                credentials,
                phone_number_id=phone_number_id,
                max_pages=self._settings.max_pages,
                updated_after=since,
                stop_after_one_page=bool(limit and limit <= self._settings.page_size and not since),
            )
            candidates = map_records(
                listing.items,
                lambda raw: self._map_conversation(raw, numbers),
                provider=self.provider_name,
                resource="conversations",
            )
            logger.info(
                "Fetched conversations from OpenPhone",
                extra={
                    "count": len(candidates),
                    "pages": listing.pages,
                    "complete": listing.complete,
                    "phone_number_id": phone_number_id,
                },
            )

            if since is not None:
                async def has_activity(conv: ConversationData, floor: datetime) -> datetime | None:
                    return await self._latest_message_time(client, credentials, conv, floor)

                active = [c for c in candidates if c.participants]
                if limit:
                    active = rank_by_listing(active)[: candidate_window(limit)]
                conversations = await filter_active_since(
                    active,
                    since,
                    has_activity,
                    limit=limit,
                    batch_size=self._settings.verification_batch_size,
                )
            else:
                conversations = sorted(
                    candidates,
                    key=lambda c: c.last_message_at or datetime.min.replace(tzinfo=timezone.utc),
                    reverse=True,
                )
                if limit:
                    conversations = conversations[:limit]

        return ConversationListing(conversations=conversations, complete=listing.complete)

    async def _latest_message_time(
        self,
        client: httpx.AsyncClient,
        credentials: Credentials,
        conversation: ConversationData,
        since: datetime,
    ) -> datetime | None:
        body = await self._get(
            client,
            credentials,
            "/messages",
            {
                "phoneNumberId": conversation.metadata.get("phone_number_id"),
                "participants": list(conversation.participants),
                "createdAfter": since.isoformat(),
                "maxResults": 1,
            },
        )
        messages = records(body, "data", provider=self.provider_name)
        return _created_at(messages[0]) if messages else None

    async def get_recent_conversations(
        self,
        credentials: Credentials,
        limit: int = 10,
    ) -> list[RecentConversation]:
        settings = self._settings
        updated_after = datetime.now(timezone.utc) - timedelta(days=settings.recent_window_days)

        async with self._client() as client:
            numbers = await self._fetch_phone_numbers(client, credentials)

            async def list_for_number(pn_id: str):
                return await self._list_conversations(
                    client,
                    credentials,
                    phone_number_id=pn_id,
                    updated_after=updated_after,
                    exclude_inactive=True,
                    max_pages=settings.recent_max_pages,
                )

            candidates: list[ConversationData] = []
            outcomes = await gather_in_batches(
                list(numbers), list_for_number, batch_size=settings.verification_batch_size
            )
            for outcome in outcomes:
                if outcome.error is not None:
                    logger.warning(
                        "Failed to fetch recent conversations for phone number",
                        extra={"phone_number_id": outcome.item, "error": str(outcome.error)},
                    )
                    continue
                mapped = map_records(
                    outcome.value.items,
                    lambda raw: self._map_conversation(raw, numbers),
                    provider=self.provider_name,
                    resource="conversations",
                )
                for conv in mapped:
                    if conv.participants and conv.owned_number != UNKNOWN_NUMBER:
                        candidates.append(conv)

            if not candidates:
                logger.warning("No recent conversations found")
                return []

            async def probe(conv: ConversationData) -> LatestMessage | None:
                body = await self._get(
                    client,
                    credentials,
                    "/messages",
                    {
                        "phoneNumberId": conv.metadata.get("phone_number_id"),
                        "participants": list(conv.participants),
                        "maxResults": 1,
                    },
                )
                messages = records(body, "data", provider=self.provider_name)
                if not messages:
                    if body.get("data"):
                        raise ProviderResponseError(
                            "Latest message lookup returned no usable record",
                            error_code="malformed_message",
                        )
                    return None
                latest = messages[0]
                return LatestMessage(
                    created_at=_created_at(latest),
                    preview=message_preview(latest),
                    direction=latest.get("direction") or "unknown",
                )

            return await reconcile_recent(
                candidates, limit, probe, batch_size=settings.verification_batch_size
            )

    # ---- messages / calls

    @staticmethod
    def _conversation_scope(conversation: ConversationData) -> tuple[str | None, str]:
        return conversation.metadata.get("phone_number_id"), conversation.participant

    async def _walk(
        self,
        client: httpx.AsyncClient,
        credentials: Credentials,
        path: str,
        params: dict[str, Any],
        *,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        async def fetch(cursor: str | None) -> Page[dict[str, Any]]:
            page_params = dict(params)
            if cursor:
                page_params["pageToken"] = cursor
            body = await self._get(client, credentials, path, page_params)
            return Page(
                items=records(body, "data", provider=self.provider_name),
                next_cursor=body.get("nextPageToken"),
            )

        result = await paginate(
            fetch,
            max_pages=self._settings.max_pages,
            stop_when=(lambda items: len(items) >= limit) if limit else None,
            label=path,
        )
        return result.items[:limit] if limit else result.items

    async def get_messages(
        self,
        credentials: Credentials,
        conversation: ConversationData,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[MessageData]:
        phone_number_id, participant = self._conversation_scope(conversation)
        if not phone_number_id or not participant:
            logger.warning(
                "Missing phone number id or participant, skipping message fetch",
                extra={"conversation_id": conversation.external_id},
            )
            return []

        params: dict[str, Any] = {
            "phoneNumberId": phone_number_id,
            "participants": [participant],
            "maxResults": self._settings.page_size,
        }
        if since:
            params["createdAfter"] = since.isoformat()

        async with self._client() as client:
            raw = await self._walk(client, credentials, "/messages", params, limit=limit)

        messages = map_records(
            raw,
            lambda m: map_message(m, phone_number_id),
            provider=self.provider_name,
            resource="messages",
        )
        messages.sort(key=lambda m: m.created_at)
        return messages

    async def get_calls(
        self,
        credentials: Credentials,
        conversation: ConversationData,
        since: datetime | None = None,
    ) -> list[CallData]:
        phone_number_id, participant = self._conversation_scope(conversation)
        if not phone_number_id or not participant:
            return []

        params: dict[str, Any] = {
            "phoneNumberId": phone_number_id,
            "participants": [participant],
            "maxResults": self._settings.page_size,
        }
        if since:
            params["createdAfter"] = since.isoformat()

        async with self._client() as client:
            raw = await self._walk(client, credentials, "/calls", params)

        owned = None if conversation.owned_number == UNKNOWN_NUMBER else conversation.owned_number
        calls = map_records(
            raw, lambda c: map_call(c, owned), provider=self.provider_name, resource="calls"
        )
        calls.sort(key=lambda c: c.created_at)
        return calls

    # ---- contacts

    async def get_contacts(
        self,
        credentials: Credentials,
        limit: int | None = None,
    ) -> list[ContactData]:
        page_size = self._settings.contact_page_size

        async with self._client() as client:
            collected = 0

            async def fetch(cursor: str | None) -> Page[dict[str, Any]]:
                nonlocal collected
                size = min(page_size, limit - collected) if limit else page_size
                params: dict[str, Any] = {"maxResults": size}
                if cursor:
                    params["pageToken"] = cursor
                body = await self._get(client, credentials, "/contacts", params)
                items = records(body, "data", provider=self.provider_name)
                collected += len(items)
                return Page(items=items, next_cursor=body.get("nextPageToken"))

            result = await paginate(
                fetch,
                max_pages=self._settings.max_contact_pages,
                stop_when=(lambda items: len(items) >= limit) if limit else None,
                label="contacts",
            )

        contacts = map_records(
            result.items[:limit] if limit else result.items,
            map_contact,
            provider=self.provider_name,
            resource="contacts",
        )
        logger.info("Fetched contacts from OpenPhone", extra={"count": len(contacts)})
        return contacts

    # ---- calls (client side)

    def initiate_call(self, to: str) -> CallHandle:
        number = "".join(ch for ch in to if ch.isdigit() or ch == "+")
        encoded = quote(number, safe="")
        return CallHandle(
            deep_link=f"openphone://dial?number={encoded}&action=call",
            web_fallback=f"https://my.openphone.com/dialer?phoneNumber={encoded}",
            message="Opening OpenPhone dialer",
        )

    async def validate_credentials(self, credentials: Credentials) -> bool:
        try:
            async with self._client() as client:
                await self._get(client, credentials, "/phone-numbers")
        except ProviderError as e:
            logger.error("Failed to validate OpenPhone credentials", extra={"error": str(e)})
            return False
        return True

    # ---- webhooks

    async def register_webhooks(
        self,
        credentials: Credentials,
        callback_url: str,
    ) -> WebhookRegistration:
        ids: list[str] = []
        secret: str | None = None

        async with self._client() as client:
            for path, events, label in (
                ("/webhooks/messages", MESSAGE_WEBHOOK_EVENTS, "commhub messages"),
                ("/webhooks/calls", CALL_WEBHOOK_EVENTS, "commhub calls"),
            ):
                try:
                    body = await self._request_json(
                        client,
                        "POST",
                        f"{self._base_url}{path}",
                        json={
                            "url": callback_url,
                            "events": list(events),
                            "resourceIds": ["*"],
                            "label": label,
                        },
                        headers=self._headers(credentials),
                    )
                except ProviderError as e:
                    logger.error(
                        "Failed to register OpenPhone webhook",
                        extra={"path": path, "error": str(e), "response": e.provider_response},
                    )
                    continue
                data = record(body, "data")
                if data.get("id"):
                    ids.append(data["id"])
                    logger.info("OpenPhone webhook registered", extra={"webhook_id": data["id"]})
                secret = secret or data.get("key")

        if not ids:
            raise ProviderResponseError(
                "Failed to register any webhooks with OpenPhone",
                error_code="webhook_registration_failed",
            )
        return WebhookRegistration(ids=tuple(ids), shared_secret=secret)

    async def delete_webhooks(self, credentials: Credentials, ids: list[str]) -> None:
        async with self._client() as client:
            for webhook_id in ids:
                try:
                    await self._request_json(
                        client,
                        "DELETE",
                        f"{self._base_url}/webhooks/{webhook_id}",
                        headers=self._headers(credentials),
                    )
                    logger.info("Deleted OpenPhone webhook", extra={"webhook_id": webhook_id})
                except ProviderError as e:
                    logger.warning(
                        "Failed to delete OpenPhone webhook",
                        extra={"webhook_id": webhook_id, "error": str(e)},
                    )

    async def list_webhooks(self, credentials: Credentials) -> list[RemoteWebhook]:
        try:
            async with self._client() as client:
                body = await self._get(client, credentials, "/webhooks")
        except ProviderError as e:
            logger.error("Failed to list OpenPhone webhooks", extra={"error": str(e)})
            return []
        return [
            RemoteWebhook(
                id=wh.get("id", ""),
                url=wh.get("url", ""),
                events=tuple(wh.get("events") or ()),
                status=wh.get("status") or "enabled",
            )
            for wh in records(body, "data", provider=self.provider_name)
        ]

    # ---- recordings / transcripts

    async def download_recording(self, credentials: Credentials, url: str) -> bytes | None:
        # Recording URLs are usually pre-signed storage URLs that reject extra auth.
        attempts = (
            ("anonymous", {}),
            ("api_key", {"Authorization": self._credentials(credentials).api_key}),
        )
        async with self._client() as client:
            for mode, headers in attempts:
                try:
                    response = await client.get(url, headers=headers, follow_redirects=True)
                except httpx.HTTPError as e:
                    logger.warning("Recording download failed", extra={"mode": mode, "error": str(e)})
                    continue
                if response.status_code < 400:
                    logger.info(
                        "Downloaded recording",
                        extra={"mode": mode, "size_bytes": len(response.content)},
                    )
                    return response.content
                logger.warning(
                    "Recording download rejected",
                    extra={"mode": mode, "status_code": response.status_code},
                )
        return None

    async def get_call_transcript(
        self,
        credentials: Credentials,
        call_id: str,
    ) -> TranscriptResult:
        try:
            async with self._client() as client:
                body = await self._get(client, credentials, f"/call-transcripts/{call_id}")
        except ProviderNotFoundError:
            logger.info("No transcript found for call", extra={"call_id": call_id})
            return TranscriptResult(status=TranscriptStatus.ABSENT)

        data = record(body, "data")
        status = OPENPHONE_TRANSCRIPT_STATUS_MAP.get(
            str(data.get("status", "")).lower(), TranscriptStatus.ABSENT
        )
        dialogue = data.get("dialogue") or []
        if status != TranscriptStatus.COMPLETED or not dialogue:
            # completed without dialogue means there is nothing to show
            if status == TranscriptStatus.COMPLETED:
                status = TranscriptStatus.ABSENT
            return TranscriptResult(status=status)

        lines = []
        for segment in dialogue:
            if not isinstance(segment, dict):
                continue
            speaker = "Agent" if segment.get("userId") else (segment.get("identifier") or "Unknown")
            lines.append(f"{speaker}: {segment.get('content', '')}")
        return TranscriptResult(status=TranscriptStatus.COMPLETED, transcript="\n".join(lines))
