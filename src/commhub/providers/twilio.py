"""
Twilio provider adapter.

Uses the Twilio REST API directly via httpx (form-encoded requests, basic
auth with AccountSid:AuthToken). Twilio has no conversation objects, so
conversations are derived from the message log keyed by
"{our_number}:{participant}".
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import httpx

from commhub.communication.models import (
    UNKNOWN_NUMBER,
    A2PCompliance,
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
    conversation_key,
)
from commhub.communication.phone import normalize_e164, to_whatsapp
from commhub.providers.credentials import Credentials, TwilioCredentials
from commhub.providers.http import HttpProvider, map_records, parse_timestamp, records
from commhub.providers.interface import (
    CommunicationProvider,
    ConfigurationError,
    NoSendingNumberError,
    ProviderError,
    ProviderNotFoundError,
    ProviderResponseError,
    UnsupportedChannelError,
)
from commhub.providers.pagination import Page, PaginationResult, paginate
from commhub.shared.logging import get_logger
from commhub.sync.discovery import sort_recent

logger = get_logger(__name__)

TWILIO_MESSAGE_STATUS_MAP: dict[str, MessageStatus] = {
    "queued": MessageStatus.PENDING,
    "sending": MessageStatus.PENDING,
    "sent": MessageStatus.SENT,
    "accepted": MessageStatus.SENT,
    "delivered": MessageStatus.DELIVERED,
    "received": MessageStatus.DELIVERED,
    "undelivered": MessageStatus.FAILED,
    "failed": MessageStatus.FAILED,
}

TWILIO_CALL_STATUS_MAP: dict[str, CallStatus] = {
    "completed": CallStatus.COMPLETED,
    "busy": CallStatus.MISSED,
    "no-answer": CallStatus.MISSED,
    "failed": CallStatus.MISSED,
    "canceled": CallStatus.CANCELLED,
}

TWILIO_TRANSCRIPT_STATUS_MAP: dict[str, TranscriptStatus] = {
    "completed": TranscriptStatus.COMPLETED,
    "in-progress": TranscriptStatus.PENDING,
    "queued": TranscriptStatus.PENDING,
}


def map_message_status(status: str | None) -> MessageStatus:
    return TWILIO_MESSAGE_STATUS_MAP.get((status or "").lower(), MessageStatus.PENDING)


def map_call_status(status: str | None) -> CallStatus:
    return TWILIO_CALL_STATUS_MAP.get((status or "").lower(), CallStatus.COMPLETED)


def is_inbound(direction: str | None) -> bool:
    # outbound-api, outbound-call, outbound-dial and outbound-reply are all ours
    return (direction or "").lower() == "inbound"


def split_parties(direction: str | None, from_number: str, to_number: str) -> tuple[str, str]:
    """(our_number, participant) for a message or call."""
    if is_inbound(direction):
        return to_number or UNKNOWN_NUMBER, from_number
    return from_number or UNKNOWN_NUMBER, to_number


def _created_at(value: Any) -> datetime:
    return parse_timestamp(value) or datetime.now(timezone.utc)


def _parties(raw: dict[str, Any]) -> tuple[str, str, datetime]:
    """(our_number, participant, created_at) of a message resource."""
    from_number, to_number = raw.get("from") or "", raw.get("to") or ""
    if not isinstance(from_number, str) or not isinstance(to_number, str):
        raise TypeError("from/to must be strings")
    ours, participant = split_parties(raw.get("direction"), from_number, to_number)
    return ours, participant, _created_at(raw.get("date_created"))


def map_message(raw: dict[str, Any]) -> MessageData:
    """Map a Twilio REST message resource."""
    return MessageData(
        provider_message_id=raw.get("sid", ""),
        direction=MessageDirection.IN if is_inbound(raw.get("direction")) else MessageDirection.OUT,
        body=raw.get("body") or "",
        from_number=raw.get("from") or UNKNOWN_NUMBER,
        to_number=raw.get("to") or UNKNOWN_NUMBER,
        status=map_message_status(raw.get("status")),
        created_at=_created_at(raw.get("date_created")),
        metadata={
            "num_media": raw.get("num_media"),
            "num_segments": raw.get("num_segments"),
            "error_code": raw.get("error_code"),
            "error_message": raw.get("error_message"),
        },
    )


def map_call(raw: dict[str, Any]) -> CallData:
    """Map a Twilio REST call resource."""
    try:
        duration = int(raw.get("duration") or 0)
    except (TypeError, ValueError):
        duration = 0
    return CallData(
        provider_call_id=raw.get("sid", ""),
        direction=CallDirection.IN if is_inbound(raw.get("direction")) else CallDirection.OUT,
        duration=duration,
        from_number=raw.get("from") or UNKNOWN_NUMBER,
        to_number=raw.get("to") or UNKNOWN_NUMBER,
        status=map_call_status(raw.get("status")),
        created_at=_created_at(raw.get("date_created")),
        started_at=parse_timestamp(raw.get("start_time")),
        ended_at=parse_timestamp(raw.get("end_time")),
        metadata={"original_status": raw.get("status")},
    )


class TwilioAdapter(HttpProvider, CommunicationProvider):
    """Twilio implementation of CommunicationProvider."""

    provider_type = ProviderType.TWILIO
    provider_name = "Twilio"

    @staticmethod
    def _credentials(credentials: Credentials) -> TwilioCredentials:
        if not isinstance(credentials, TwilioCredentials):
            raise ConfigurationError("Twilio adapter requires Twilio credentials")
        return credentials

    def _auth(self, credentials: Credentials) -> tuple[str, str]:
        creds = self._credentials(credentials)
        return (creds.account_sid, creds.auth_token)

    def _api_url(self, credentials: Credentials, endpoint: str) -> str:
        account_sid = self._credentials(credentials).account_sid
        base = self._settings.twilio_api_base_url.rstrip("/")
        return f"{base}/Accounts/{account_sid}{endpoint}"

    def _absolute(self, uri: str) -> str:
        # next_page_uri is host-relative ("/2010-04-01/Accounts/...")
        if uri.startswith("http"):
            return uri
        return str(httpx.URL(self._settings.twilio_api_base_url).join(uri))

    async def _call(
        self,
        client: httpx.AsyncClient,
        credentials: Credentials,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        return await self._request_json(client, method, url, auth=self._auth(credentials), **kwargs)

    async def _list(
        self,
        client: httpx.AsyncClient,
        credentials: Credentials,
        endpoint: str,
        key: str,
        params: dict[str, Any] | None = None,
        *,
        max_pages: int | None = None,
    ) -> PaginationResult[dict[str, Any]]:
        first_url = self._api_url(credentials, endpoint)
        first_params = {"PageSize": self._settings.page_size, **(params or {})}

        async def fetch(cursor: str | None) -> Page[dict[str, Any]]:
            if cursor:
                body = await self._call(client, credentials, "GET", self._absolute(cursor))
            else:
                body = await self._call(client, credentials, "GET", first_url, params=first_params)
            return Page(
                items=records(body, key, provider=self.provider_name),
                next_cursor=body.get("next_page_uri"),
            )

        return await paginate(
            fetch,
            max_pages=max_pages or self._settings.twilio_max_message_pages,
            label=endpoint,
        )

    # ---- phone numbers

    async def _fetch_phone_numbers(
        self,
        client: httpx.AsyncClient,
        credentials: Credentials,
        *,
        with_compliance: bool = False,
    ) -> dict[str, PhoneNumberInfo]:
        numbers: dict[str, PhoneNumberInfo] = {}
        try:
            listing = await self._list(
                client,
                credentials,
                "/IncomingPhoneNumbers.json",
                "incoming_phone_numbers",
                max_pages=self._settings.max_pages,
            )
        except ProviderError as e:
            logger.warning(
                "Failed to fetch phone numbers from Twilio",
                extra={"provider": self.provider_type.value, "error": str(e)},
            )
            return numbers

        campaigns = await self._a2p_campaigns(client, credentials) if with_compliance else {}

        for pn in listing.items:
            if not pn.get("sid"):
                continue
            number = pn.get("phone_number") or ""
            capabilities = pn.get("capabilities") or {}
            compliance = None
            if with_compliance:
                has_bundle = bool(pn.get("bundle_sid"))
                campaign = campaigns.get(number)
                campaign_status = (
                    campaign.campaign_status if campaign else ("VERIFIED" if has_bundle else "NOT_REGISTERED")
                )
                compliance = A2PCompliance(
                    is_registered=campaign_status == "VERIFIED" or has_bundle,
                    campaign_status=campaign_status,
                    messaging_service_sid=campaign.messaging_service_sid if campaign else None,
                )
            numbers[pn["sid"]] = PhoneNumberInfo(
                id=pn["sid"],
                number=number,
                name=pn.get("friendly_name") or number,
                sms=bool(capabilities.get("sms", False)),
                voice=bool(capabilities.get("voice", False)),
                mms=bool(capabilities.get("mms", False)),
                compliance=compliance,
            )

        logger.info(
            "Fetched phone numbers",
            extra={"provider": self.provider_type.value, "count": len(numbers)},
        )
        return numbers

    async def _a2p_campaigns(
        self,
        client: httpx.AsyncClient,
        credentials: Credentials,
    ) -> dict[str, A2PCompliance]:
        """US A2P 10DLC campaign status per number, from messaging services."""
        campaigns: dict[str, A2PCompliance] = {}
        base = self._settings.twilio_messaging_base_url.rstrip("/")
        try:
            body = await self._call(
                client, credentials, "GET", f"{base}/Services", params={"PageSize": 100}
            )
        except ProviderError as e:
            logger.warning("Failed to fetch A2P campaign info", extra={"error": str(e)})
            return campaigns

        for service in records(body, "services", provider=self.provider_name):
            service_sid = service.get("sid")
            if not service_sid:
                continue
            try:
                registrations = await self._call(
                    client, credentials, "GET", f"{base}/Services/{service_sid}/Compliance/Usa2p"
                )
                service_numbers = await self._call(
                    client, credentials, "GET", f"{base}/Services/{service_sid}/PhoneNumbers"
                )
            except ProviderError as e:
                logger.debug(
                    "No A2P campaigns for messaging service",
                    extra={"messaging_service_sid": service_sid, "error": str(e)},
                )
                continue

            entries = records(registrations, "compliance", provider=self.provider_name)
            status = (entries[0].get("campaign_status") or "PENDING") if entries else "NOT_REGISTERED"
            for spn in records(service_numbers, "phone_numbers", provider=self.provider_name):
                if spn.get("phone_number"):
                    campaigns[spn["phone_number"]] = A2PCompliance(
                        is_registered=status == "VERIFIED",
                        campaign_status=status,
                        messaging_service_sid=service_sid,
                    )

        logger.info("Resolved A2P registrations", extra={"numbers": len(campaigns)})
        return campaigns

    async def get_phone_numbers(self, credentials: Credentials) -> dict[str, PhoneNumberInfo]:
        async with self._client() as client:
            return await self._fetch_phone_numbers(client, credentials, with_compliance=True)

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
        creds = self._credentials(credentials)
        if channel not in (Channel.SMS, Channel.WHATSAPP):
            raise UnsupportedChannelError(
                f"Twilio messages cannot be sent on the {channel.value} channel",
                error_code="unsupported_channel",
            )

        async with self._client() as client:
            sender = from_number or creds.phone_number
            if not sender:
                numbers = await self._fetch_phone_numbers(client, credentials)
                sender = next((n.number for n in numbers.values() if n.number), None)
            if not sender:
                raise NoSendingNumberError(
                    "No Twilio phone number configured",
                    error_code="no_sending_number",
                )

            if channel == Channel.WHATSAPP:
                to_address, from_address = to_whatsapp(to), to_whatsapp(sender)
            else:
                to_address, from_address = normalize_e164(to), normalize_e164(sender)

            form: dict[str, Any] = {"To": to_address, "From": from_address, "Body": body}
            if status_callback_url:
                form["StatusCallback"] = status_callback_url

            logger.info(
                "Sending message via Twilio",
                extra={"channel": channel.value, "from": from_address, "to": to_address},
            )
            data = await self._call(
                client,
                credentials,
                "POST",
                self._api_url(credentials, "/Messages.json"),
                data=form,
                retry=False,
            )

        if not data.get("sid"):
            raise ProviderResponseError("Twilio send response has no sid", provider_response=data)
        return SendResult(
            provider_message_id=data["sid"],
            status=map_message_status(data.get("status")),
            sent_at=datetime.now(timezone.utc),
        )

    # ---- conversations

    async def discover_conversations(
        self,
        credentials: Credentials,
        limit: int | None = None,
        phone_number_id: str | None = None,
        since: datetime | None = None,
    ) -> ConversationListing:
        params: dict[str, Any] = {}
        if since:
            params["DateSent>"] = since.date().isoformat()

        async with self._client() as client:
            numbers = await self._fetch_phone_numbers(client, credentials)
            listing = await self._list(client, credentials, "/Messages.json", "messages", params)

        only_number = numbers[phone_number_id].number if phone_number_id in numbers else None
        sid_by_number = {info.number: sid for sid, info in numbers.items()}

        conversations: dict[str, dict[str, Any]] = {}
        parsed = map_records(
            listing.items,
            lambda raw: (*_parties(raw), raw),
            provider=self.provider_name,
            resource="messages",
        )
        for ours, participant, created, raw in parsed:
            if only_number and ours != only_number:
                continue
            if since and created < since:
                continue
            key = conversation_key(ours, participant)
            entry = conversations.get(key)
            if entry is None:
                conversations[key] = entry = {
                    "ours": ours,
                    "participant": participant,
                    "first": created,
                    "last": created,
                    "last_raw": raw,
                }
            if created < entry["first"]:
                entry["first"] = created
            if created > entry["last"]:
                entry["last"] = created
                entry["last_raw"] = raw

        result = [
            ConversationData(
                external_id=key,
                owned_number=entry["ours"],
                participant=entry["participant"],
                participants=(entry["participant"],),
                created_at=entry["first"],
                last_message_at=entry["last"],
                last_message_verified=True,
                metadata={
                    "phone_number_id": sid_by_number.get(entry["ours"]),
                    "last_message_preview": str(entry["last_raw"].get("body") or "")[:100],
                    "last_message_direction": "incoming"
                    if is_inbound(entry["last_raw"].get("direction"))
                    else "outgoing",
                },
            )
            for key, entry in conversations.items()
        ]
        result.sort(key=lambda c: c.last_message_at, reverse=True)
        logger.info(
            "Built conversations from Twilio messages",
            extra={"count": len(result), "messages": len(listing.items), "complete": listing.complete},
        )
        return ConversationListing(
            conversations=result[:limit] if limit else result,
            complete=listing.complete,
        )

    async def get_recent_conversations(
        self,
        credentials: Credentials,
        limit: int = 10,
    ) -> list[RecentConversation]:
        # Derived from the message log, so listing timestamps are already exact.
        listing = await self.discover_conversations(credentials, limit=limit)

        def preview_of(conversation: ConversationData) -> tuple[str, str]:
            return (
                conversation.metadata.get("last_message_preview") or "(no content)",
                conversation.metadata.get("last_message_direction") or "unknown",
            )

        return sort_recent(listing.conversations, limit, preview_of)

    # ---- messages / calls

    async def _both_directions(
        self,
        credentials: Credentials,
        endpoint: str,
        key: str,
        participant: str,
        extra: dict[str, Any],
    ) -> list[dict[str, Any]]:
        seen: dict[str, dict[str, Any]] = {}
        async with self._client() as client:
            for field_name in ("To", "From"):
                listing = await self._list(
                    client, credentials, endpoint, key, {field_name: participant, **extra}
                )
                for item in listing.items:
                    seen.setdefault(item.get("sid", ""), item)
        return list(seen.values())

    @staticmethod
    def _belongs(conversation: ConversationData, inbound: bool, from_: str, to: str) -> bool:
        if conversation.owned_number == UNKNOWN_NUMBER:
            return True
        return (to if inbound else from_) == conversation.owned_number

    async def get_messages(
        self,
        credentials: Credentials,
        conversation: ConversationData,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[MessageData]:
        participant = conversation.participant
        if not participant:
            logger.warning(
                "Missing participant, skipping message fetch",
                extra={"conversation_id": conversation.external_id},
            )
            return []

        extra = {"DateSent>": since.date().isoformat()} if since else {}
        raw = await self._both_directions(credentials, "/Messages.json", "messages", participant, extra)

        messages = map_records(
            raw, map_message, provider=self.provider_name, resource="messages"
        )
        messages = [
            m
            for m in messages
            if self._belongs(conversation, m.direction == MessageDirection.IN, m.from_number, m.to_number)
        ]
        if since:
            messages = [m for m in messages if m.created_at >= since]
        messages.sort(key=lambda m: m.created_at)
        return messages[-limit:] if limit else messages

    async def get_calls(
        self,
        credentials: Credentials,
        conversation: ConversationData,
        since: datetime | None = None,
    ) -> list[CallData]:
        participant = conversation.participant
        if not participant or participant.startswith("whatsapp:"):
            return []

        extra = {"StartTime>": since.date().isoformat()} if since else {}
        raw = await self._both_directions(credentials, "/Calls.json", "calls", participant, extra)

        calls = map_records(raw, map_call, provider=self.provider_name, resource="calls")
        calls = [
            c
            for c in calls
            if self._belongs(conversation, c.direction == CallDirection.IN, c.from_number, c.to_number)
        ]
        if since:
            calls = [c for c in calls if c.created_at >= since]
        calls.sort(key=lambda c: c.created_at)
        return calls

    async def get_contacts(
        self,
        credentials: Credentials,
        limit: int | None = None,
    ) -> list[ContactData]:
        # Twilio has no contact directory.
        logger.info("Twilio has no contact directory, nothing to import")
        return []

    # ---- calls (client side)

    def initiate_call(self, to: str) -> CallHandle:
        number = "".join(ch for ch in to if ch.isdigit() or ch == "+")
        return CallHandle(
            deep_link=f"tel:{number}",
            web_fallback="https://www.twilio.com/console/phone-numbers/incoming",
            message="Opening phone dialer",
        )

    async def validate_credentials(self, credentials: Credentials) -> bool:
        creds = self._credentials(credentials)
        base = self._settings.twilio_api_base_url.rstrip("/")
        try:
            async with self._client() as client:
                account = await self._call(
                    client, credentials, "GET", f"{base}/Accounts/{creds.account_sid}.json"
                )
        except ProviderError as e:
            logger.error("Failed to validate Twilio credentials", extra={"error": str(e)})
            return False
        logger.info(
            "Validated Twilio credentials",
            extra={"account_name": account.get("friendly_name")},
        )
        return True

    # ---- webhooks

    async def _target_number_sids(
        self,
        client: httpx.AsyncClient,
        credentials: Credentials,
    ) -> list[str]:
        creds = self._credentials(credentials)
        if creds.phone_number_sid:
            return [creds.phone_number_sid]
        numbers = await self._fetch_phone_numbers(client, credentials)
        if creds.phone_number:
            wanted = normalize_e164(creds.phone_number)
            matching = [sid for sid, info in numbers.items() if normalize_e164(info.number) == wanted]
            if matching:
                return matching
        return list(numbers)

    async def _configure_number(
        self,
        client: httpx.AsyncClient,
        credentials: Credentials,
        number_sid: str,
        callback_url: str,
    ) -> None:
        await self._call(
            client,
            credentials,
            "POST",
            self._api_url(credentials, f"/IncomingPhoneNumbers/{number_sid}.json"),
            data={
                "SmsUrl": callback_url,
                "SmsMethod": "POST",
                "StatusCallback": callback_url,
                "StatusCallbackMethod": "POST",
            },
        )

    async def register_webhooks(
        self,
        credentials: Credentials,
        callback_url: str,
    ) -> WebhookRegistration:
        configured: list[str] = []
        async with self._client() as client:
            for number_sid in await self._target_number_sids(client, credentials):
                try:
                    await self._configure_number(client, credentials, number_sid, callback_url)
                except ProviderError as e:
                    logger.error(
                        "Failed to configure Twilio number webhooks",
                        extra={"phone_number_sid": number_sid, "error": str(e)},
                    )
                    continue
                configured.append(number_sid)
                logger.info("Twilio number webhooks configured", extra={"phone_number_sid": number_sid})

        if not configured:
            raise NoSendingNumberError(
                "No Twilio phone number could be configured for webhooks",
                error_code="webhook_registration_failed",
            )
        # Twilio signs with the account auth token; there is no per-hook secret.
        return WebhookRegistration(ids=tuple(configured), shared_secret=None)

    async def delete_webhooks(self, credentials: Credentials, ids: list[str]) -> None:
        async with self._client() as client:
            for number_sid in ids:
                try:
                    await self._configure_number(client, credentials, number_sid, "")
                except ProviderError as e:
                    logger.warning(
                        "Failed to clear Twilio number webhooks",
                        extra={"phone_number_sid": number_sid, "error": str(e)},
                    )

    async def list_webhooks(self, credentials: Credentials) -> list[RemoteWebhook]:
        try:
            async with self._client() as client:
                listing = await self._list(
                    client,
                    credentials,
                    "/IncomingPhoneNumbers.json",
                    "incoming_phone_numbers",
                    max_pages=self._settings.max_pages,
                )
        except ProviderError as e:
            logger.error("Failed to list Twilio webhooks", extra={"error": str(e)})
            return []

        hooks = []
        for pn in listing.items:
            events = []
            if pn.get("sms_url"):
                events.append("sms")
            if pn.get("status_callback"):
                events.append("voice.status")
            if events:
                hooks.append(
                    RemoteWebhook(
                        id=pn.get("sid", ""),
                        url=pn.get("sms_url") or pn.get("status_callback") or "",
                        events=tuple(events),
                    )
                )
        return hooks

    # ---- recordings / transcripts

    async def download_recording(self, credentials: Credentials, url: str) -> bytes | None:
        attempts = (("anonymous", None), ("basic_auth", self._auth(credentials)))
        async with self._client() as client:
            for mode, auth in attempts:
                try:
                    response = await client.get(url, auth=auth, follow_redirects=True)
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
                recordings = await self._call(
                    client,
                    credentials,
                    "GET",
                    self._api_url(credentials, "/Recordings.json"),
                    params={"CallSid": call_id, "PageSize": 1},
                )
                items = records(recordings, "recordings", provider=self.provider_name)
                if not items or not items[0].get("sid"):
                    return TranscriptResult(status=TranscriptStatus.ABSENT)

                recording_sid = items[0]["sid"]
                body = await self._call(
                    client,
                    credentials,
                    "GET",
                    self._api_url(credentials, f"/Recordings/{recording_sid}/Transcriptions.json"),
                )
        except ProviderNotFoundError:
            logger.info("No transcript found for call", extra={"call_id": call_id})
            return TranscriptResult(status=TranscriptStatus.ABSENT)

        transcriptions = records(body, "transcriptions", provider=self.provider_name)
        if not transcriptions:
            return TranscriptResult(status=TranscriptStatus.ABSENT)

        latest = transcriptions[0]
        status = TWILIO_TRANSCRIPT_STATUS_MAP.get(
            str(latest.get("status") or "").lower(), TranscriptStatus.ABSENT
        )
        if status == TranscriptStatus.COMPLETED:
            return TranscriptResult(status=status, transcript=latest.get("transcription_text") or "")
        return TranscriptResult(status=status)
