"""Tests for the Twilio adapter (httpx.MockTransport, no network)."""

from urllib.parse import parse_qs

import httpx
import pytest

from conftest import mock_client, utc

from commhub.communication.models import (
    CallStatus,
    Channel,
    ConversationData,
    MessageDirection,
    MessageStatus,
    TranscriptStatus,
)
from commhub.providers.credentials import TwilioCredentials
from commhub.providers.interface import NoSendingNumberError, ProviderResponseError
from commhub.providers.twilio import (
    TwilioAdapter,
    map_call_status,
    map_message_status,
    split_parties,
)

CREDS = TwilioCredentials(account_sid="AC1", auth_token="tok", phone_number="+15559990000")

NUMBERS = {
    "incoming_phone_numbers": [
        {
            "sid": "PN1",
            "phone_number": "+15559990000",
            "friendly_name": "Main",
            "capabilities": {"sms": True, "voice": True, "mms": False},
        }
    ],
    "next_page_uri": None,
}


def msg(sid: str, direction: str, frm: str, to: str, date: str, body: str = "") -> dict:
    return {
        "sid": sid,
        "direction": direction,
        "from": frm,
        "to": to,
        "date_created": date,
        "body": body,
        "status": "received" if direction == "inbound" else "delivered",
    }


def form_of(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


def adapter(provider_settings, handler) -> TwilioAdapter:
    return TwilioAdapter(provider_settings, http_client=mock_client(handler))


class TestTwilioMapping:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("queued", MessageStatus.PENDING),
            ("sending", MessageStatus.PENDING),
            ("sent", MessageStatus.SENT),
            ("received", MessageStatus.DELIVERED),
            ("delivered", MessageStatus.DELIVERED),
            ("undelivered", MessageStatus.FAILED),
            ("failed", MessageStatus.FAILED),
            (None, MessageStatus.PENDING),
        ],
    )
    def test_message_status(self, raw, expected) -> None:
        assert map_message_status(raw) == expected

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("completed", CallStatus.COMPLETED),
            ("busy", CallStatus.MISSED),
            ("no-answer", CallStatus.MISSED),
            ("failed", CallStatus.MISSED),
            ("canceled", CallStatus.CANCELLED),
        ],
    )
    def test_call_status(self, raw, expected) -> None:
        assert map_call_status(raw) == expected

    def test_split_parties_by_direction(self) -> None:
        assert split_parties("inbound", "+1555A", "+1555OURS") == ("+1555OURS", "+1555A")
        assert split_parties("outbound-api", "+1555OURS", "+1555A") == ("+1555OURS", "+1555A")


class TestTwilioConversations:
    @pytest.mark.asyncio
    async def test_conversations_are_derived_from_the_message_log(self, provider_settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["Authorization"].startswith("Basic ")
            path = request.url.path
            if path.endswith("/IncomingPhoneNumbers.json"):
                return httpx.Response(200, json=NUMBERS)
            assert path == "/2010-04-01/Accounts/AC1/Messages.json"
            if request.url.params.get("Page") == "1":
                return httpx.Response(
                    200,
                    json={
                        "messages": [
                            msg("SM3", "inbound", "+15550000002", "+15559990000", "Sun, 01 Feb 2026 09:00:00 +0000"),
                        ],
                        "next_page_uri": None,
                    },
                )
            return httpx.Response(
                200,
                json={
                    "messages": [
                        msg("SM2", "outbound-api", "+15559990000", "+15550000001",
                            "Tue, 10 Feb 2026 12:00:00 +0000", body="see you"),
                        msg("SM1", "inbound", "+15550000001", "+15559990000", "Mon, 05 Jan 2026 10:00:00 +0000"),
                    ],
                    "next_page_uri": "/2010-04-01/Accounts/AC1/Messages.json?Page=1&PageToken=PA1",
                },
            )

        listing = await adapter(provider_settings, handler).discover_conversations(CREDS)

        assert listing.complete is True
        assert [c.external_id for c in listing.conversations] == [
            "+15559990000:+15550000001",
            "+15559990000:+15550000002",
        ]
        first = listing.conversations[0]
        assert first.owned_number == "+15559990000"
        assert first.participant == "+15550000001"
        assert first.created_at == utc(2026, 1, 5, 10)
        assert first.last_message_at == utc(2026, 2, 10, 12)
        assert first.metadata["phone_number_id"] == "PN1"
        assert first.metadata["last_message_preview"] == "see you"
        assert first.metadata["last_message_direction"] == "outgoing"

    @pytest.mark.asyncio
    async def test_recent_conversations_use_the_sort_only_path(self, provider_settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/IncomingPhoneNumbers.json"):
                return httpx.Response(200, json=NUMBERS)
            return httpx.Response(
                200,
                json={
                    "messages": [
                        msg("SM1", "inbound", "+15550000001", "+15559990000",
                            "Mon, 05 Jan 2026 10:00:00 +0000", body="hello"),
                    ]
                },
            )

        recent = await adapter(provider_settings, handler).get_recent_conversations(CREDS, limit=5)

        assert len(recent) == 1
        assert recent[0].preview == "hello"
        assert recent[0].direction == "incoming"
        assert recent[0].verified is True

    @pytest.mark.asyncio
    async def test_messages_are_fetched_in_both_directions_and_deduplicated(self, provider_settings) -> None:
        queried: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            params = request.url.params
            queried.append("To" if "To" in params else "From")
            shared = msg("SM1", "inbound", "+15550000001", "+15559990000", "Mon, 05 Jan 2026 10:00:00 +0000")
            if "To" in params:
                reply = msg("SM2", "outbound-api", "+15559990000", "+15550000001", "Mon, 05 Jan 2026 10:05:00 +0000")
                # another line of ours talking to the same participant
                other = msg("SM9", "outbound-api", "+15558880000", "+15550000001", "Mon, 05 Jan 2026 11:00:00 +0000")
                return httpx.Response(200, json={"messages": [other, reply, shared]})
            return httpx.Response(200, json={"messages": [shared]})

        conversation = ConversationData(
            external_id="+15559990000:+15550000001",
            owned_number="+15559990000",
            participant="+15550000001",
        )

        messages = await adapter(provider_settings, handler).get_messages(CREDS, conversation)

        assert sorted(queried) == ["From", "To"]
        assert [m.provider_message_id for m in messages] == ["SM1", "SM2"]
        assert messages[0].direction == MessageDirection.IN
        assert messages[1].direction == MessageDirection.OUT


class TestTwilioSending:
    @pytest.mark.asyncio
    async def test_whatsapp_addresses_both_numbers(self, provider_settings) -> None:
        forms: list[dict[str, str]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            forms.append(form_of(request))
            return httpx.Response(201, json={"sid": "SM100", "status": "queued"})

        result = await adapter(provider_settings, handler).send_message(
            CREDS,
            to="5551234567",
            body="hola",
            channel=Channel.WHATSAPP,
            status_callback_url="https://hub.example.com/webhooks/twilio/abc",
        )

        assert result.provider_message_id == "SM100"
        assert result.status == MessageStatus.PENDING
        assert forms == [
            {
                "To": "whatsapp:+15551234567",
                "From": "whatsapp:+15559990000",
                "Body": "hola",
                "StatusCallback": "https://hub.example.com/webhooks/twilio/abc",
            }
        ]

    @pytest.mark.asyncio
    async def test_sender_falls_back_to_first_owned_number(self, provider_settings) -> None:
        forms: list[dict[str, str]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/IncomingPhoneNumbers.json"):
                return httpx.Response(200, json=NUMBERS)
            forms.append(form_of(request))
            return httpx.Response(201, json={"sid": "SM101", "status": "sent"})

        creds = TwilioCredentials(account_sid="AC1", auth_token="tok")
        result = await adapter(provider_settings, handler).send_message(creds, to="+15551234567", body="hi")

        assert result.status == MessageStatus.SENT
        assert forms[0]["From"] == "+15559990000"

    @pytest.mark.asyncio
    async def test_no_number_anywhere_cannot_send(self, provider_settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"incoming_phone_numbers": []})

        creds = TwilioCredentials(account_sid="AC1", auth_token="tok")
        with pytest.raises(NoSendingNumberError):
            await adapter(provider_settings, handler).send_message(creds, to="+15551234567", body="hi")

    @pytest.mark.asyncio
    async def test_rejected_send_is_a_response_error(self, provider_settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"code": 21211, "message": "Invalid 'To' Phone Number"})

        with pytest.raises(ProviderResponseError) as exc_info:
            await adapter(provider_settings, handler).send_message(CREDS, to="+1", body="hi")
        assert exc_info.value.error_code == "21211"


class TestTwilioWebhooksAndDirectory:
    @pytest.mark.asyncio
    async def test_register_configures_numbers_without_secret(self, provider_settings) -> None:
        forms: list[tuple[str, dict[str, str]]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(200, json=NUMBERS)
            forms.append((request.url.path, form_of(request)))
            return httpx.Response(200, json={"sid": "PN1"})

        registration = await adapter(provider_settings, handler).register_webhooks(
            CREDS, "https://hub.example.com/webhooks/twilio/abc"
        )

        assert registration.ids == ("PN1",)
        assert registration.shared_secret is None
        path, form = forms[0]
        assert path.endswith("/IncomingPhoneNumbers/PN1.json")
        assert form["SmsUrl"] == "https://hub.example.com/webhooks/twilio/abc"
        assert form["StatusCallback"] == "https://hub.example.com/webhooks/twilio/abc"

    @pytest.mark.asyncio
    async def test_twilio_has_no_contact_directory(self, provider_settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        assert await adapter(provider_settings, handler).get_contacts(CREDS) == []

    def test_initiate_call_returns_tel_link(self, provider_settings) -> None:
        handle = TwilioAdapter(provider_settings).initiate_call("+1 (555) 000-0001")

        assert handle.deep_link == "tel:+15550000001"


class TestTwilioUnexpectedPayloads:
    @pytest.mark.asyncio
    async def test_malformed_message_records_are_skipped(self, provider_settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/IncomingPhoneNumbers.json"):
                return httpx.Response(200, json={"incoming_phone_numbers": ["PN1", *NUMBERS["incoming_phone_numbers"]]})
            return httpx.Response(
                200,
                json={
                    "messages": [
                        "junk",
                        {"sid": "SM0", "direction": "inbound", "from": 5, "to": "+15559990000"},
                        msg("SM1", "inbound", "+15550000001", "+15559990000", "Mon, 05 Jan 2026 10:00:00 +0000"),
                    ]
                },
            )

        listing = await adapter(provider_settings, handler).discover_conversations(CREDS)

        assert [c.external_id for c in listing.conversations] == ["+15559990000:+15550000001"]
        assert listing.conversations[0].metadata["phone_number_id"] == "PN1"

    @pytest.mark.asyncio
    async def test_phone_numbers_that_are_not_objects_are_ignored(self, provider_settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "msg.tw.test":
                return httpx.Response(200, json={"services": []})
            return httpx.Response(200, json={"incoming_phone_numbers": ["PN1", None]})

        assert await adapter(provider_settings, handler).get_phone_numbers(CREDS) == {}


class TestTwilioAccountAndRecordings:
    @pytest.mark.asyncio
    async def test_phone_numbers_fail_soft_to_empty(self, provider_settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"message": "Authenticate"})

        assert await adapter(provider_settings, handler).get_phone_numbers(CREDS) == {}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code, expected", [(200, True), (401, False)])
    async def test_validate_credentials(self, provider_settings, status_code, expected) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/2010-04-01/Accounts/AC1.json"
            return httpx.Response(status_code, json={"sid": "AC1", "friendly_name": "Acme"})

        assert await adapter(provider_settings, handler).validate_credentials(CREDS) is expected

    @pytest.mark.asyncio
    async def test_list_webhooks_reports_configured_numbers(self, provider_settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "incoming_phone_numbers": [
                        {"sid": "PN1", "sms_url": "https://hub.example.com/a", "status_callback": "https://hub.example.com/a"},
                        {"sid": "PN2", "sms_url": "", "status_callback": None},
                    ]
                },
            )

        hooks = await adapter(provider_settings, handler).list_webhooks(CREDS)

        assert len(hooks) == 1
        assert hooks[0].id == "PN1"
        assert hooks[0].url == "https://hub.example.com/a"
        assert hooks[0].events == ("sms", "voice.status")

    @pytest.mark.asyncio
    async def test_list_webhooks_fails_soft(self, provider_settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"message": "Authenticate"})

        assert await adapter(provider_settings, handler).list_webhooks(CREDS) == []

    @pytest.mark.asyncio
    async def test_delete_webhooks_clears_each_number(self, provider_settings) -> None:
        posts: list[tuple[str, str]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            posts.append((request.url.path, request.content.decode()))
            if request.url.path.endswith("/PN1.json"):
                return httpx.Response(404, json={"message": "not found"})
            return httpx.Response(200, json={"sid": "PN2"})

        await adapter(provider_settings, handler).delete_webhooks(CREDS, ["PN1", "PN2"])

        assert [path.rsplit("/", 1)[-1] for path, _ in posts] == ["PN1.json", "PN2.json"]
        # an empty value clears the URL on Twilio's side
        assert all("SmsUrl=&" in content and "StatusCallback=&" in content for _, content in posts)

    @pytest.mark.asyncio
    async def test_download_recording_tries_unsigned_first(self, provider_settings) -> None:
        seen: list[str | None] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers.get("Authorization"))
            return httpx.Response(200, content=b"RIFF")

        content = await adapter(provider_settings, handler).download_recording(CREDS, "https://api.twilio.test/r.wav")

        assert content == b"RIFF"
        assert seen == [None]

    @pytest.mark.asyncio
    async def test_download_recording_falls_back_to_basic_auth(self, provider_settings) -> None:
        seen: list[str | None] = []

        def handler(request: httpx.Request) -> httpx.Response:
            auth = request.headers.get("Authorization")
            seen.append(auth)
            return httpx.Response(200, content=b"RIFF") if auth else httpx.Response(401)

        content = await adapter(provider_settings, handler).download_recording(CREDS, "https://api.twilio.test/r.wav")

        assert content == b"RIFF"
        assert seen[0] is None
        assert seen[1].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_download_recording_gives_up_with_none(self, provider_settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404)

        assert await adapter(provider_settings, handler).download_recording(CREDS, "https://api.twilio.test/r.wav") is None


class TestTwilioTranscripts:
    @pytest.mark.asyncio
    async def test_unknown_call_is_absent(self, provider_settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"code": 20404, "message": "not found"})

        result = await adapter(provider_settings, handler).get_call_transcript(CREDS, "CA404")

        assert result.status == TranscriptStatus.ABSENT

    @pytest.mark.asyncio
    async def test_missing_transcriptions_resource_is_absent(self, provider_settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/Recordings.json"):
                assert request.url.params["CallSid"] == "CA1"
                return httpx.Response(200, json={"recordings": [{"sid": "RE1"}]})
            return httpx.Response(404, json={"code": 20404, "message": "not found"})

        result = await adapter(provider_settings, handler).get_call_transcript(CREDS, "CA1")

        assert result.status == TranscriptStatus.ABSENT

    @pytest.mark.asyncio
    async def test_completed_transcription_is_returned(self, provider_settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/Recordings.json"):
                return httpx.Response(200, json={"recordings": [{"sid": "RE1"}]})
            assert request.url.path.endswith("/Recordings/RE1/Transcriptions.json")
            return httpx.Response(
                200,
                json={"transcriptions": [{"status": "completed", "transcription_text": "call me back"}]},
            )

        result = await adapter(provider_settings, handler).get_call_transcript(CREDS, "CA1")

        assert result.status == TranscriptStatus.COMPLETED
        assert result.transcript == "call me back"
