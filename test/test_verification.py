"""Tests for webhook signature verification."""

import base64
import hashlib
import hmac

from commhub.webhooks.verification import (
    twilio_signature,
    verify_openphone_legacy_signature,
    verify_openphone_signature,
    verify_twilio_signature,
)

KEY = b"openphone-signing-key"
SECRET = base64.b64encode(KEY).decode()
BODY = b'{"type":"message.received","data":{"object":{"id":"AC1"}}}'


def openphone_header(key: bytes, timestamp: str, body: bytes) -> str:
    digest = hmac.new(key, timestamp.encode() + b"." + body, hashlib.sha256).digest()
    return f"hmac;1;{timestamp};{base64.b64encode(digest).decode()}"


class TestOpenPhoneSignature:
    def test_valid_signature(self) -> None:
        assert verify_openphone_signature(SECRET, BODY, openphone_header(KEY, "1767225600000", BODY))

    def test_tampered_body_is_rejected(self) -> None:
        header = openphone_header(KEY, "1767225600000", BODY)

        assert not verify_openphone_signature(SECRET, BODY + b" ", header)

    def test_timestamp_is_part_of_the_signed_payload(self) -> None:
        header = openphone_header(KEY, "1767225600000", BODY).replace("1767225600000", "1767225600001")

        assert not verify_openphone_signature(SECRET, BODY, header)

    def test_malformed_header_is_rejected(self) -> None:
        assert not verify_openphone_signature(SECRET, BODY, "sha256=abc")
        assert not verify_openphone_signature(SECRET, BODY, "")

    def test_legacy_hex_signature(self) -> None:
        signature = hmac.new(b"legacy", BODY, hashlib.sha256).hexdigest()

        assert verify_openphone_legacy_signature("legacy", BODY, signature)
        assert not verify_openphone_legacy_signature("other", BODY, signature)


class TestTwilioSignature:
    URL = "https://hub.example.com/webhooks/twilio/abc"
    PARAMS = {"MessageSid": "SM1", "From": "+15550000001", "To": "+15559990000", "Body": "hi"}

    def test_signature_covers_url_and_sorted_params(self) -> None:
        payload = self.URL + "BodyhiFrom+15550000001MessageSidSM1To+15559990000"
        expected = base64.b64encode(hmac.new(b"tok", payload.encode(), hashlib.sha1).digest()).decode()

        assert twilio_signature("tok", self.URL, self.PARAMS) == expected

    def test_verify_round_trip_and_rejections(self) -> None:
        signature = twilio_signature("tok", self.URL, self.PARAMS)

        assert verify_twilio_signature("tok", self.URL, self.PARAMS, signature)
        assert not verify_twilio_signature("other-token", self.URL, self.PARAMS, signature)
        assert not verify_twilio_signature("tok", self.URL + "?x=1", self.PARAMS, signature)
        assert not verify_twilio_signature("tok", self.URL, {**self.PARAMS, "Body": "changed"}, signature)
