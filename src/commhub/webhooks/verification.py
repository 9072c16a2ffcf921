"""
Signature verification for provider webhooks.
"""

import base64
import binascii
import hashlib
import hmac
from collections.abc import Mapping

from commhub.shared.logging import get_logger

logger = get_logger(__name__)

OPENPHONE_SIGNATURE_HEADER = "openphone-signature"
OPENPHONE_LEGACY_SIGNATURE_HEADER = "x-openphone-signature"
TWILIO_SIGNATURE_HEADER = "x-twilio-signature"


def _decode_key(secret: str) -> bytes:
    # OpenPhone hands out the signing key base64 encoded.
    try:
        return base64.b64decode(secret, validate=True)
    except (binascii.Error, ValueError):
        return secret.encode("utf-8")


def verify_openphone_signature(secret: str, body: bytes, header: str) -> bool:
    """Verify ``openphone-signature: hmac;1;<timestamp>;<base64 digest>``.

    The digest is HMAC-SHA256 over ``<timestamp>.<body>`` keyed with the
    base64-decoded signing key.
    """
    parts = header.split(";")
    if len(parts) != 4 or parts[0] != "hmac":
        logger.warning("Malformed OpenPhone signature header", extra={"parts": len(parts)})
        return False
    _, _version, timestamp, provided = parts

    signed = timestamp.encode("utf-8") + b"." + body
    expected = base64.b64encode(hmac.new(_decode_key(secret), signed, hashlib.sha256).digest()).decode("ascii")
    return hmac.compare_digest(expected, provided)


def verify_openphone_legacy_signature(secret: str, body: bytes, signature: str) -> bool:
    """Hex HMAC-SHA256 of the raw body (``x-openphone-signature``)."""
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


def twilio_signature(auth_token: str, url: str, params: Mapping[str, str]) -> str:
    """Twilio request signature: base64 HMAC-SHA1 over URL + sorted params."""
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_twilio_signature(
    auth_token: str,
    url: str,
    params: Mapping[str, str],
    signature: str,
) -> bool:
    return hmac.compare_digest(twilio_signature(auth_token, url, params), signature)
