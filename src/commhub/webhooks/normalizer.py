"""
Provider webhook payload normalization.

Maps OpenPhone JSON events and Twilio form callbacks onto canonical entities
and event kinds. Status and direction mapping is delegated to the adapter
modules so push and bulk paths share a single mapping table per provider.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from commhub.communication.models import (
    UNKNOWN_NUMBER,
    CallData,
    CallDirection,
    CallStatus,
    ConversationData,
    MessageData,
    MessageDirection,
    MessageStatus,
    ProviderType,
    TranscriptStatus,
    conversation_key,
)
from commhub.events.models import EventKind
from commhub.providers import openphone, twilio
from commhub.shared.logging import get_logger

logger = get_logger(__name__)

_TWILIO_RINGING = {"queued", "initiated", "ringing"}
_TWILIO_TERMINAL = {"completed", "busy", "no-answer", "failed", "canceled"}


@dataclass(frozen=True)
class RecordingUpdate:
    """Recording callback that only references a call by id."""

    provider_call_id: str
    recording_url: str | None
    duration: int | None = None
    transcript_status: TranscriptStatus | None = None


@dataclass(frozen=True)
class NormalizedEvent:
    """Canonical view of one provider webhook delivery."""

    provider: ProviderType
    event_type: str
    # Idempotency id: unique per provider event type.
    external_id: str
    kind: EventKind | None = None
    conversation: ConversationData | None = None
    message: MessageData | None = None
    call: CallData | None = None
    recording: RecordingUpdate | None = None
    # Provisional call states never overwrite a stored call.
    provisional: bool = False
    payload: dict[str, Any] = field(default_factory=dict)


def _pair_conversation(
    owned: str,
    participant: str,
    native_id: str | None = None,
    last_message_at: datetime | None = None,
    metadata: dict[str, Any] | None = None,
) -> ConversationData:
    owned = owned or UNKNOWN_NUMBER
    return ConversationData(
        external_id=native_id or conversation_key(owned, participant),
        owned_number=owned,
        participant=participant,
        participants=(participant,) if participant else (),
        last_message_at=last_message_at,
        last_message_verified=last_message_at is not None,
        metadata={k: v for k, v in (metadata or {}).items() if v is not None},
    )


# ---- OpenPhone


def _openphone_message_kind(event_type: str, message: MessageData) -> tuple[EventKind | None, MessageData]:
    if event_type == "message.received":
        return EventKind.MESSAGE_RECEIVED, message
    if event_type == "message.delivered":
        if message.status == MessageStatus.FAILED:
            return EventKind.MESSAGE_FAILED, message
        return EventKind.MESSAGE_DELIVERED, replace(message, status=MessageStatus.DELIVERED)
    # message.sent
    if message.status == MessageStatus.PENDING:
        message = replace(message, status=MessageStatus.SENT)
    return None, message


def normalize_openphone(payload: Mapping[str, Any]) -> NormalizedEvent | None:
    """Normalize an OpenPhone ``{type, data: {object}}`` event; None when unhandled."""
    event_type = str(payload.get("type") or "")
    data = payload.get("data") or {}
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict) or not obj.get("id"):
        logger.warning("OpenPhone webhook without object id", extra={"event_type": event_type})
        return None

    phone_number_id = obj.get("phoneNumberId")

    if event_type in ("message.received", "message.delivered", "message.sent"):
        message = openphone.map_message(obj, phone_number_id)
        kind, message = _openphone_message_kind(event_type, message)
        if message.direction == MessageDirection.IN:
            owned, participant = message.to_number, message.from_number
        else:
            owned, participant = message.from_number, message.to_number
        conversation = _pair_conversation(
            owned,
            participant,
            native_id=obj.get("conversationId"),
            last_message_at=message.created_at,
            metadata={"phone_number_id": phone_number_id},
        )
        return NormalizedEvent(
            provider=ProviderType.OPENPHONE,
            event_type=event_type,
            external_id=str(obj["id"]),
            kind=kind,
            conversation=conversation,
            message=message,
            payload=dict(payload),
        )

    if event_type in ("call.completed", "call.ringing", "call.recording.completed", "voicemail.received"):
        call = openphone.map_call(obj)
        kind = {
            "call.completed": EventKind.CALL_COMPLETED,
            "call.ringing": EventKind.CALL_RINGING,
            "call.recording.completed": EventKind.CALL_RECORDING_COMPLETED,
            "voicemail.received": EventKind.CALL_COMPLETED,
        }[event_type]
        if event_type == "voicemail.received":
            media = obj.get("media") or []
            voicemail_url = obj.get("voicemailUrl") or obj.get("url")
            if not voicemail_url and media and isinstance(media[0], dict):
                voicemail_url = media[0].get("url")
            call = replace(call, status=CallStatus.VOICEMAIL, voicemail_url=voicemail_url or call.voicemail_url)
        if event_type == "call.ringing":
            # Placeholder until call.completed reports the outcome.
            call = replace(call, status=CallStatus.COMPLETED)

        if call.direction == CallDirection.IN:
            owned, participant = call.to_number, call.from_number
        else:
            owned, participant = call.from_number, call.to_number
        return NormalizedEvent(
            provider=ProviderType.OPENPHONE,
            event_type=event_type,
            external_id=str(obj["id"]),
            kind=kind,
            conversation=_pair_conversation(
                owned,
                participant,
                native_id=obj.get("conversationId"),
                metadata={"phone_number_id": phone_number_id},
            ),
            call=call,
            provisional=event_type == "call.ringing",
            payload=dict(payload),
        )

    logger.info("Unhandled OpenPhone webhook type", extra={"event_type": event_type})
    return None


# ---- Twilio


def _int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _twilio_media(form: Mapping[str, str]) -> tuple[str, ...]:
    count = _int(form.get("NumMedia")) or 0
    return tuple(form[f"MediaUrl{i}"] for i in range(count) if form.get(f"MediaUrl{i}"))


def _twilio_recording(form: Mapping[str, str]) -> NormalizedEvent | None:
    recording_status = (form.get("RecordingStatus") or "").lower()
    transcript_status = twilio.TWILIO_TRANSCRIPT_STATUS_MAP.get((form.get("TranscriptionStatus") or "").lower())
    update = RecordingUpdate(
        provider_call_id=form.get("CallSid", ""),
        recording_url=form.get("RecordingUrl") or None,
        duration=_int(form.get("RecordingDuration")),
        transcript_status=transcript_status,
    )
    return NormalizedEvent(
        provider=ProviderType.TWILIO,
        event_type="recording.status",
        external_id=f"{form['RecordingSid']}:{recording_status}",
        kind=EventKind.CALL_RECORDING_COMPLETED if recording_status == "completed" else None,
        recording=update,
        payload=dict(form),
    )


def _twilio_call(form: Mapping[str, str]) -> NormalizedEvent:
    raw_status = (form.get("CallStatus") or "").lower()
    direction = form.get("Direction")
    from_number, to_number = form.get("From", ""), form.get("To", "")
    ours, participant = twilio.split_parties(direction, from_number, to_number)

    if raw_status in _TWILIO_TERMINAL:
        kind, status, provisional = EventKind.CALL_COMPLETED, twilio.map_call_status(raw_status), False
    else:
        kind = EventKind.CALL_RINGING if raw_status in _TWILIO_RINGING else None
        status, provisional = CallStatus.COMPLETED, True

    now = datetime.now(timezone.utc)
    call = CallData(
        provider_call_id=form["CallSid"],
        direction=CallDirection.IN if twilio.is_inbound(direction) else CallDirection.OUT,
        duration=_int(form.get("CallDuration")) or 0,
        from_number=from_number or UNKNOWN_NUMBER,
        to_number=to_number or UNKNOWN_NUMBER,
        status=status,
        created_at=now,
        recording_url=form.get("RecordingUrl") or None,
        ended_at=now if not provisional else None,
        metadata={"original_status": raw_status},
    )
    return NormalizedEvent(
        provider=ProviderType.TWILIO,
        event_type="call.status",
        external_id=f"{form['CallSid']}:{raw_status}",
        kind=kind,
        conversation=_pair_conversation(ours, participant),
        call=call,
        provisional=provisional,
        payload=dict(form),
    )


def _twilio_message(form: Mapping[str, str]) -> NormalizedEvent:
    sid = form.get("MessageSid") or form.get("SmsSid") or ""
    raw_status = (form.get("MessageStatus") or form.get("SmsStatus") or "").lower()
    from_number, to_number = form.get("From", ""), form.get("To", "")
    now = datetime.now(timezone.utc)

    if raw_status == "received":
        message = MessageData(
            provider_message_id=sid,
            direction=MessageDirection.IN,
            body=form.get("Body") or "",
            from_number=from_number or UNKNOWN_NUMBER,
            to_number=to_number or UNKNOWN_NUMBER,
            status=MessageStatus.DELIVERED,
            created_at=now,
            media_urls=_twilio_media(form),
            metadata={"num_media": form.get("NumMedia"), "num_segments": form.get("NumSegments")},
        )
        return NormalizedEvent(
            provider=ProviderType.TWILIO,
            event_type="sms.received",
            external_id=sid,
            kind=EventKind.MESSAGE_RECEIVED,
            conversation=_pair_conversation(to_number, from_number, last_message_at=now),
            message=message,
            payload=dict(form),
        )

    # Status callbacks only exist for messages we sent.
    status = twilio.map_message_status(raw_status)
    kind = {
        MessageStatus.DELIVERED: EventKind.MESSAGE_DELIVERED,
        MessageStatus.FAILED: EventKind.MESSAGE_FAILED,
    }.get(status)
    message = MessageData(
        provider_message_id=sid,
        direction=MessageDirection.OUT,
        body=form.get("Body") or "",
        from_number=from_number or UNKNOWN_NUMBER,
        to_number=to_number or UNKNOWN_NUMBER,
        status=status,
        created_at=now,
        metadata={"error_code": form.get("ErrorCode"), "original_status": raw_status},
    )
    return NormalizedEvent(
        provider=ProviderType.TWILIO,
        event_type="sms.status",
        external_id=f"{sid}:{raw_status}",
        kind=kind,
        conversation=_pair_conversation(from_number, to_number),
        message=message,
        payload=dict(form),
    )


def normalize_twilio(form: Mapping[str, str]) -> NormalizedEvent | None:
    """Normalize a Twilio form callback; None when the shape is not recognized."""
    if form.get("RecordingSid"):
        return _twilio_recording(form)
    if form.get("MessageSid") or form.get("SmsSid"):
        return _twilio_message(form)
    if form.get("CallSid"):
        return _twilio_call(form)
    logger.info("Unrecognized Twilio webhook", extra={"keys": sorted(form.keys())})
    return None
