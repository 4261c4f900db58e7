# backend/protocol/messages.py
"""
Tagged JSON messages exchanged with the realtime provider.

Outbound (client -> provider):
    session.update                 audio format, voice, instructions, modalities
    input_audio_buffer.append      base64 PCM16LE mono chunk
    input_audio_buffer.commit      -
    response.create                requested modalities
    conversation.item.create       user text turn (relay greeting)

Inbound (provider -> client):
    session.created                assigned session id
    session.updated                acknowledgment of session.update
    response.text.delta            incremental text
    response.audio.delta           base64 PCM16 audio delta
    input_audio_buffer.committed   transcript (if available)
    conversation.item.input_audio_transcription.completed   transcript
    error                          error code/message

Both directions are closed sets. Anything else inbound parses to the
explicit UNKNOWN variant so callers ignore it on purpose.

Usage example:

    msg = parse_inbound(raw)
    if msg.kind is InboundType.AUDIO_DELTA:
        playback.enqueue(InboundChunk(sequence_num=n, encoded=msg.audio))

    await ws.send(audio_append(frame.pcm_bytes).to_json())
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Tuple, Union
from uuid import uuid4

from audio.pcm import encode_base64
from constants import AUDIO_WIRE_FORMAT, AUTH_ERROR_CODES


# -------------------------
# Exceptions
# -------------------------

class MalformedMessage(ValueError):
    """
    Raised when an inbound frame is not a tagged JSON object.

    Recoverable: the frame is logged and ignored.
    """


# -------------------------
# Helpers
# -------------------------

def new_event_id() -> str:
    return f"event_{uuid4().hex[:16]}"


def _dumps(payload: Mapping[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


# =============================================================================
# Outbound
# =============================================================================

class OutboundType(str, Enum):
    """Message types this system originates."""

    SESSION_UPDATE = "session.update"
    AUDIO_APPEND = "input_audio_buffer.append"
    AUDIO_COMMIT = "input_audio_buffer.commit"
    RESPONSE_CREATE = "response.create"
    CONVERSATION_ITEM_CREATE = "conversation.item.create"


@dataclass(frozen=True)
class OutboundMessage:
    """
    One outbound message.

    event_id is unique per message and is what the provider echoes back
    in error reports.
    """
    type: OutboundType
    payload: Mapping[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=new_event_id)

    def to_wire(self) -> dict[str, Any]:
        return {"event_id": self.event_id, "type": self.type.value, **self.payload}

    def to_json(self) -> str:
        return _dumps(self.to_wire())


@dataclass(frozen=True)
class SessionSettings:
    """Initial session configuration sent once the session exists."""
    voice: str
    instructions: str
    modalities: Tuple[str, ...]
    transcription_model: str | None = None
    max_response_tokens: int | None = None


def session_update(settings: SessionSettings) -> OutboundMessage:
    session: dict[str, Any] = {
        "modalities": list(settings.modalities),
        "instructions": settings.instructions,
        "voice": settings.voice,
        "input_audio_format": AUDIO_WIRE_FORMAT,
        "output_audio_format": AUDIO_WIRE_FORMAT,
    }
    if settings.transcription_model:
        session["input_audio_transcription"] = {"model": settings.transcription_model}
    if settings.max_response_tokens is not None:
        session["max_response_output_tokens"] = settings.max_response_tokens
    return OutboundMessage(OutboundType.SESSION_UPDATE, {"session": session})


def audio_append(pcm_bytes: bytes) -> OutboundMessage:
    """Wrap raw PCM16LE bytes in an append envelope."""
    return audio_append_encoded(encode_base64(pcm_bytes))


def audio_append_encoded(audio_b64: str) -> OutboundMessage:
    """Wrap an already base64-encoded PCM16LE payload in an append envelope."""
    return OutboundMessage(OutboundType.AUDIO_APPEND, {"audio": audio_b64})


def audio_commit() -> OutboundMessage:
    return OutboundMessage(OutboundType.AUDIO_COMMIT)


def response_create(
    modalities: Tuple[str, ...],
    *,
    max_output_tokens: int | None = None,
) -> OutboundMessage:
    response: dict[str, Any] = {"modalities": list(modalities)}
    if max_output_tokens is not None:
        response["max_output_tokens"] = max_output_tokens
    return OutboundMessage(OutboundType.RESPONSE_CREATE, {"response": response})


def conversation_item_create(text: str) -> OutboundMessage:
    """User text turn."""
    return OutboundMessage(
        OutboundType.CONVERSATION_ITEM_CREATE,
        {
            "item": {
                "type": "message",
                "role": "user",
                "content": [{"type": "input_text", "text": text}],
            }
        },
    )


# =============================================================================
# Inbound
# =============================================================================

class InboundType(str, Enum):
    """
    Message types this system understands from the provider.

    UNKNOWN is the deliberate catch-all; it never matches a wire tag.
    """

    SESSION_CREATED = "session.created"
    SESSION_UPDATED = "session.updated"
    TEXT_DELTA = "response.text.delta"
    AUDIO_DELTA = "response.audio.delta"
    AUDIO_COMMITTED = "input_audio_buffer.committed"
    TRANSCRIPTION_COMPLETED = "conversation.item.input_audio_transcription.completed"
    ERROR = "error"
    UNKNOWN = "<unknown>"


@dataclass(frozen=True)
class SessionCreated:
    session_id: str | None
    kind: InboundType = InboundType.SESSION_CREATED


@dataclass(frozen=True)
class SessionUpdated:
    kind: InboundType = InboundType.SESSION_UPDATED


@dataclass(frozen=True)
class TextDelta:
    text: str
    kind: InboundType = InboundType.TEXT_DELTA


@dataclass(frozen=True)
class AudioDelta:
    audio: str  # base64, decoded by the playback queue
    kind: InboundType = InboundType.AUDIO_DELTA


@dataclass(frozen=True)
class AudioCommitted:
    transcript: str | None
    kind: InboundType = InboundType.AUDIO_COMMITTED


@dataclass(frozen=True)
class TranscriptionCompleted:
    transcript: str | None
    kind: InboundType = InboundType.TRANSCRIPTION_COMPLETED


@dataclass(frozen=True)
class ErrorMessage:
    """
    Provider-reported error.

    error_type/code come from the nested error object when present.
    """
    message: str
    code: str | None = None
    error_type: str | None = None
    kind: InboundType = InboundType.ERROR

    @property
    def is_auth_failure(self) -> bool:
        """Authentication failures are fatal; everything else is not."""
        tags = {self.code or "", self.error_type or ""}
        if tags & set(AUTH_ERROR_CODES):
            return True
        return "authentication" in self.message.lower()


@dataclass(frozen=True)
class UnknownMessage:
    type_name: str
    kind: InboundType = InboundType.UNKNOWN


InboundMessage = Union[
    SessionCreated,
    SessionUpdated,
    TextDelta,
    AudioDelta,
    AudioCommitted,
    TranscriptionCompleted,
    ErrorMessage,
    UnknownMessage,
]


def _delta_field(data: Mapping[str, Any], key: str) -> str | None:
    """
    Extract a delta payload.

    Accepts the flat form {"delta": "..."} and the nested form
    {"delta": {key: "..."}}.
    """
    delta = data.get("delta")
    if isinstance(delta, str):
        return delta
    if isinstance(delta, Mapping):
        value = delta.get(key)
        if isinstance(value, str):
            return value
    return None


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _parse_error(data: Mapping[str, Any]) -> ErrorMessage:
    err = data.get("error")
    if isinstance(err, Mapping):
        return ErrorMessage(
            message=str(err.get("message") or "unknown error"),
            code=_optional_str(err.get("code")),
            error_type=_optional_str(err.get("type")),
        )
    if isinstance(err, str):
        return ErrorMessage(message=err)
    return ErrorMessage(message=str(data.get("message") or "unknown error"))


def decode_object(raw: str | bytes) -> dict[str, Any]:
    """
    Parse one frame into a JSON object.

    Raises:
        MalformedMessage for invalid JSON or a non-object value.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError, UnicodeDecodeError) as exc:
        raise MalformedMessage(f"invalid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise MalformedMessage(f"expected JSON object, got {type(data).__name__}")
    return data


def parse_inbound(raw: str | bytes) -> InboundMessage:
    """
    Parse a provider frame into a typed variant.

    Raises:
        MalformedMessage for invalid JSON, non-objects, or a missing type.
        Payload-level gaps (e.g. a delta without text) are MalformedMessage
        too, so callers never see half-filled variants.
    """
    data = decode_object(raw)
    msg_type = data.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise MalformedMessage("missing message type")

    if msg_type == InboundType.SESSION_CREATED.value:
        session = data.get("session")
        session_id = session.get("id") if isinstance(session, Mapping) else None
        return SessionCreated(session_id=_optional_str(session_id))

    if msg_type == InboundType.SESSION_UPDATED.value:
        return SessionUpdated()

    if msg_type == InboundType.TEXT_DELTA.value:
        text = _delta_field(data, "text")
        if text is None:
            raise MalformedMessage("text delta without text")
        return TextDelta(text=text)

    if msg_type == InboundType.AUDIO_DELTA.value:
        audio = _delta_field(data, "audio")
        if audio is None:
            raise MalformedMessage("audio delta without audio")
        return AudioDelta(audio=audio)

    if msg_type == InboundType.AUDIO_COMMITTED.value:
        return AudioCommitted(transcript=_optional_str(data.get("transcript")))

    if msg_type == InboundType.TRANSCRIPTION_COMPLETED.value:
        return TranscriptionCompleted(transcript=_optional_str(data.get("transcript")))

    if msg_type == InboundType.ERROR.value:
        return _parse_error(data)

    return UnknownMessage(type_name=msg_type)


# =============================================================================
# Relay normalization (client -> provider)
# =============================================================================

def wrap_raw_audio(pcm_bytes: bytes) -> list[str]:
    """
    Envelope a raw PCM16 payload: exactly one append, then one commit.
    """
    return [audio_append(pcm_bytes).to_json(), audio_commit().to_json()]


def normalize_client_text(raw: str) -> list[str]:
    """
    Frames to send upstream for one client text frame.

    - typed append / commit: re-enveloped with a fresh event_id
    - {"audio": "<b64>"} without a type: append + commit
    - anything else: forwarded verbatim (original text, not re-serialized)

    Raises:
        MalformedMessage if the frame is not a JSON object.
    """
    data = decode_object(raw)
    msg_type = data.get("type")
    audio = data.get("audio")

    if msg_type is None and isinstance(audio, str):
        return [audio_append_encoded(audio).to_json(), audio_commit().to_json()]

    if msg_type == OutboundType.AUDIO_APPEND.value and isinstance(audio, str):
        return [audio_append_encoded(audio).to_json()]

    if msg_type == OutboundType.AUDIO_COMMIT.value:
        return [audio_commit().to_json()]

    return [raw]
