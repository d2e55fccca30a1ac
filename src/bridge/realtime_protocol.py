"""
OpenAI Realtime WebSocket protocol: outbound messages and inbound event parsing.

Inbound events are JSON objects with a `type` discriminator. Only a few are
relevant to the bridge; everything else parses to `RealtimeIgnored`.

Synthesized audio has been emitted under two event names across API
revisions (`response.audio.delta` and `response.output_audio.delta`), with
the payload under either `delta` or `audio`. Both are accepted.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Any, Dict, Union

import msgspec

from src.bridge.config import Config

decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()

AUDIO_DELTA_TYPES = frozenset({"response.output_audio.delta", "response.audio.delta"})
AUDIO_PAYLOAD_FIELDS = ("delta", "audio")
TEXT_DELTA_TYPES = frozenset(
    {
        "response.output_text.delta",
        "response.text.delta",
        "response.audio_transcript.delta",
        "response.output_audio_transcript.delta",
    }
)
RESPONSE_CREATED_TYPE = "response.created"
RESPONSE_DONE_TYPES = frozenset({"response.completed", "response.done"})
SPEECH_STARTED_TYPE = "input_audio_buffer.speech_started"
ERROR_TYPE = "error"


@dataclass(frozen=True)
class RealtimeTextDelta:
    text: str
    response_id: str = ""


@dataclass(frozen=True)
class RealtimeAudioDelta:
    audio: str  # base64 PCM16 LE
    response_id: str = ""


@dataclass(frozen=True)
class RealtimeResponseCreated:
    response_id: str = ""


@dataclass(frozen=True)
class RealtimeResponseDone:
    response_id: str = ""


@dataclass(frozen=True)
class RealtimeSpeechStarted:
    item_id: str = ""


@dataclass(frozen=True)
class RealtimeError:
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RealtimeIgnored:
    type: str


RealtimeEvent = Union[
    RealtimeTextDelta,
    RealtimeAudioDelta,
    RealtimeResponseCreated,
    RealtimeResponseDone,
    RealtimeSpeechStarted,
    RealtimeError,
    RealtimeIgnored,
]


def _response_id(message: Dict[str, Any]) -> str:
    response_id = message.get("response_id")
    if not response_id and isinstance(message.get("response"), dict):
        response_id = message["response"].get("id")
    return response_id if isinstance(response_id, str) else ""


def _audio_payload(message: Dict[str, Any]) -> str:
    for key in AUDIO_PAYLOAD_FIELDS:
        value = message.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def parse_realtime_event(raw_message: Union[str, bytes]) -> RealtimeEvent:
    """
    Parse a raw OpenAI Realtime message.

    Args:
        raw_message: Raw JSON text/bytes from the Realtime socket

    Returns:
        The classified event

    Raises:
        ValueError: If the message is not a JSON object
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError(f"Expected a JSON object, got {type(message).__name__}")

    event_type = message.get("type")
    if not isinstance(event_type, str):
        return RealtimeIgnored(type="")

    if event_type in AUDIO_DELTA_TYPES:
        audio = _audio_payload(message)
        if not audio:
            return RealtimeIgnored(type=event_type)
        return RealtimeAudioDelta(audio=audio, response_id=_response_id(message))

    if event_type in TEXT_DELTA_TYPES:
        delta = message.get("delta")
        if not isinstance(delta, str) or not delta:
            return RealtimeIgnored(type=event_type)
        return RealtimeTextDelta(text=delta, response_id=_response_id(message))

    if event_type == RESPONSE_CREATED_TYPE:
        return RealtimeResponseCreated(response_id=_response_id(message))

    if event_type in RESPONSE_DONE_TYPES:
        return RealtimeResponseDone(response_id=_response_id(message))

    if event_type == SPEECH_STARTED_TYPE:
        return RealtimeSpeechStarted(item_id=str(message.get("item_id") or ""))

    if event_type == ERROR_TYPE:
        error = message.get("error")
        if isinstance(error, dict):
            return RealtimeError(message=str(error.get("message") or ""), details=error)
        return RealtimeError(message=str(error or ""), details={})

    return RealtimeIgnored(type=event_type)


def encode_message(message: Dict[str, Any]) -> str:
    return encoder.encode(message).decode("utf-8")


def build_session_update(config: Config) -> Dict[str, Any]:
    """
    Build the `session.update` sent right after connecting.

    Output stays PCM16 so the bridge transcodes to mu-law itself; caller
    audio goes up as Twilio's mu-law unchanged.
    """
    return {
        "type": "session.update",
        "session": {
            "modalities": ["audio"],
            "instructions": config.openai_realtime_instructions,
            "voice": config.openai_realtime_voice,
            "input_audio_format": "g711_ulaw",
            "output_audio_format": "pcm16",
            "turn_detection": {
                "type": "server_vad",
                "silence_duration_ms": int(config.openai_realtime_turn_silence_ms),
            },
        },
    }


def build_greeting_request(config: Config) -> Dict[str, Any]:
    """Build the initial `response.create` that makes the assistant speak first."""
    return {
        "type": "response.create",
        "response": {
            "modalities": ["audio"],
            "instructions": config.openai_realtime_greeting,
        },
    }


def build_audio_append(ulaw_bytes: bytes) -> Dict[str, Any]:
    """Build an `input_audio_buffer.append` carrying caller mu-law audio."""
    return {
        "type": "input_audio_buffer.append",
        "audio": base64.b64encode(ulaw_bytes).decode("utf-8"),
    }


def build_response_cancel(response_id: str = "") -> Dict[str, Any]:
    """Build a `response.cancel` for the response being spoken (or the current one)."""
    message: Dict[str, Any] = {"type": "response.cancel"}
    if response_id:
        message["response_id"] = response_id
    return message


def build_output_audio_clear() -> Dict[str, Any]:
    return {"type": "output_audio_buffer.clear"}
