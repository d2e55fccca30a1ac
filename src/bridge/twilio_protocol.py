"""
Twilio Media Streams WebSocket Protocol Handler.

Twilio sends JSON messages with events:
- connected: Initial connection
- start: Stream started, contains streamSid and callSid
- media: Audio data as base64 mu-law 8kHz
- mark: Playback marker acknowledgment
- stop: Stream stopped

Outbound messages:
- media: Send audio as base64 mu-law 8kHz
- mark: Request playback acknowledgment
- clear: Clear buffered audio (for interruption)
"""

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import msgspec
import structlog

logger = structlog.get_logger(__name__)

# Create global msgspec encoder/decoder
decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    STOP = "stop"


class TelephonyState(str, Enum):
    """Lifecycle of one Twilio media stream."""
    AWAITING_START = "awaiting_start"
    ACTIVE = "active"
    STOPPED = "stopped"


@dataclass
class TwilioConnectedEvent:
    """Parsed Twilio connected event."""
    protocol: str = ""


@dataclass
class TwilioStartEvent:
    """Parsed Twilio start event."""
    stream_sid: str
    call_sid: str
    account_sid: str
    tracks: List[str]
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        """Parse from Twilio message."""
        start = message.get("start") or {}
        return cls(
            stream_sid=start.get("streamSid") or message.get("streamSid", ""),
            call_sid=start.get("callSid", ""),
            account_sid=start.get("accountSid", ""),
            tracks=start.get("tracks", []),
            custom_parameters=start.get("customParameters", {}),
        )


@dataclass
class TwilioMediaEvent:
    """Parsed Twilio media event."""
    stream_sid: str
    track: str
    chunk: int
    timestamp: str
    payload: bytes  # Decoded audio bytes (mu-law)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        """Parse from Twilio message."""
        media = message.get("media") or {}

        try:
            payload = base64.b64decode(media.get("payload", ""), validate=True)
        except (binascii.Error, ValueError, TypeError):
            logger.debug("Undecodable Twilio media payload")
            payload = b""

        try:
            chunk = int(media.get("chunk", 0))
        except (TypeError, ValueError):
            chunk = 0

        return cls(
            stream_sid=message.get("streamSid", ""),
            track=media.get("track", "inbound"),
            chunk=chunk,
            timestamp=str(media.get("timestamp", "")),
            payload=payload,
        )


@dataclass
class TwilioMarkEvent:
    """Parsed Twilio mark event."""
    stream_sid: str
    name: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMarkEvent":
        """Parse from Twilio message."""
        mark = message.get("mark") or {}
        return cls(
            stream_sid=message.get("streamSid", ""),
            name=mark.get("name", ""),
        )


@dataclass
class TwilioStopEvent:
    """Parsed Twilio stop event."""
    stream_sid: str
    call_sid: str = ""

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStopEvent":
        """Parse from Twilio message."""
        stop = message.get("stop") or {}
        return cls(
            stream_sid=stop.get("streamSid") or message.get("streamSid", ""),
            call_sid=stop.get("callSid", ""),
        )


TwilioEvent = Union[
    TwilioConnectedEvent,
    TwilioStartEvent,
    TwilioMediaEvent,
    TwilioMarkEvent,
    TwilioStopEvent,
]


def parse_twilio_message(raw_message: Union[str, bytes]) -> tuple[TwilioEventType, TwilioEvent]:
    """
    Parse a raw Twilio WebSocket message.

    Args:
        raw_message: Raw JSON string from Twilio

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ValueError: If message cannot be parsed
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError(f"Expected a JSON object, got {type(message).__name__}")

    event_type_str = message.get("event", "")

    try:
        event_type = TwilioEventType(event_type_str)
    except ValueError:
        raise ValueError(f"Unknown event type: {event_type_str}")

    try:
        if event_type == TwilioEventType.CONNECTED:
            return event_type, TwilioConnectedEvent(protocol=str(message.get("protocol", "")))
        if event_type == TwilioEventType.START:
            return event_type, TwilioStartEvent.from_message(message)
        if event_type == TwilioEventType.MEDIA:
            return event_type, TwilioMediaEvent.from_message(message)
        if event_type == TwilioEventType.MARK:
            return event_type, TwilioMarkEvent.from_message(message)
        return event_type, TwilioStopEvent.from_message(message)
    except AttributeError as e:
        # Nested event body was not an object.
        raise ValueError(f"Malformed {event_type.value} event: {e}")


def create_media_message(
    stream_sid: str,
    audio_payload: bytes,
) -> str:
    """
    Create a Twilio media message.

    Args:
        stream_sid: The stream SID
        audio_payload: Raw mu-law audio bytes (at most 160 bytes for 20ms)

    Returns:
        JSON string to send to Twilio
    """
    payload_b64 = base64.b64encode(audio_payload).decode("utf-8")

    message = {
        "event": "media",
        "streamSid": stream_sid,
        "media": {
            "payload": payload_b64
        }
    }

    return encoder.encode(message).decode("utf-8")


def create_mark_message(stream_sid: str, name: str) -> str:
    """
    Create a Twilio mark message.

    Twilio echoes the mark back once the audio queued before it has played.
    """
    message = {
        "event": "mark",
        "streamSid": stream_sid,
        "mark": {
            "name": name
        }
    }

    return encoder.encode(message).decode("utf-8")


def create_clear_message(stream_sid: str) -> str:
    """Create a Twilio clear message (drops audio buffered on Twilio's side)."""
    message = {
        "event": "clear",
        "streamSid": stream_sid
    }

    return encoder.encode(message).decode("utf-8")


class TelephonyLink:
    """
    One Twilio Media Streams socket for one call.

    Tracks the `AWAITING_START -> ACTIVE -> STOPPED` state machine, owns the
    stream SID and sends outbound media/mark/clear messages. The websocket is
    anything exposing `iter_text()`, `send_text()` and `close()` (a Starlette
    `WebSocket` in production).
    """

    def __init__(self, websocket: Any, call_sid: str = "unknown"):
        self._websocket = websocket
        self.call_sid = call_sid
        self.state = TelephonyState.AWAITING_START
        self._stream_sid: Optional[str] = None
        self._closed = False
        self.frames_sent = 0

    @property
    def stream_sid(self) -> Optional[str]:
        """The stream SID, once the start event has been accepted."""
        return self._stream_sid

    @property
    def is_active(self) -> bool:
        return self.state == TelephonyState.ACTIVE and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    async def events(self) -> AsyncIterator[TwilioEvent]:
        """
        Yield parsed events until the socket disconnects.

        Malformed or unknown messages are logged and skipped.
        """
        async for raw in self._websocket.iter_text():
            try:
                _, event = parse_twilio_message(raw)
            except ValueError as e:
                logger.warning("Ignoring Twilio message", call_sid=self.call_sid, error=str(e))
                continue
            yield event

    def handle_start(self, event: TwilioStartEvent) -> bool:
        """
        Handle a start event.

        Only the first start is accepted; later ones never replace the stream
        SID of the stream in flight.

        Returns:
            True if the event activated the stream
        """
        if self.state != TelephonyState.AWAITING_START:
            logger.warning(
                "Ignoring duplicate start event",
                call_sid=self.call_sid,
                stream_sid=self._stream_sid,
                ignored_stream_sid=event.stream_sid,
                state=self.state.value,
            )
            return False

        if not event.stream_sid:
            logger.warning("Ignoring start event without streamSid", call_sid=self.call_sid)
            return False

        self._stream_sid = event.stream_sid
        self.state = TelephonyState.ACTIVE
        logger.info(
            "Stream started",
            call_sid=self.call_sid,
            stream_sid=event.stream_sid,
            tracks=event.tracks,
        )
        return True

    def handle_stop(self, event: Optional[TwilioStopEvent] = None) -> None:
        """Handle a stop event."""
        if self.state == TelephonyState.STOPPED:
            return
        self.state = TelephonyState.STOPPED
        logger.info(
            "Stream stopped",
            call_sid=self.call_sid,
            stream_sid=event.stream_sid if event else self._stream_sid,
            frames_sent=self.frames_sent,
        )

    def handle_mark(self, event: TwilioMarkEvent) -> None:
        """Handle a mark acknowledgment (informational)."""
        logger.debug("Mark acknowledged", call_sid=self.call_sid, mark_name=event.name)

    async def send_audio(self, frame: bytes) -> bool:
        """
        Send one mu-law frame as a media event.

        Returns:
            True if the frame was handed to the socket
        """
        if not self._stream_sid:
            logger.warning("Dropping audio frame before stream start", call_sid=self.call_sid, size=len(frame))
            return False
        if self._closed:
            return False

        sent = await self._send(create_media_message(self._stream_sid, frame))
        if sent:
            self.frames_sent += 1
        return sent

    async def send_mark(self, name: str) -> bool:
        """Send a mark message after the audio queued so far."""
        if not self._stream_sid or self._closed:
            return False
        return await self._send(create_mark_message(self._stream_sid, name))

    async def send_clear(self) -> bool:
        """Ask Twilio to drop audio it has buffered but not yet played."""
        if not self._stream_sid or self._closed:
            return False
        logger.info("Clearing Twilio audio buffer", call_sid=self.call_sid, stream_sid=self._stream_sid)
        return await self._send(create_clear_message(self._stream_sid))

    async def _send(self, message: str) -> bool:
        try:
            await self._websocket.send_text(message)
            return True
        except Exception as e:
            logger.error("Failed to send Twilio message", call_sid=self.call_sid, error=str(e))
            return False

    async def close(self) -> None:
        """Close the socket. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self.state != TelephonyState.STOPPED:
            self.state = TelephonyState.STOPPED
        try:
            await self._websocket.close()
        except Exception as e:
            # Already closed by the peer.
            logger.debug("Twilio socket close failed", call_sid=self.call_sid, error=str(e))
