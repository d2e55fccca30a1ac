"""
Per-call session: pairs one Twilio media stream with one OpenAI Realtime socket.

Both links are read by their own pump task. Pumps push typed events into a
single queue; the session loop consumes it in arrival order, so frames go out
in the order their deltas arrived. Either side closing (or failing) tears the
whole session down exactly once, including while the upstream handshake is
still in flight.

Caller speech during an assistant response clears Twilio's playback buffer,
cancels the response upstream and drops its remaining deltas.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Mapping, Optional

import structlog

from src.bridge.audio import (
    TWILIO_FRAME_SIZE,
    TWILIO_SAMPLE_RATE,
    AudioDecodeError,
    chunk_audio,
    get_audio_duration_ms,
    pcm16_base64_to_ulaw,
)
from src.bridge.config import Config
from src.bridge.model_link import ModelLink
from src.bridge.realtime_protocol import (
    RealtimeAudioDelta,
    RealtimeError,
    RealtimeResponseCreated,
    RealtimeResponseDone,
    RealtimeSpeechStarted,
    RealtimeTextDelta,
)
from src.bridge.twilio_protocol import (
    TelephonyLink,
    TwilioConnectedEvent,
    TwilioMarkEvent,
    TwilioMediaEvent,
    TwilioStartEvent,
    TwilioStopEvent,
)

logger = structlog.get_logger(__name__)

CALL_SID_PARAMS = ("CallSid", "callSid")


class SessionState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass(frozen=True)
class LinkClosed:
    """Marker pushed by a pump when its link's event stream ends."""
    source: str
    error: Optional[str] = None


def extract_call_sid(query_params: Mapping[str, str]) -> str:
    """Read the call SID from the stream URL query (either casing)."""
    for name in CALL_SID_PARAMS:
        value = query_params.get(name)
        if value:
            return value
    return "unknown"


class CallSession:
    """
    Bridge state for one call.

    `run()` drives the call until teardown; `close()` is the single teardown
    path and may be called any number of times.
    """

    def __init__(
        self,
        call_sid: str,
        telephony: TelephonyLink,
        model: ModelLink,
        config: Config,
    ):
        self.call_sid = call_sid
        self.telephony = telephony
        self.model = model
        self.config = config
        self.state = SessionState.CONNECTING
        self.close_reason: Optional[str] = None

        self._events: asyncio.Queue[Any] = asyncio.Queue()
        self._pumps: list[asyncio.Task] = []
        self._opening: Optional[asyncio.Task] = None
        self._pending_ulaw = bytearray()
        self._pending_limit = int(TWILIO_SAMPLE_RATE * config.pre_start_buffer_ms / 1000)
        self._transcript: list[str] = []
        self._responses_done = 0
        self._active_response_id: Optional[str] = None
        self._speaking = False
        self._ignore_audio = False
        self._cancelled_responses: set[str] = set()
        self._log = logger.bind(call_sid=call_sid)

    @property
    def stream_sid(self) -> Optional[str]:
        return self.telephony.stream_sid

    @property
    def closed(self) -> bool:
        return self.state == SessionState.CLOSED

    async def run(self) -> None:
        """Dispatch events from both links until teardown, connecting upstream in the background."""
        self._log.info("Call session started")

        self._pumps = [asyncio.create_task(self._pump("telephony", self.telephony.events()))]
        self._opening = asyncio.create_task(self._open_model())

        try:
            while not self.closed:
                event = await self._events.get()
                if event is None:
                    break
                try:
                    await self._dispatch(event)
                except Exception as e:
                    self._log.error("Session event handling failed", event=type(event).__name__, error=str(e))
                    await self.close("handler_error")
        finally:
            await self.close("session_ended")
            tasks = [*self._pumps, self._opening]
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._log.info(
                "Call session ended",
                reason=self.close_reason,
                stream_sid=self.stream_sid,
                frames_sent=self.telephony.frames_sent,
                responses=self._responses_done,
            )

    async def _open_model(self) -> None:
        try:
            await self.model.open()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.error("OpenAI Realtime connect failed", error=str(e))
            await self.close("model_connect_failed")
            return

        if self.closed:
            return
        self.state = SessionState.ACTIVE
        self._pumps.append(asyncio.create_task(self._pump("model", self.model.events())))

    async def _pump(self, source: str, events: AsyncIterator[Any]) -> None:
        error: Optional[str] = None
        try:
            async for event in events:
                await self._events.put(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = str(e)
            if not self.closed:
                self._log.error("Link failed", source=source, error=error)
        await self._events.put(LinkClosed(source=source, error=error))

    async def _dispatch(self, event: Any) -> None:
        if self.closed:
            return

        if isinstance(event, RealtimeAudioDelta):
            await self._handle_audio_delta(event)
        elif isinstance(event, TwilioMediaEvent):
            await self._handle_caller_media(event)
        elif isinstance(event, TwilioStartEvent):
            await self._handle_start(event)
        elif isinstance(event, RealtimeTextDelta):
            self._transcript.append(event.text)
            self._log.debug("Assistant text delta", text=event.text)
        elif isinstance(event, RealtimeResponseCreated):
            self._start_response(event.response_id)
        elif isinstance(event, RealtimeResponseDone):
            await self._handle_response_done(event)
        elif isinstance(event, RealtimeSpeechStarted):
            await self._handle_barge_in()
        elif isinstance(event, RealtimeError):
            self._log.error("OpenAI Realtime error", message=event.message, details=event.details)
        elif isinstance(event, TwilioMarkEvent):
            self.telephony.handle_mark(event)
        elif isinstance(event, TwilioStopEvent):
            self.telephony.handle_stop(event)
            await self.close("telephony_stop")
        elif isinstance(event, TwilioConnectedEvent):
            self._log.debug("Twilio stream connected", protocol=event.protocol)
        elif isinstance(event, LinkClosed):
            if event.error:
                await self.close(f"{event.source}_error")
            else:
                await self.close(f"{event.source}_closed")

    async def _handle_start(self, event: TwilioStartEvent) -> None:
        if not self.telephony.handle_start(event):
            return
        self._log = self._log.bind(stream_sid=event.stream_sid)

        if self._pending_ulaw:
            pending = bytes(self._pending_ulaw)
            self._pending_ulaw.clear()
            self._log.info(
                "Flushing audio buffered before stream start",
                duration_ms=round(get_audio_duration_ms(pending), 1),
            )
            await self._send_ulaw(pending)

    async def _handle_caller_media(self, event: TwilioMediaEvent) -> None:
        if not self.config.forward_caller_audio or not event.payload:
            return
        await self.model.send_caller_audio(event.payload)

    async def _handle_audio_delta(self, event: RealtimeAudioDelta) -> None:
        if not self._accept_audio(event.response_id):
            return

        try:
            ulaw = pcm16_base64_to_ulaw(
                event.audio,
                source_rate=self.config.openai_realtime_sample_rate,
                target_rate=TWILIO_SAMPLE_RATE,
            )
        except (AudioDecodeError, ValueError) as e:
            self._log.warning("Dropping undecodable audio delta", error=str(e))
            return

        if not ulaw:
            return

        if not self.stream_sid:
            self._buffer_pre_start(ulaw)
            return

        await self._send_ulaw(ulaw)

    def _start_response(self, response_id: str) -> None:
        self._active_response_id = response_id or None
        self._speaking = True
        self._ignore_audio = False

    def _accept_audio(self, response_id: str) -> bool:
        if response_id:
            if response_id in self._cancelled_responses:
                return False
            if response_id != self._active_response_id:
                self._start_response(response_id)
            return True
        if self._ignore_audio:
            return False
        self._speaking = True
        return True

    async def _handle_barge_in(self) -> None:
        self._log.info("Caller speech started", speaking=self._speaking, response_id=self._active_response_id)
        await self.telephony.send_clear()
        if not self._speaking:
            return

        self._speaking = False
        self._ignore_audio = True
        self._pending_ulaw.clear()
        if self._active_response_id:
            self._cancelled_responses.add(self._active_response_id)
        await self.model.cancel_response(self._active_response_id or "")

    def _buffer_pre_start(self, ulaw: bytes) -> None:
        room = self._pending_limit - len(self._pending_ulaw)
        if room <= 0:
            self._log.warning("Dropping audio delta before stream start", size=len(ulaw))
            return
        if len(ulaw) > room:
            self._log.warning("Pre-start audio buffer full; truncating delta", dropped=len(ulaw) - room)
        self._pending_ulaw.extend(ulaw[:room])

    async def _send_ulaw(self, ulaw: bytes) -> None:
        for frame in chunk_audio(ulaw, TWILIO_FRAME_SIZE):
            if self.closed:
                return
            if not await self.telephony.send_audio(frame):
                return

    async def _handle_response_done(self, event: RealtimeResponseDone) -> None:
        self._responses_done += 1
        if not event.response_id or event.response_id == self._active_response_id:
            self._active_response_id = None
            self._speaking = False
        transcript = "".join(self._transcript)
        self._transcript.clear()
        self._log.info(
            "Assistant response completed",
            response_id=event.response_id or None,
            transcript=transcript[:200] or None,
        )
        await self.telephony.send_mark(f"response_{self._responses_done}")

    async def close(self, reason: str = "closed") -> None:
        """Tear down both links. Only the first call has any effect."""
        if self.closed:
            return
        self.state = SessionState.CLOSED
        self.close_reason = reason
        self._log.info("Closing call session", reason=reason)

        # Wake the dispatch loop if it is waiting on the queue.
        self._events.put_nowait(None)
        if self._opening and not self._opening.done() and self._opening is not asyncio.current_task():
            self._opening.cancel()

        await self.model.close()
        await self.telephony.close()
