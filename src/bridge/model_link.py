"""
Upstream OpenAI Realtime socket for one call.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional
from urllib.parse import quote

import structlog
import websockets
from websockets.exceptions import ConnectionClosed

from src.bridge.config import Config
from src.bridge.realtime_protocol import (
    RealtimeEvent,
    build_audio_append,
    build_greeting_request,
    build_output_audio_clear,
    build_response_cancel,
    build_session_update,
    encode_message,
    parse_realtime_event,
)

logger = structlog.get_logger(__name__)

Connector = Callable[..., Awaitable[Any]]


def build_realtime_url(config: Config) -> str:
    return f"{config.openai_realtime_url}?model={quote(config.openai_realtime_model, safe='')}"


def build_realtime_headers(config: Config) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {config.openai_api_key}",
        "OpenAI-Beta": "realtime=v1",
    }


class ModelLink:
    """
    One OpenAI Realtime connection.

    `open()` connects and negotiates the session (session.update, then the
    greeting response.create). `events()` yields classified inbound events.
    """

    def __init__(
        self,
        config: Config,
        *,
        call_sid: str = "unknown",
        connect: Connector = websockets.connect,
    ):
        self.config = config
        self.call_sid = call_sid
        self._connect = connect
        self._ws: Optional[Any] = None
        self._closed = False
        self._send_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> None:
        """
        Connect and send the session configuration and greeting request.

        Raises:
            Exception: Whatever the websocket client raises on a failed handshake
        """
        if self._ws is not None or self._closed:
            return

        ws = await self._connect(
            build_realtime_url(self.config),
            additional_headers=build_realtime_headers(self.config),
            open_timeout=self.config.openai_realtime_open_timeout,
        )
        if self._closed:
            await ws.close()
            return
        self._ws = ws
        logger.info(
            "OpenAI Realtime connected",
            call_sid=self.call_sid,
            model=self.config.openai_realtime_model,
            voice=self.config.openai_realtime_voice,
            turn_silence_ms=self.config.openai_realtime_turn_silence_ms,
        )

        await self.send_event(build_session_update(self.config))
        await self.send_event(build_greeting_request(self.config))

    async def send_event(self, message: Dict[str, Any]) -> bool:
        """
        Send one client event.

        Returns:
            False if the link is closed or the send failed
        """
        ws = self._ws
        if ws is None or self._closed:
            return False
        try:
            async with self._send_lock:
                await ws.send(encode_message(message))
            return True
        except ConnectionClosed as e:
            logger.warning("OpenAI socket closed during send", call_sid=self.call_sid, type=message.get("type"), error=str(e))
            return False

    async def send_caller_audio(self, ulaw_bytes: bytes) -> bool:
        """Forward caller mu-law audio upstream."""
        if not ulaw_bytes:
            return False
        return await self.send_event(build_audio_append(ulaw_bytes))

    async def cancel_response(self, response_id: str = "") -> bool:
        """Stop the response being spoken and drop its unplayed audio upstream."""
        cancelled = await self.send_event(build_response_cancel(response_id))
        await self.send_event(build_output_audio_clear())
        return cancelled

    async def events(self) -> AsyncIterator[RealtimeEvent]:
        """
        Yield classified events until the socket closes.

        Non-JSON frames are skipped.
        """
        ws = self._ws
        if ws is None:
            return

        try:
            async for raw in ws:
                try:
                    event = parse_realtime_event(raw)
                except ValueError as e:
                    logger.warning("Ignoring OpenAI message", call_sid=self.call_sid, error=str(e))
                    continue
                yield event
        except ConnectionClosed as e:
            if not self._closed:
                logger.warning("OpenAI socket closed", call_sid=self.call_sid, error=str(e))

    async def close(self) -> None:
        """Close the socket. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        ws = self._ws
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as e:
            logger.debug("OpenAI socket close failed", call_sid=self.call_sid, error=str(e))
        logger.info("OpenAI Realtime closed", call_sid=self.call_sid)
