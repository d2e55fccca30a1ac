"""
Pytest configuration and fixtures.
"""

import asyncio
import base64
import json
import os
from unittest.mock import patch

import numpy as np
import pytest


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PORT": "3000",
        "LOG_LEVEL": "DEBUG",
        "OPENAI_API_KEY": "test_openai_key",
        "OPENAI_REALTIME_MODEL": "gpt-4o-realtime-preview",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.bridge.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def config():
    from src.bridge.config import get_config
    return get_config()


def pcm16_b64(samples) -> str:
    """Base64 PCM16 little-endian payload for the given samples."""
    return base64.b64encode(np.asarray(samples, dtype="<i2").tobytes()).decode()


class FakeTwilioSocket:
    """Stand-in for a Starlette WebSocket driven from a test."""

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[str] = []
        self.close_calls = 0
        self.fail_sends = False

    def feed(self, message) -> None:
        self.incoming.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def disconnect(self) -> None:
        self.incoming.put_nowait(None)

    async def iter_text(self):
        while True:
            message = await self.incoming.get()
            if message is None:
                return
            if isinstance(message, Exception):
                raise message
            yield message

    async def send_text(self, message: str) -> None:
        if self.close_calls:
            raise RuntimeError("Cannot call send once a close message has been sent.")
        if self.fail_sends:
            raise ConnectionError("socket gone")
        self.sent.append(message)

    async def close(self) -> None:
        self.close_calls += 1
        if self.close_calls > 1:
            raise RuntimeError("Unexpected ASGI message 'websocket.close'")
        self.incoming.put_nowait(None)

    @property
    def sent_json(self) -> list[dict]:
        return [json.loads(m) for m in self.sent]


class FakeRealtimeSocket:
    """Stand-in for a `websockets` client connection."""

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[str] = []
        self.close_calls = 0

    def feed(self, message) -> None:
        self.incoming.put_nowait(message if isinstance(message, (str, bytes)) else json.dumps(message))

    def end(self) -> None:
        self.incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self.incoming.get()
        if message is None:
            raise StopAsyncIteration
        if isinstance(message, Exception):
            raise message
        return message

    async def send(self, message: str) -> None:
        self.sent.append(message)

    async def close(self) -> None:
        self.close_calls += 1
        self.incoming.put_nowait(None)

    @property
    def sent_json(self) -> list[dict]:
        return [json.loads(m) for m in self.sent]


@pytest.fixture
def twilio_socket():
    return FakeTwilioSocket()


@pytest.fixture
def realtime_socket():
    return FakeRealtimeSocket()


@pytest.fixture
def connector(realtime_socket):
    """Connector recording its arguments and returning the fake socket."""
    calls = []

    async def _connect(url, **kwargs):
        calls.append((url, kwargs))
        return realtime_socket

    _connect.calls = calls
    return _connect


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    return {
        "event": "start",
        "sequenceNumber": "1",
        "streamSid": "MZ1",
        "start": {
            "streamSid": "MZ1",
            "callSid": "CA123",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {},
        },
    }


@pytest.fixture
def twilio_media_message():
    """Sample Twilio media message (20ms of mu-law silence)."""
    return {
        "event": "media",
        "streamSid": "MZ1",
        "media": {
            "track": "inbound",
            "chunk": "1",
            "timestamp": "5",
            "payload": base64.b64encode(b"\xff" * 160).decode(),
        },
    }


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    return {
        "event": "stop",
        "streamSid": "MZ1",
        "stop": {"accountSid": "AC345678", "callSid": "CA123"},
    }


@pytest.fixture
def pcm16_payload():
    """Factory building base64 PCM16 payloads."""
    return pcm16_b64
