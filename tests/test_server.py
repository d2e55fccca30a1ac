"""
Tests for the FastAPI server: HTTP endpoints and the /ws media stream.
"""

import asyncio
import base64
import json
import os
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from src.bridge.audio import encode_ulaw_sample
from src.bridge.realtime_protocol import RealtimeAudioDelta


class FakeModelLink:
    """ModelLink stand-in that emits one audio delta and waits to be closed."""

    instances: list["FakeModelLink"] = []

    def __init__(self, config, *, call_sid="unknown", connect=None):
        self.config = config
        self.call_sid = call_sid
        self.closed = False
        self.caller_audio: list[bytes] = []
        self._done = None
        FakeModelLink.instances.append(self)

    async def open(self):
        self._done = asyncio.Event()

    async def events(self):
        samples = bytes()
        for sample in (1000, -1000, 500):
            samples += sample.to_bytes(2, "little", signed=True)
        yield RealtimeAudioDelta(audio=base64.b64encode(samples).decode())
        await self._done.wait()

    async def send_caller_audio(self, ulaw_bytes):
        self.caller_audio.append(ulaw_bytes)
        return True

    async def cancel_response(self, response_id=""):
        return True

    async def close(self):
        if self.closed:
            return
        self.closed = True
        if self._done:
            self._done.set()


class FailingModelLink(FakeModelLink):
    async def open(self):
        raise OSError("401 Unauthorized")


@pytest.fixture(autouse=True)
def reset_fakes():
    FakeModelLink.instances = []
    yield


def test_health():
    from server.app import app

    client = TestClient(app)
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_metrics():
    from server.app import app

    client = TestClient(app)
    response = client.get("/metrics")

    assert response.status_code == 200
    assert {"total_calls", "active_calls", "upstream_failures", "errors"} <= set(response.json())


def test_starts_without_api_key():
    from src.bridge.config import get_config
    from server.app import app

    with patch.dict(os.environ, {"OPENAI_API_KEY": ""}):
        get_config.cache_clear()
        with TestClient(app) as client:
            assert client.get("/health").status_code == 200


def test_media_stream_end_to_end(twilio_start_message, twilio_media_message, twilio_stop_message):
    from server.app import app

    with patch("server.app.ModelLink", FakeModelLink):
        with TestClient(app) as client:
            with client.websocket_connect("/ws?CallSid=CA123") as ws:
                ws.send_text(json.dumps(twilio_start_message))
                message = ws.receive_json()

                assert message["event"] == "media"
                assert message["streamSid"] == "MZ1"
                assert base64.b64decode(message["media"]["payload"]) == bytes([encode_ulaw_sample(1000)])

                ws.send_text(json.dumps(twilio_media_message))
                ws.send_text("not json")
                ws.send_text(json.dumps(twilio_stop_message))

                assert ws.receive()["type"] == "websocket.close"

    link = FakeModelLink.instances[0]
    assert link.call_sid == "CA123"
    assert link.closed is True
    assert link.caller_audio == [b"\xff" * 160]


def test_call_sid_lowercase_param(twilio_stop_message):
    from server.app import app

    with patch("server.app.ModelLink", FakeModelLink):
        with TestClient(app) as client:
            with client.websocket_connect("/ws?callSid=CA456") as ws:
                ws.send_text(json.dumps(twilio_stop_message))
                assert ws.receive()["type"] == "websocket.close"

    assert FakeModelLink.instances[0].call_sid == "CA456"


def test_upstream_failure_closes_media_stream():
    from server.app import app, metrics

    failures_before = metrics.upstream_failures

    with patch("server.app.ModelLink", FailingModelLink):
        with TestClient(app) as client:
            with client.websocket_connect("/ws?CallSid=CA789") as ws:
                assert ws.receive()["type"] == "websocket.close"

    assert metrics.upstream_failures == failures_before + 1
