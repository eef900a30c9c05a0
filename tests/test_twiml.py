"""
Tests for the HTTP and WebSocket endpoints.
"""

import json
import os
import xml.etree.ElementTree as ET
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from twilio.base.exceptions import TwilioRestException

from src.callturn.audio import create_silence_ulaw
from src.callturn.config import get_config
from src.callturn.registry import SessionRegistry
from src.callturn.session import TurnServices
from tests.helpers import (
    FakeCompleter,
    FakeSynthesizer,
    FakeTranscriber,
    make_media_payload,
    make_tone_ulaw,
)


@pytest.fixture
def client():
    from server.app import app
    return TestClient(app, raise_server_exceptions=False)


class TestTwimlGeneration:
    """Tests for TwiML endpoint."""

    @pytest.mark.parametrize("method,path", [
        ("post", "/twiml"),
        ("get", "/twiml"),
        ("post", "/voice-stream"),
        ("get", "/voice-stream"),
    ])
    def test_twiml_contains_stream_element(self, client, method, path):
        """Test that TwiML connects the call to our WebSocket."""
        response = getattr(client, method)(path)

        assert response.status_code == 200
        assert "application/xml" in response.headers.get("content-type", "")

        root = ET.fromstring(response.text)
        assert root.tag == "Response"
        stream = root.find("./Connect/Stream")
        assert stream is not None
        assert stream.get("url") == "wss://test.ngrok.io/ws"
        assert root.find("Say") is None

    def test_twiml_uses_correct_host(self, client):
        """Test that TwiML uses PUBLIC_HOST from config."""
        with patch.dict(os.environ, {"PUBLIC_HOST": "my-custom-domain.example.com"}):
            get_config.cache_clear()
            response = client.post("/twiml")

        assert "wss://my-custom-domain.example.com/ws" in response.text

    def test_twiml_greeting(self, client):
        """Test that a configured greeting is spoken before the stream opens."""
        with patch.dict(os.environ, {"GREETING_TEXT": "Please hold while I connect you."}):
            get_config.cache_clear()
            response = client.post("/twiml")

        root = ET.fromstring(response.text)
        assert [child.tag for child in root] == ["Say", "Connect"]
        assert root.find("Say").text == "Please hold while I connect you."

    def test_twiml_objective_parameter(self, client):
        """Test that an objective query parameter becomes a stream parameter."""
        response = client.post("/voice-stream", params={"objective": "Book a cleaning"})

        parameter = ET.fromstring(response.text).find("./Connect/Stream/Parameter")
        assert parameter is not None
        assert parameter.get("name") == "objective"
        assert parameter.get("value") == "Book a cleaning"


class TestStartCall:
    """Tests for the outbound call trigger."""

    def test_start_call_places_call(self, client):
        """Test that Twilio is asked to call the target and fetch our TwiML."""
        twilio = MagicMock()
        twilio.calls.create.return_value = MagicMock(sid="CA999")

        with patch("server.app.TwilioClient", return_value=twilio) as client_cls:
            response = client.post(
                "/start-call",
                json={"target_number": "+15551234567", "objective": "Book a cleaning"},
            )

        assert response.status_code == 200
        assert response.json()["call_sid"] == "CA999"
        client_cls.assert_called_once_with("ACtest123456789", "test_auth_token")
        kwargs = twilio.calls.create.call_args.kwargs
        assert kwargs["to"] == "+15551234567"
        assert kwargs["from_"] == "+15550000000"
        assert kwargs["url"] == "https://test.ngrok.io/voice-stream?objective=Book+a+cleaning"

    def test_start_call_requires_number(self, client):
        """Test that a missing target number is rejected."""
        with patch("server.app.TwilioClient") as client_cls:
            response = client.post("/start-call", json={"objective": "x"})

        assert response.status_code == 400
        client_cls.assert_not_called()

    def test_start_call_rejects_non_json(self, client):
        """Test that a non-JSON body is rejected."""
        response = client.post("/start-call", content=b"target=+1555", headers={"content-type": "text/plain"})

        assert response.status_code == 400

    def test_start_call_twilio_failure(self, client):
        """Test that a Twilio rejection maps to a 502."""
        twilio = MagicMock()
        twilio.calls.create.side_effect = TwilioRestException(400, "/Calls", msg="Invalid 'To' number")

        with patch("server.app.TwilioClient", return_value=twilio):
            response = client.post("/start-call", json={"target_number": "+1"})

        assert response.status_code == 502
        assert "Invalid 'To' number" in response.json()["error"]


class TestHealthEndpoint:
    """Tests for health endpoint."""

    def test_health_returns_ok(self, client):
        """Test health endpoint returns healthy status."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data
        assert data["active_calls"] == 0


class TestMetricsEndpoint:
    """Tests for metrics endpoint."""

    def test_metrics_returns_json(self, client):
        """Test metrics endpoint returns JSON."""
        response = client.get("/metrics")

        assert response.status_code == 200
        data = response.json()
        for key in (
            "uptime_seconds",
            "total_connections",
            "active_connections",
            "total_calls",
            "active_calls",
            "outbound_calls",
            "errors",
        ):
            assert key in data


class TestMediaStreamWebSocket:
    """Tests for the Twilio Media Streams WebSocket."""

    def test_call_round_trip(self, client):
        """Test that caller speech on the socket comes back as framed reply audio."""
        registry = SessionRegistry(services=TurnServices(
            transcriber=FakeTranscriber(["Hello, dental office."]),
            completer=FakeCompleter("Hi, I'd like to book a checkup."),
            synthesizer=FakeSynthesizer(b"\x7f" * 320),
        ))
        audio = make_tone_ulaw(600) + create_silence_ulaw(800)

        with patch("server.app.get_registry", return_value=registry):
            with client.websocket_connect("/ws") as ws:
                ws.send_text(json.dumps({"event": "connected", "protocol": "Call"}))
                ws.send_text(json.dumps({
                    "event": "start",
                    "streamSid": "MZWS",
                    "start": {"callSid": "CAWS", "accountSid": "AC1", "tracks": ["inbound"], "customParameters": {}},
                }))
                for i in range(0, len(audio), 160):
                    ws.send_text(json.dumps({
                        "event": "media",
                        "streamSid": "MZWS",
                        "media": {"track": "inbound", "chunk": i // 160, "timestamp": "0",
                                  "payload": make_media_payload(audio[i:i + 160])},
                    }))

                outbound = [ws.receive_json() for _ in range(3)]

                assert [m["event"] for m in outbound] == ["media", "media", "mark"]
                assert all(m["streamSid"] == "MZWS" for m in outbound)

                session = registry.get("MZWS")
                assert [t.content for t in session.memory.appended_turns] == [
                    "Hello, dental office.",
                    "Hi, I'd like to book a checkup.",
                ]

                ws.send_text(json.dumps({"event": "stop", "streamSid": "MZWS"}))

        assert registry.active_count == 0
        assert session.is_closed
