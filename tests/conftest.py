"""
Pytest configuration and fixtures.
"""

import json
import os
from unittest.mock import patch

import pytest

from src.callturn.session import TurnServices
from tests.helpers import (
    FakeCompleter,
    FakeSynthesizer,
    FakeTranscriber,
    make_media_payload,
    make_tone_ulaw,
)


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "TWILIO_ACCOUNT_SID": "ACtest123456789",
        "TWILIO_AUTH_TOKEN": "test_auth_token",
        "TWILIO_NUMBER": "+15550000000",
        "OPENAI_API_KEY": "test_openai_key",
        "LLM_PROVIDER": "openai",
        "OPENAI_MODEL": "gpt-4o",
        "GREETING_TEXT": "",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config and registry caches
        from src.callturn.config import get_config
        from src.callturn.registry import get_registry
        get_config.cache_clear()
        get_registry.cache_clear()
        yield
        get_config.cache_clear()
        get_registry.cache_clear()


@pytest.fixture
def tone_audio():
    """500ms of speech-level tone."""
    return make_tone_ulaw(500)


@pytest.fixture
def fake_services():
    return TurnServices(
        transcriber=FakeTranscriber(),
        completer=FakeCompleter(),
        synthesizer=FakeSynthesizer(),
    )


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    return json.dumps({
        "event": "start",
        "streamSid": "MZ123456",
        "start": {
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {},
        }
    })


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    """Sample Twilio media message."""
    return json.dumps({
        "event": "media",
        "streamSid": "MZ123456",
        "media": {
            "track": "inbound",
            "chunk": 1,
            "timestamp": "12345",
            "payload": make_media_payload(sample_ulaw_audio),
        }
    })


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
    })
