"""
Test doubles and audio helpers shared across test modules.
"""

import asyncio
import base64
import json
from typing import List, Optional, Sequence

import numpy as np

from src.callturn.audio import linear16_to_ulaw
from src.callturn.llm import CompletionClient
from src.callturn.memory import ConversationTurn
from src.callturn.stt import TranscriptionClient
from src.callturn.tts import SynthesisClient


def make_tone_ulaw(duration_ms: int, amplitude: int = 8000, frequency: float = 440.0) -> bytes:
    """Generate a sine tone as 8kHz mu-law (loud enough to count as speech)."""
    num_samples = int(8000 * duration_ms / 1000)
    t = np.arange(num_samples) / 8000
    samples = (amplitude * np.sin(2 * np.pi * frequency * t)).astype(np.int16)
    return linear16_to_ulaw(samples.tobytes())


def make_media_payload(audio: bytes) -> str:
    return base64.b64encode(audio).decode()


class FakeTranscriber(TranscriptionClient):
    """Returns scripted transcripts in order, or raises a scripted error."""

    def __init__(self, transcripts: Sequence[str] = ("hello",), error: Optional[Exception] = None, delay: float = 0.0):
        self.transcripts = list(transcripts)
        self.error = error
        self.delay = delay
        self.calls: List[bytes] = []
        self.closed = False

    async def transcribe(self, audio: bytes) -> str:
        self.calls.append(audio)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if len(self.transcripts) > 1:
            return self.transcripts.pop(0)
        return self.transcripts[0] if self.transcripts else ""

    async def close(self) -> None:
        self.closed = True


class FakeCompleter(CompletionClient):
    """Returns a scripted reply and records the turns it was given."""

    def __init__(self, reply: str = "Sure, how can I help?", error: Optional[Exception] = None, delay: float = 0.0):
        self.reply = reply
        self.error = error
        self.delay = delay
        self.calls: List[List[ConversationTurn]] = []
        self.closed = False

    async def complete(self, turns: Sequence[ConversationTurn]) -> str:
        self.calls.append(list(turns))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply

    async def close(self) -> None:
        self.closed = True


class FakeSynthesizer(SynthesisClient):
    """Returns fixed mu-law audio for any text."""

    def __init__(self, audio: bytes = b"\x7f" * 400, error: Optional[Exception] = None, delay: float = 0.0):
        self.audio = audio
        self.error = error
        self.delay = delay
        self.calls: List[str] = []
        self.closed = False

    async def synthesize(self, text: str) -> bytes:
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.audio

    async def close(self) -> None:
        self.closed = True


class MessageSink:
    """Collects outbound WebSocket messages for one call."""

    def __init__(self, fail: bool = False):
        self.messages: List[str] = []
        self.closed = False
        self.fail = fail

    async def send(self, message: str) -> None:
        if self.fail:
            raise ConnectionError("socket gone")
        self.messages.append(message)

    async def close(self) -> None:
        self.closed = True

    @property
    def events(self) -> List[dict]:
        return [json.loads(m) for m in self.messages]

    @property
    def media_events(self) -> List[dict]:
        return [e for e in self.events if e["event"] == "media"]

    @property
    def mark_events(self) -> List[dict]:
        return [e for e in self.events if e["event"] == "mark"]
