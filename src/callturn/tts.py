"""
Text-to-speech client.

OpenAI TTS is asked for raw 24kHz 16-bit PCM, which is resampled to 8kHz and
encoded as mu-law so it can be framed straight onto the Twilio stream.
"""

from abc import ABC, abstractmethod
import time
from typing import Any, Optional

import openai
import structlog
from openai import AsyncOpenAI

from src.callturn.audio import TTS_PCM_SAMPLE_RATE, get_audio_duration_ms, pcm16_to_twilio_ulaw
from src.callturn.config import get_config
from src.callturn.errors import SynthesisError

logger = structlog.get_logger(__name__)


class SynthesisClient(ABC):
    @abstractmethod
    async def synthesize(self, text: str) -> bytes:
        """Synthesize `text` to 8kHz mu-law audio. Raises SynthesisError."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


class OpenAITTS(SynthesisClient):
    """OpenAI Text-to-Speech provider (non-streaming)."""

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or get_config()
        self._client = client or AsyncOpenAI(
            api_key=self.config.openai_api_key,
            timeout=self.config.tts_timeout_seconds,
            max_retries=self.config.openai_max_retries,
        )

    async def _generate_pcm(self, text: str) -> bytes:
        resp = await self._client.audio.speech.create(
            model=self.config.openai_tts_model,
            voice=self.config.openai_tts_voice,
            input=text,
            response_format="pcm",
        )
        # SDKs have varied over time; handle several shapes.
        data = getattr(resp, "content", None)
        if isinstance(data, (bytes, bytearray)):
            return bytes(data)
        aread = getattr(resp, "aread", None)
        if callable(aread):
            return await aread()
        if isinstance(resp, (bytes, bytearray)):
            return bytes(resp)
        raise SynthesisError(f"Unexpected speech response type: {type(resp).__name__}")

    async def synthesize(self, text: str) -> bytes:
        if not text or not text.strip():
            return b""

        start_time = time.time()
        try:
            pcm = await self._generate_pcm(text)
        except openai.OpenAIError as e:
            raise SynthesisError(f"Speech synthesis request failed: {e}") from e

        ulaw = pcm16_to_twilio_ulaw(pcm, TTS_PCM_SAMPLE_RATE)
        logger.debug(
            "Speech synthesized",
            model=self.config.openai_tts_model,
            voice=self.config.openai_tts_voice,
            audio_ms=round(get_audio_duration_ms(ulaw), 1),
            latency_ms=round((time.time() - start_time) * 1000, 2),
        )
        return ulaw

    async def close(self) -> None:
        await self._client.close()
