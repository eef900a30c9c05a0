"""
Speech-to-text client.

The pipeline hands over a drained utterance as raw mu-law bytes; the Whisper
adapter wraps them in an in-memory WAV and uploads it, so concurrent calls
never share files on disk.
"""

from abc import ABC, abstractmethod
import time
from typing import Any, Optional

import openai
import structlog
from openai import AsyncOpenAI

from src.callturn.audio import get_audio_duration_ms, ulaw_to_wav
from src.callturn.config import get_config
from src.callturn.errors import TranscriptionError

logger = structlog.get_logger(__name__)


class TranscriptionClient(ABC):
    @abstractmethod
    async def transcribe(self, audio: bytes) -> str:
        """Transcribe 8kHz mu-law audio. Raises TranscriptionError."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


class WhisperTranscriber(TranscriptionClient):
    """OpenAI audio transcription (Whisper) client."""

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or get_config()
        self.model = self.config.openai_stt_model
        self._client = client or AsyncOpenAI(
            api_key=self.config.openai_api_key,
            timeout=self.config.stt_timeout_seconds,
            max_retries=self.config.openai_max_retries,
        )

    async def transcribe(self, audio: bytes) -> str:
        if not audio:
            return ""

        wav_bytes = ulaw_to_wav(audio)
        kwargs: dict[str, Any] = {}
        if self.config.stt_language:
            kwargs["language"] = self.config.stt_language

        start_time = time.time()
        try:
            result = await self._client.audio.transcriptions.create(
                model=self.model,
                file=("utterance.wav", wav_bytes, "audio/wav"),
                **kwargs,
            )
        except openai.OpenAIError as e:
            raise TranscriptionError(f"Transcription request failed: {e}") from e

        text = getattr(result, "text", None)
        if text is None and isinstance(result, str):
            text = result

        logger.debug(
            "Transcription received",
            model=self.model,
            audio_ms=round(get_audio_duration_ms(audio), 1),
            latency_ms=round((time.time() - start_time) * 1000, 2),
            chars=len(text or ""),
        )
        return (text or "").strip()

    async def close(self) -> None:
        await self._client.close()
