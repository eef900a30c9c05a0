"""
Utterance accumulation and turn-boundary detection.

Inbound Twilio frames arrive every ~20ms whether or not the caller is talking.
The accumulator buffers them for the in-progress turn and asks a pluggable
boundary policy whether the buffered audio forms a complete utterance:

- SilenceBoundaryPolicy: enough speech followed by enough trailing silence,
  or a hard maximum duration (guards against a stuck or noisy stream)
- FixedDurationBoundaryPolicy: fixed-size windows regardless of content
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, List, Optional

import structlog

from src.callturn.audio import ULAW_BYTES_PER_MS, ulaw_rms

logger = structlog.get_logger(__name__)

REASON_SILENCE = "silence"
REASON_MAX_DURATION = "max_duration"
REASON_DURATION = "duration"
REASON_EMPTY = "empty"
REASON_PARTIAL = "partial"


@dataclass
class BufferStats:
    """Running statistics for the buffered audio of one turn."""
    total_ms: float = 0.0
    speech_ms: float = 0.0
    trailing_silence_ms: float = 0.0
    chunks: int = 0

    def observe(self, duration_ms: float, is_speech: bool) -> None:
        self.total_ms += duration_ms
        self.chunks += 1
        if is_speech:
            self.speech_ms += duration_ms
            self.trailing_silence_ms = 0.0
        else:
            self.trailing_silence_ms += duration_ms


@dataclass(frozen=True)
class Utterance:
    """Audio drained from the accumulator for one turn."""
    audio: bytes
    duration_ms: float = 0.0
    speech_ms: float = 0.0
    reason: str = REASON_EMPTY

    @property
    def is_empty(self) -> bool:
        return not self.audio

    @property
    def has_speech(self) -> bool:
        return self.speech_ms > 0

    @classmethod
    def empty(cls) -> "Utterance":
        return cls(audio=b"")


class BoundaryPolicy(ABC):
    """Decides when buffered audio constitutes a complete utterance."""

    # Milliseconds of pre-speech audio to keep; None keeps everything.
    pre_roll_ms: Optional[int] = None

    @abstractmethod
    def is_speech(self, chunk: bytes) -> bool:
        raise NotImplementedError

    @abstractmethod
    def boundary_reason(self, stats: BufferStats) -> Optional[str]:
        """Return why the buffer is ready, or None if the turn is still open."""
        raise NotImplementedError


class SilenceBoundaryPolicy(BoundaryPolicy):
    """
    Energy-based end-of-utterance detection.

    A chunk is speech when the RMS of its linear PCM reaches `speech_rms_threshold`.
    Silence ahead of the first speech chunk is trimmed to `pre_roll_ms`, so the
    `max_utterance_ms` bound runs from speech onset.
    """

    def __init__(
        self,
        min_utterance_ms: int = 400,
        trailing_silence_ms: int = 700,
        max_utterance_ms: int = 15000,
        speech_rms_threshold: int = 500,
        pre_roll_ms: int = 200,
    ):
        self.min_utterance_ms = min_utterance_ms
        self.trailing_silence_ms = trailing_silence_ms
        self.max_utterance_ms = max_utterance_ms
        self.speech_rms_threshold = speech_rms_threshold
        self.pre_roll_ms = pre_roll_ms

    @classmethod
    def from_config(cls, config: Any) -> "SilenceBoundaryPolicy":
        return cls(
            min_utterance_ms=config.min_utterance_ms,
            trailing_silence_ms=config.trailing_silence_ms,
            max_utterance_ms=config.max_utterance_ms,
            speech_rms_threshold=config.speech_rms_threshold,
            pre_roll_ms=config.pre_roll_ms,
        )

    def is_speech(self, chunk: bytes) -> bool:
        return ulaw_rms(chunk) >= self.speech_rms_threshold

    def boundary_reason(self, stats: BufferStats) -> Optional[str]:
        if (
            stats.speech_ms >= self.min_utterance_ms
            and stats.trailing_silence_ms >= self.trailing_silence_ms
        ):
            return REASON_SILENCE
        if stats.total_ms >= self.max_utterance_ms:
            return REASON_MAX_DURATION
        return None


class FixedDurationBoundaryPolicy(BoundaryPolicy):
    """Emit an utterance every `window_ms` of audio, treating all audio as speech."""

    def __init__(self, window_ms: int = 3000):
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        self.window_ms = window_ms

    def is_speech(self, chunk: bytes) -> bool:
        return True

    def boundary_reason(self, stats: BufferStats) -> Optional[str]:
        if stats.total_ms >= self.window_ms:
            return REASON_DURATION
        return None


class UtteranceAccumulator:
    """
    Per-call buffer of inbound mu-law audio for the in-progress turn.

    Not thread-safe; owned by a single session on the event loop.
    """

    def __init__(self, policy: Optional[BoundaryPolicy] = None):
        self.policy = policy or SilenceBoundaryPolicy()
        self._chunks: List[bytes] = []
        self._stats = BufferStats()
        self._ready_reason: Optional[str] = None

    @property
    def buffered_audio(self) -> List[bytes]:
        return list(self._chunks)

    @property
    def stats(self) -> BufferStats:
        return self._stats

    @property
    def is_ready(self) -> bool:
        return self._ready_reason is not None

    @property
    def ready_reason(self) -> Optional[str]:
        return self._ready_reason

    @property
    def is_empty(self) -> bool:
        return not self._chunks

    def append(self, chunk: bytes) -> bool:
        """
        Buffer one chunk of mu-law audio.

        Zero-length chunks are ignored. Once ready, the buffer keeps growing
        until drained.

        Returns:
            Whether the buffered audio is ready to be drained
        """
        if not chunk:
            return self.is_ready

        self._chunks.append(bytes(chunk))
        self._stats.observe(len(chunk) / ULAW_BYTES_PER_MS, self.policy.is_speech(chunk))
        if self._stats.speech_ms == 0:
            self._trim_pre_roll()

        if self._ready_reason is None:
            self._ready_reason = self.policy.boundary_reason(self._stats)
            if self._ready_reason is not None:
                logger.debug(
                    "Utterance boundary reached",
                    reason=self._ready_reason,
                    total_ms=round(self._stats.total_ms, 1),
                    speech_ms=round(self._stats.speech_ms, 1),
                )

        return self.is_ready

    def _trim_pre_roll(self) -> None:
        """Drop the oldest pre-speech chunks beyond the policy's pre-roll, keeping the newest."""
        limit = self.policy.pre_roll_ms
        if limit is None:
            return
        while len(self._chunks) > 1 and self._stats.total_ms > limit:
            dropped_ms = len(self._chunks.pop(0)) / ULAW_BYTES_PER_MS
            self._stats.total_ms -= dropped_ms
            self._stats.trailing_silence_ms -= dropped_ms
            self._stats.chunks -= 1

    def drain(self) -> Utterance:
        """
        Return the buffered audio and reset to empty.

        Draining an empty buffer returns an empty utterance rather than failing.
        """
        if not self._chunks:
            self.clear()
            return Utterance.empty()

        utterance = Utterance(
            audio=b"".join(self._chunks),
            duration_ms=self._stats.total_ms,
            speech_ms=self._stats.speech_ms,
            reason=self._ready_reason or REASON_PARTIAL,
        )
        self.clear()
        return utterance

    def clear(self) -> None:
        """Discard all buffered audio."""
        self._chunks = []
        self._stats = BufferStats()
        self._ready_reason = None
