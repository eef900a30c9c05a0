"""Turn Pipeline Orchestration.

Runs one conversational turn for a call:
drained utterance -> STT -> user turn -> LLM -> assistant turn -> TTS ->
mu-law frames -> Twilio outbound

Every turn walks an explicit state machine:

    IDLE -> LISTENING -> TRANSCRIBING -> COMPLETING -> SYNTHESIZING -> SPEAKING -> IDLE

Any stage may fail, time out, or be cancelled by call teardown; the turn then
passes through ABORTED and returns to IDLE. Memory keeps what earlier stages
committed. No error audio is played; the caller hears silence until the next
utterance is processed.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, TypeVar
import time

import structlog

from src.callturn.accumulator import UtteranceAccumulator
from src.callturn.config import get_config, Config
from src.callturn.errors import (
    ChannelClosedError,
    CompletionError,
    CompletionTimeoutError,
    RemoteServiceError,
    SynthesisError,
    SynthesisTimeoutError,
    TranscriptionTimeoutError,
    TurnInProgressError,
)
from src.callturn.llm import CompletionClient
from src.callturn.memory import ConversationMemory
from src.callturn.stt import TranscriptionClient
from src.callturn.tts import SynthesisClient
from src.callturn.twilio_protocol import create_mark_message, encode_media_frames

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class TurnState(str, Enum):
    """Current state of the turn pipeline."""
    IDLE = "idle"
    LISTENING = "listening"
    TRANSCRIBING = "transcribing"
    COMPLETING = "completing"
    SYNTHESIZING = "synthesizing"
    SPEAKING = "speaking"
    ABORTED = "aborted"


class TurnOutcome(str, Enum):
    """How a turn ended."""
    COMPLETED = "completed"
    SKIPPED = "skipped"  # no speech, or transcript below threshold
    ABORTED = "aborted"


@dataclass
class TurnResult:
    """What one turn produced."""
    turn_id: int
    outcome: TurnOutcome = TurnOutcome.SKIPPED
    transcript: str = ""
    reply: str = ""
    audio_bytes: int = 0
    frames_sent: int = 0
    failed_state: Optional[TurnState] = None
    error: Optional[str] = None


@dataclass
class TurnMetrics:
    """Metrics for a single conversation turn."""
    turn_id: int = 0
    start_time: float = 0.0
    utterance_ms: float = 0.0
    stt_ms: float = 0.0
    llm_ms: float = 0.0
    tts_ms: float = 0.0
    speak_ms: float = 0.0
    total_turn_ms: float = 0.0

    def finalize(self) -> None:
        """Calculate total turn time."""
        if self.start_time > 0:
            self.total_turn_ms = (time.time() - self.start_time) * 1000


@dataclass
class CallMetrics:
    """Metrics for an entire call."""
    call_sid: str = ""
    stream_sid: str = ""
    start_time: float = field(default_factory=time.time)
    end_time: float = 0.0
    turns: List[TurnMetrics] = field(default_factory=list)
    completed_turns: int = 0
    skipped_turns: int = 0
    aborted_turns: int = 0
    dropped_frames: int = 0
    inbound_bytes: int = 0
    outbound_frames: int = 0

    @property
    def duration_seconds(self) -> float:
        end = self.end_time if self.end_time > 0 else time.time()
        return end - self.start_time

    def record(self, result: TurnResult) -> None:
        if result.outcome == TurnOutcome.COMPLETED:
            self.completed_turns += 1
        elif result.outcome == TurnOutcome.ABORTED:
            self.aborted_turns += 1
        else:
            self.skipped_turns += 1
        self.outbound_frames += result.frames_sent

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_sid": self.call_sid,
            "stream_sid": self.stream_sid,
            "duration_seconds": round(self.duration_seconds, 2),
            "total_turns": len(self.turns),
            "completed_turns": self.completed_turns,
            "skipped_turns": self.skipped_turns,
            "aborted_turns": self.aborted_turns,
            "dropped_frames": self.dropped_frames,
            "inbound_bytes": self.inbound_bytes,
            "outbound_frames": self.outbound_frames,
            "avg_turn_ms": round(
                sum(t.total_turn_ms for t in self.turns) / len(self.turns), 2
            ) if self.turns else 0,
        }


class TurnPipeline:
    """
    Turn state machine for one call.

    Operates on the session's memory and accumulator by reference. At most one
    turn runs at a time; `run_turn` refuses to start unless the pipeline is IDLE.
    """

    def __init__(
        self,
        stream_sid: str,
        memory: ConversationMemory,
        accumulator: UtteranceAccumulator,
        transcriber: TranscriptionClient,
        completer: CompletionClient,
        synthesizer: SynthesisClient,
        send_message: Callable[[str], Awaitable[None]],
        config: Optional[Config] = None,
        is_open: Optional[Callable[[], bool]] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            stream_sid: Twilio stream the outbound frames belong to
            memory: Conversation memory owned by the session
            accumulator: Utterance accumulator owned by the session
            transcriber: Speech-to-text client
            completer: Completion client
            synthesizer: Text-to-speech client
            send_message: Async function to send WebSocket messages to Twilio
            config: Optional configuration (uses default if not provided)
            is_open: Returns False once the call channel is torn down
        """
        if config is None:
            config = get_config()

        self.config = config
        self.stream_sid = stream_sid
        self._memory = memory
        self._accumulator = accumulator
        self._transcriber = transcriber
        self._completer = completer
        self._synthesizer = synthesizer
        self._send_message = send_message
        self._is_open = is_open or (lambda: True)

        self._state = TurnState.IDLE
        self._current_turn = 0
        self._current_turn_metrics: Optional[TurnMetrics] = None
        self._call_metrics = CallMetrics(stream_sid=stream_sid)

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def is_idle(self) -> bool:
        return self._state == TurnState.IDLE

    @property
    def metrics(self) -> CallMetrics:
        return self._call_metrics

    @property
    def turn_count(self) -> int:
        return self._current_turn

    async def run_turn(self) -> TurnResult:
        """
        Run one turn from the accumulator's buffered audio back to IDLE.

        Remote failures, timeouts and a closed channel end the turn as ABORTED;
        they are reported in the result, not raised. Cancellation is re-raised
        after the pipeline has returned to IDLE.

        Raises:
            TurnInProgressError: If another turn is still running
        """
        if self._state != TurnState.IDLE:
            raise TurnInProgressError(
                f"Turn {self._current_turn} still in state {self._state.value}"
            )

        self._start_turn()
        result = TurnResult(turn_id=self._current_turn)

        try:
            await self._run_stages(result)
        except (RemoteServiceError, ChannelClosedError) as e:
            self._abort(result, e)
        except asyncio.CancelledError:
            self._abort(result, ChannelClosedError("Turn cancelled by call teardown"))
            raise
        except Exception as e:
            logger.error(
                "Turn failed unexpectedly",
                stream_sid=self.stream_sid,
                turn_id=result.turn_id,
                error=str(e),
                exc_info=True,
            )
            self._abort(result, e)
        finally:
            self._call_metrics.record(result)
            self._end_turn(result)
            self._set_state(TurnState.IDLE)

        return result

    async def _run_stages(self, result: TurnResult) -> None:
        metrics = self._current_turn_metrics

        self._set_state(TurnState.LISTENING)
        utterance = self._accumulator.drain()
        if metrics:
            metrics.utterance_ms = utterance.duration_ms
        if utterance.is_empty or not utterance.has_speech:
            logger.debug(
                "No speech in utterance, skipping turn",
                stream_sid=self.stream_sid,
                turn_id=result.turn_id,
                reason=utterance.reason,
                duration_ms=round(utterance.duration_ms, 1),
            )
            return

        self._set_state(TurnState.TRANSCRIBING)
        stage_start = time.time()
        transcript = await self._await_stage(
            self._transcriber.transcribe(utterance.audio),
            self.config.stt_timeout_seconds,
            TranscriptionTimeoutError,
            "transcription",
        )
        if metrics:
            metrics.stt_ms = (time.time() - stage_start) * 1000
        transcript = (transcript or "").strip()
        if len(transcript) < self.config.min_transcript_chars:
            logger.debug(
                "Transcript below threshold, skipping turn",
                stream_sid=self.stream_sid,
                turn_id=result.turn_id,
                chars=len(transcript),
            )
            return
        result.transcript = transcript
        logger.info(
            "Caller utterance transcribed",
            stream_sid=self.stream_sid,
            turn_id=result.turn_id,
            chars=len(transcript),
            utterance_ms=round(utterance.duration_ms, 1),
        )
        logger.debug("Caller transcript", stream_sid=self.stream_sid, text=transcript)

        self._set_state(TurnState.COMPLETING)
        self._memory.append_user(transcript)
        stage_start = time.time()
        reply = await self._await_stage(
            self._completer.complete(self._memory.turns),
            self.config.llm_timeout_seconds,
            CompletionTimeoutError,
            "completion",
        )
        if metrics:
            metrics.llm_ms = (time.time() - stage_start) * 1000
        reply = (reply or "").strip()
        if not reply:
            raise CompletionError("Completion returned empty text")
        result.reply = reply
        logger.debug("Agent reply", stream_sid=self.stream_sid, text=reply)

        self._set_state(TurnState.SYNTHESIZING)
        self._memory.append_assistant(reply)
        stage_start = time.time()
        audio = await self._await_stage(
            self._synthesizer.synthesize(reply),
            self.config.tts_timeout_seconds,
            SynthesisTimeoutError,
            "synthesis",
        )
        if metrics:
            metrics.tts_ms = (time.time() - stage_start) * 1000
        if not audio:
            raise SynthesisError("Synthesis returned no audio")
        result.audio_bytes = len(audio)

        self._set_state(TurnState.SPEAKING)
        stage_start = time.time()
        await self._speak(audio, result)
        if metrics:
            metrics.speak_ms = (time.time() - stage_start) * 1000

        result.outcome = TurnOutcome.COMPLETED

    async def _await_stage(
        self,
        call: Awaitable[T],
        timeout: float,
        timeout_error: Type[RemoteServiceError],
        stage: str,
    ) -> T:
        """Await a remote call within its time budget."""
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise timeout_error(f"{stage} timed out after {timeout}s") from e

    async def _speak(self, audio: bytes, result: TurnResult) -> None:
        """Send synthesized audio as 20ms media frames, then a mark."""
        frames = encode_media_frames(self.stream_sid, audio)
        for frame in frames:
            if not self._is_open():
                raise ChannelClosedError(
                    f"Channel closed after {result.frames_sent}/{len(frames)} frames"
                )
            await self._send_message(frame)
            result.frames_sent += 1

        if self._is_open():
            await self._send_message(create_mark_message(self.stream_sid, f"turn_{result.turn_id}"))

        logger.info(
            "Reply audio sent",
            stream_sid=self.stream_sid,
            turn_id=result.turn_id,
            frames=result.frames_sent,
            audio_bytes=len(audio),
        )

    def _abort(self, result: TurnResult, error: Exception) -> None:
        failed_state = self._state
        self._set_state(TurnState.ABORTED)
        result.outcome = TurnOutcome.ABORTED
        result.failed_state = failed_state
        result.error = str(error)
        logger.warning(
            "Turn aborted",
            stream_sid=self.stream_sid,
            turn_id=result.turn_id,
            failed_state=failed_state.value,
            error_type=type(error).__name__,
            error=str(error),
        )

    def _set_state(self, state: TurnState) -> None:
        if state == self._state:
            return
        logger.debug(
            "Turn state change",
            stream_sid=self.stream_sid,
            turn_id=self._current_turn,
            from_state=self._state.value,
            to_state=state.value,
        )
        self._state = state

    def _start_turn(self) -> None:
        """Start a new conversation turn."""
        self._current_turn += 1
        self._current_turn_metrics = TurnMetrics(
            turn_id=self._current_turn,
            start_time=time.time(),
        )

    def _end_turn(self, result: TurnResult) -> None:
        """End the current conversation turn."""
        if self._current_turn_metrics:
            self._current_turn_metrics.finalize()
            self._call_metrics.turns.append(self._current_turn_metrics)

            logger.info(
                "Turn finished",
                stream_sid=self.stream_sid,
                turn_id=self._current_turn_metrics.turn_id,
                outcome=result.outcome.value,
                utterance_ms=round(self._current_turn_metrics.utterance_ms, 2),
                stt_ms=round(self._current_turn_metrics.stt_ms, 2),
                llm_ms=round(self._current_turn_metrics.llm_ms, 2),
                tts_ms=round(self._current_turn_metrics.tts_ms, 2),
                speak_ms=round(self._current_turn_metrics.speak_ms, 2),
                total_turn_ms=round(self._current_turn_metrics.total_turn_ms, 2),
            )

            self._current_turn_metrics = None
