"""
Call session management.

A CallSession owns one call's conversation memory, utterance accumulator and
turn pipeline. It is created when the stream starts and torn down when it stops.
"""

import asyncio
from dataclasses import dataclass
import time
from typing import Awaitable, Callable, Optional

import structlog

from src.callturn.accumulator import BoundaryPolicy, SilenceBoundaryPolicy, UtteranceAccumulator
from src.callturn.config import get_config, Config
from src.callturn.errors import ChannelClosedError, MalformedFrameError
from src.callturn.llm import CompletionClient
from src.callturn.memory import ConversationMemory
from src.callturn.pipeline import CallMetrics, TurnPipeline, TurnResult, TurnState
from src.callturn.stt import TranscriptionClient
from src.callturn.tts import SynthesisClient
from src.callturn.twilio_protocol import decode_media_payload

logger = structlog.get_logger(__name__)


@dataclass
class TurnServices:
    """Remote-service clients shared by all sessions in the process."""
    transcriber: TranscriptionClient
    completer: CompletionClient
    synthesizer: SynthesisClient

    async def close(self) -> None:
        for client in (self.transcriber, self.completer, self.synthesizer):
            try:
                await client.close()
            except Exception as e:
                logger.warning("Error closing service client", client=type(client).__name__, error=str(e))


class CallSession:
    """Manages state for a single phone call."""

    def __init__(
        self,
        call_id: str,
        *,
        send_message: Callable[[str], Awaitable[None]],
        services: TurnServices,
        config: Optional[Config] = None,
        call_sid: str = "",
        objective: Optional[str] = None,
        policy: Optional[BoundaryPolicy] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self.call_id = call_id
        self.call_sid = call_sid
        self._send_message = send_message
        self._closed = False
        self._turn_task: Optional[asyncio.Task] = None
        self.last_result: Optional[TurnResult] = None

        self.memory = ConversationMemory(
            system_prompt=config.agent_persona,
            seed_user_message=objective or config.call_objective,
        )
        self.accumulator = UtteranceAccumulator(policy or SilenceBoundaryPolicy.from_config(config))
        self.pipeline = TurnPipeline(
            call_id,
            self.memory,
            self.accumulator,
            services.transcriber,
            services.completer,
            services.synthesizer,
            self._send,
            config=config,
            is_open=lambda: not self._closed,
        )
        self.pipeline.metrics.call_sid = call_sid

    @property
    def state(self) -> TurnState:
        return self.pipeline.state

    @property
    def metrics(self) -> CallMetrics:
        return self.pipeline.metrics

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def has_active_turn(self) -> bool:
        return self._turn_task is not None and not self._turn_task.done()

    def on_media(self, payload: str) -> None:
        """
        Decode one inbound media payload and buffer it.

        Malformed frames are logged and dropped; the call carries on.
        """
        if self._closed:
            return

        try:
            audio = decode_media_payload(payload)
        except MalformedFrameError as e:
            self.metrics.dropped_frames += 1
            logger.warning(
                "Dropping malformed media frame",
                stream_sid=self.call_id,
                dropped_frames=self.metrics.dropped_frames,
                error=str(e),
            )
            return

        self.metrics.inbound_bytes += len(audio)
        if self.accumulator.append(audio):
            self._maybe_start_turn()

    def _maybe_start_turn(self) -> None:
        """Start a turn if audio is ready and no turn is in flight."""
        if self._closed or not self.accumulator.is_ready:
            return
        if self.has_active_turn:
            # Keep buffering; the running turn re-checks when it returns to IDLE.
            return
        self._turn_task = asyncio.create_task(self._run_turn())

    async def _run_turn(self) -> None:
        try:
            self.last_result = await self.pipeline.run_turn()
        finally:
            if self._turn_task is asyncio.current_task():
                self._turn_task = None

        self._maybe_start_turn()

    async def _send(self, message: str) -> None:
        if self._closed:
            raise ChannelClosedError(f"Session {self.call_id} is closed")
        await self._send_message(message)

    async def wait_idle(self) -> None:
        """Wait until no turn is running (including turns chained after it)."""
        while self._turn_task is not None and not self._turn_task.done():
            await asyncio.gather(self._turn_task, return_exceptions=True)

    async def close(self) -> None:
        """
        Tear down the session.

        Cancels any in-flight turn and discards buffered audio. Nothing is sent
        on the channel after this starts.
        """
        if self._closed:
            return
        self._closed = True

        task = self._turn_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._turn_task = None

        self.accumulator.clear()
        self.metrics.end_time = time.time()
        logger.info(
            "Session closed",
            stream_sid=self.call_id,
            call_sid=self.call_sid,
            memory_turns=len(self.memory),
            metrics=self.metrics.to_dict(),
        )
