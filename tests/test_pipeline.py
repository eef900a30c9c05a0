"""
Tests for the turn pipeline state machine.
"""

import asyncio
import base64
import dataclasses

import pytest

from src.callturn.accumulator import FixedDurationBoundaryPolicy, UtteranceAccumulator
from src.callturn.audio import create_silence_ulaw
from src.callturn.config import get_config
from src.callturn.errors import (
    CompletionError,
    SynthesisError,
    TranscriptionError,
    TurnInProgressError,
)
from src.callturn.memory import ConversationMemory, Role
from src.callturn.pipeline import TurnOutcome, TurnPipeline, TurnState
from tests.helpers import (
    FakeCompleter,
    FakeSynthesizer,
    FakeTranscriber,
    MessageSink,
    make_tone_ulaw,
)


def build_pipeline(
    transcriber=None,
    completer=None,
    synthesizer=None,
    sink=None,
    config=None,
    is_open=None,
):
    memory = ConversationMemory("You are an agent.", "Book a checkup.")
    accumulator = UtteranceAccumulator(FixedDurationBoundaryPolicy(window_ms=500))
    sink = sink or MessageSink()
    pipeline = TurnPipeline(
        "MZ123",
        memory,
        accumulator,
        transcriber or FakeTranscriber(["I'd like a Tuesday."]),
        completer or FakeCompleter("Tuesday at 10 works."),
        synthesizer or FakeSynthesizer(b"\x7f" * 400),
        sink.send,
        config=config or get_config(),
        is_open=is_open,
    )
    return pipeline, memory, accumulator, sink


def short_timeouts(**overrides):
    values = dict(stt_timeout_seconds=0.05, llm_timeout_seconds=0.05, tts_timeout_seconds=0.05)
    values.update(overrides)
    return dataclasses.replace(get_config(), **values)


class TestHappyPath:
    """Tests for a complete turn."""

    @pytest.mark.asyncio
    async def test_turn_completes_and_speaks(self):
        """Test that a full turn updates memory and sends framed audio then a mark."""
        pipeline, memory, accumulator, sink = build_pipeline()
        utterance_audio = make_tone_ulaw(500)
        accumulator.append(utterance_audio)

        result = await pipeline.run_turn()

        assert result.outcome == TurnOutcome.COMPLETED
        assert result.transcript == "I'd like a Tuesday."
        assert result.reply == "Tuesday at 10 works."
        assert pipeline.state == TurnState.IDLE
        assert accumulator.is_empty

        assert [(t.role, t.content) for t in memory.appended_turns] == [
            (Role.USER, "I'd like a Tuesday."),
            (Role.ASSISTANT, "Tuesday at 10 works."),
        ]

        # 400 bytes -> 3 frames of 160 (last padded), then the mark
        assert len(sink.media_events) == 3
        assert result.frames_sent == 3
        assert sink.events[-1]["event"] == "mark"
        assert sink.events[-1]["mark"]["name"] == "turn_1"
        assert all(e["streamSid"] == "MZ123" for e in sink.events)
        payloads = [base64.b64decode(e["media"]["payload"]) for e in sink.media_events]
        assert b"".join(payloads)[:400] == b"\x7f" * 400

    @pytest.mark.asyncio
    async def test_transcriber_receives_drained_audio(self):
        """Test that exactly the buffered audio is transcribed."""
        transcriber = FakeTranscriber(["hello there"])
        pipeline, _, accumulator, _ = build_pipeline(transcriber=transcriber)
        audio = make_tone_ulaw(500)
        accumulator.append(audio)

        await pipeline.run_turn()

        assert transcriber.calls == [audio]

    @pytest.mark.asyncio
    async def test_completer_sees_full_memory(self):
        """Test that the completion request carries the whole conversation so far."""
        completer = FakeCompleter("ok")
        pipeline, _, accumulator, _ = build_pipeline(
            transcriber=FakeTranscriber(["first", "second"]), completer=completer
        )

        accumulator.append(make_tone_ulaw(500))
        await pipeline.run_turn()
        accumulator.append(make_tone_ulaw(500))
        await pipeline.run_turn()

        second_request = completer.calls[1]
        assert [t.content for t in second_request] == [
            "You are an agent.", "Book a checkup.", "first", "ok", "second",
        ]
        assert pipeline.metrics.completed_turns == 2
        assert pipeline.turn_count == 2


class TestSkippedTurns:
    """Tests for turns that end without a reply."""

    @pytest.mark.asyncio
    async def test_empty_buffer_is_skipped(self):
        """Test that a turn on an empty buffer makes no remote calls."""
        transcriber = FakeTranscriber()
        pipeline, memory, _, sink = build_pipeline(transcriber=transcriber)

        result = await pipeline.run_turn()

        assert result.outcome == TurnOutcome.SKIPPED
        assert transcriber.calls == []
        assert sink.messages == []
        assert memory.appended_turns == []

    @pytest.mark.asyncio
    async def test_silence_only_is_skipped(self):
        """Test that audio without speech never reaches transcription."""
        transcriber = FakeTranscriber()
        memory = ConversationMemory("sys")
        accumulator = UtteranceAccumulator()
        sink = MessageSink()
        pipeline = TurnPipeline(
            "MZ123", memory, accumulator, transcriber, FakeCompleter(), FakeSynthesizer(), sink.send,
            config=get_config(),
        )
        accumulator.append(create_silence_ulaw(1000))

        result = await pipeline.run_turn()

        assert result.outcome == TurnOutcome.SKIPPED
        assert transcriber.calls == []
        assert accumulator.is_empty

    @pytest.mark.asyncio
    async def test_empty_transcript_is_skipped(self):
        """Test that an empty transcript leaves memory untouched and sends nothing."""
        completer = FakeCompleter()
        pipeline, memory, accumulator, sink = build_pipeline(
            transcriber=FakeTranscriber([""]), completer=completer
        )
        accumulator.append(make_tone_ulaw(500))

        result = await pipeline.run_turn()

        assert result.outcome == TurnOutcome.SKIPPED
        assert completer.calls == []
        assert memory.appended_turns == []
        assert sink.messages == []
        assert pipeline.metrics.skipped_turns == 1

    @pytest.mark.asyncio
    async def test_transcript_below_threshold_is_skipped(self):
        """Test that a one-character transcript is treated as noise."""
        pipeline, memory, accumulator, _ = build_pipeline(transcriber=FakeTranscriber(["a"]))
        accumulator.append(make_tone_ulaw(500))

        result = await pipeline.run_turn()

        assert result.outcome == TurnOutcome.SKIPPED
        assert memory.appended_turns == []


class TestAbortedTurns:
    """Tests for failures at each stage."""

    @pytest.mark.asyncio
    async def test_transcription_failure(self):
        """Test that an STT error aborts the turn before memory is touched."""
        pipeline, memory, accumulator, sink = build_pipeline(
            transcriber=FakeTranscriber(error=TranscriptionError("boom"))
        )
        accumulator.append(make_tone_ulaw(500))

        result = await pipeline.run_turn()

        assert result.outcome == TurnOutcome.ABORTED
        assert result.failed_state == TurnState.TRANSCRIBING
        assert memory.appended_turns == []
        assert sink.messages == []
        assert pipeline.state == TurnState.IDLE

    @pytest.mark.asyncio
    async def test_completion_failure_keeps_user_turn(self):
        """Test that a completion error keeps the caller's turn and sends no audio."""
        pipeline, memory, accumulator, sink = build_pipeline(
            completer=FakeCompleter(error=CompletionError("rate limited"))
        )
        accumulator.append(make_tone_ulaw(500))

        result = await pipeline.run_turn()

        assert result.outcome == TurnOutcome.ABORTED
        assert result.failed_state == TurnState.COMPLETING
        assert [(t.role, t.content) for t in memory.appended_turns] == [
            (Role.USER, "I'd like a Tuesday.")
        ]
        assert sink.messages == []

    @pytest.mark.asyncio
    async def test_empty_completion_aborts(self):
        """Test that an empty reply is treated as a completion failure."""
        pipeline, memory, accumulator, _ = build_pipeline(completer=FakeCompleter("   "))
        accumulator.append(make_tone_ulaw(500))

        result = await pipeline.run_turn()

        assert result.outcome == TurnOutcome.ABORTED
        assert result.failed_state == TurnState.COMPLETING
        assert memory.last_role == Role.USER

    @pytest.mark.asyncio
    async def test_synthesis_failure_keeps_both_turns(self):
        """Test that a TTS error keeps the reply in memory but sends nothing."""
        pipeline, memory, accumulator, sink = build_pipeline(
            synthesizer=FakeSynthesizer(error=SynthesisError("tts down"))
        )
        accumulator.append(make_tone_ulaw(500))

        result = await pipeline.run_turn()

        assert result.outcome == TurnOutcome.ABORTED
        assert result.failed_state == TurnState.SYNTHESIZING
        assert [t.role for t in memory.appended_turns] == [Role.USER, Role.ASSISTANT]
        assert sink.messages == []

    @pytest.mark.asyncio
    async def test_empty_synthesis_aborts(self):
        """Test that zero bytes of synthesized audio abort the turn."""
        pipeline, _, accumulator, sink = build_pipeline(synthesizer=FakeSynthesizer(b""))
        accumulator.append(make_tone_ulaw(500))

        result = await pipeline.run_turn()

        assert result.outcome == TurnOutcome.ABORTED
        assert result.failed_state == TurnState.SYNTHESIZING
        assert sink.messages == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("stage,failed_state", [
        ("stt", TurnState.TRANSCRIBING),
        ("llm", TurnState.COMPLETING),
        ("tts", TurnState.SYNTHESIZING),
    ])
    async def test_stage_timeout(self, stage, failed_state):
        """Test that a remote call exceeding its budget aborts the turn."""
        kwargs = {
            "stt": {"transcriber": FakeTranscriber(["hello"], delay=1.0)},
            "llm": {"completer": FakeCompleter("hi", delay=1.0)},
            "tts": {"synthesizer": FakeSynthesizer(delay=1.0)},
        }[stage]
        pipeline, _, accumulator, sink = build_pipeline(config=short_timeouts(), **kwargs)
        accumulator.append(make_tone_ulaw(500))

        result = await pipeline.run_turn()

        assert result.outcome == TurnOutcome.ABORTED
        assert result.failed_state == failed_state
        assert "timed out" in result.error
        assert sink.messages == []
        assert pipeline.state == TurnState.IDLE

    @pytest.mark.asyncio
    async def test_channel_closed_mid_speech(self):
        """Test that no frame is sent once the channel reports closed."""
        open_flag = {"open": True}
        sink = MessageSink()

        async def send_then_close(message: str) -> None:
            await sink.send(message)
            open_flag["open"] = False

        pipeline, _, accumulator, _ = build_pipeline(
            sink=sink, is_open=lambda: open_flag["open"]
        )
        pipeline._send_message = send_then_close
        accumulator.append(make_tone_ulaw(500))

        result = await pipeline.run_turn()

        assert result.outcome == TurnOutcome.ABORTED
        assert result.failed_state == TurnState.SPEAKING
        assert result.frames_sent == 1
        assert len(sink.messages) == 1

    @pytest.mark.asyncio
    async def test_cancellation_returns_to_idle(self):
        """Test that cancelling a running turn re-raises and leaves the pipeline IDLE."""
        pipeline, memory, accumulator, sink = build_pipeline(
            completer=FakeCompleter("hi", delay=5.0)
        )
        accumulator.append(make_tone_ulaw(500))

        task = asyncio.create_task(pipeline.run_turn())
        await asyncio.sleep(0.05)
        assert pipeline.state == TurnState.COMPLETING
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert pipeline.state == TurnState.IDLE
        assert pipeline.metrics.aborted_turns == 1
        assert sink.messages == []
        assert memory.last_role == Role.USER


class TestTurnExclusivity:
    """Tests for one-turn-at-a-time."""

    @pytest.mark.asyncio
    async def test_second_turn_rejected_while_running(self):
        """Test that starting a turn while one is in flight raises."""
        pipeline, _, accumulator, _ = build_pipeline(completer=FakeCompleter("hi", delay=0.2))
        accumulator.append(make_tone_ulaw(500))

        task = asyncio.create_task(pipeline.run_turn())
        await asyncio.sleep(0.05)

        with pytest.raises(TurnInProgressError):
            await pipeline.run_turn()

        result = await task
        assert result.outcome == TurnOutcome.COMPLETED
        assert pipeline.is_idle
