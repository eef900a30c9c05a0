"""
Per-WebSocket dispatcher for Twilio Media Streams events.

Parses each inbound message and routes it to the session registry. Registry
errors (duplicate start, media for an unknown call) are reported here and
never affect other calls. A connection carries one call at a time.
"""

from typing import Awaitable, Callable, Optional

import structlog

from src.callturn.errors import DuplicateSessionError, StreamAlreadyStartedError, UnknownSessionError
from src.callturn.registry import SessionRegistry
from src.callturn.twilio_protocol import (
    TwilioDTMFEvent,
    TwilioEventType,
    TwilioMarkEvent,
    TwilioMediaEvent,
    TwilioStartEvent,
    TwilioStopEvent,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)

OBJECTIVE_PARAMETER = "objective"


class MediaStreamConnection:
    """Handles the messages of one Twilio Media Streams WebSocket."""

    def __init__(
        self,
        registry: SessionRegistry,
        send_message: Callable[[str], Awaitable[None]],
        close_channel: Optional[Callable[[], Awaitable[None]]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
    ):
        self._registry = registry
        self._send_message = send_message
        self._close_channel = close_channel
        self._on_error = on_error
        self._stream_sid: Optional[str] = None
        self._unknown_media_frames = 0

    @property
    def stream_sid(self) -> Optional[str]:
        return self._stream_sid

    async def handle_message(self, raw_message: str) -> None:
        """
        Handle an incoming WebSocket message from Twilio.

        Args:
            raw_message: Raw JSON message string
        """
        try:
            event_type, event = parse_twilio_message(raw_message)
        except ValueError as e:
            logger.warning("Failed to parse Twilio message", error=str(e))
            return

        if event_type == TwilioEventType.CONNECTED:
            logger.debug("Twilio connected")

        elif event_type == TwilioEventType.START:
            self._handle_start(event)

        elif event_type == TwilioEventType.MEDIA:
            self._handle_media(event)

        elif event_type == TwilioEventType.MARK:
            self._handle_mark(event)

        elif event_type == TwilioEventType.DTMF:
            self._handle_dtmf(event)

        elif event_type == TwilioEventType.STOP:
            await self._handle_stop(event)

    def _handle_start(self, event: TwilioStartEvent) -> None:
        if self._stream_sid is not None and self._stream_sid != event.stream_sid:
            error = StreamAlreadyStartedError(event.stream_sid, self._stream_sid)
            logger.warning(
                "Start event for a second call on one connection",
                stream_sid=event.stream_sid,
                active_stream_sid=self._stream_sid,
            )
            self._report(error)
            return

        objective = event.custom_parameters.get(OBJECTIVE_PARAMETER) or None
        try:
            self._registry.on_start(
                event.stream_sid,
                send_message=self._send_message,
                close_channel=self._close_channel,
                call_sid=event.call_sid,
                objective=objective,
            )
        except DuplicateSessionError as e:
            logger.warning("Duplicate start event", stream_sid=event.stream_sid, error=str(e))
            self._report(e)
            return
        self._stream_sid = event.stream_sid

    def _handle_media(self, event: TwilioMediaEvent) -> None:
        try:
            self._registry.on_media(event.stream_sid, event.payload)
        except UnknownSessionError as e:
            self._unknown_media_frames += 1
            # Twilio sends 50 frames a second; only log the first of a burst.
            if self._unknown_media_frames == 1:
                logger.warning("Media for unknown call", stream_sid=event.stream_sid, error=str(e))
            self._report(e)

    def _handle_mark(self, event: TwilioMarkEvent) -> None:
        logger.debug("Twilio mark ack", stream_sid=event.stream_sid, mark_name=event.name)

    def _handle_dtmf(self, event: TwilioDTMFEvent) -> None:
        logger.info("DTMF received", stream_sid=event.stream_sid, digit=event.digit)

    async def _handle_stop(self, event: TwilioStopEvent) -> None:
        logger.info("Stream stopped", stream_sid=event.stream_sid, call_sid=event.call_sid)
        await self._registry.on_stop(event.stream_sid)
        if event.stream_sid == self._stream_sid:
            self._stream_sid = None

    def _report(self, error: Exception) -> None:
        if self._on_error is not None:
            self._on_error(error)

    async def close(self) -> None:
        """Tear down this connection's call, if it is still active (WebSocket closed)."""
        if self._stream_sid is not None:
            await self._registry.on_stop(self._stream_sid)
