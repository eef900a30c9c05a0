"""
Twilio Media Streams WebSocket protocol and audio frame codec.

Twilio sends JSON messages with events:
- connected: Initial connection
- start: Stream started, contains streamSid and callSid
- media: Audio data as base64 mu-law 8kHz
- mark: Playback marker acknowledgment
- dtmf: DTMF tone detected
- stop: Stream stopped

Outbound messages:
- media: Send audio as base64 mu-law 8kHz
- mark: Request playback acknowledgment
"""

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List

import msgspec
import structlog

from src.callturn.audio import chunk_audio, TWILIO_FRAME_SIZE
from src.callturn.errors import MalformedFrameError

logger = structlog.get_logger(__name__)

# Create global msgspec encoder/decoder
decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    DTMF = "dtmf"
    STOP = "stop"


@dataclass
class TwilioStartEvent:
    """Parsed Twilio start event."""
    stream_sid: str
    call_sid: str
    account_sid: str
    tracks: List[str]
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        """Parse from Twilio message."""
        start = message.get("start") or {}
        return cls(
            stream_sid=message.get("streamSid") or start.get("streamSid", ""),
            call_sid=start.get("callSid", ""),
            account_sid=start.get("accountSid", ""),
            tracks=start.get("tracks", []),
            custom_parameters=start.get("customParameters") or {},
        )


@dataclass
class TwilioMediaEvent:
    """
    Parsed Twilio media event.

    The payload stays base64 here; decoding happens in the owning session so a
    corrupt frame is dropped by the call it belongs to.
    """
    stream_sid: str
    track: str
    chunk: int
    timestamp: str
    payload: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        """Parse from Twilio message."""
        media = message.get("media") or {}
        try:
            chunk = int(media.get("chunk", 0))
        except (TypeError, ValueError):
            chunk = 0
        return cls(
            stream_sid=message.get("streamSid", ""),
            track=media.get("track", "inbound"),
            chunk=chunk,
            timestamp=str(media.get("timestamp", "")),
            payload=media.get("payload") or "",
        )


@dataclass
class TwilioMarkEvent:
    """Parsed Twilio mark event."""
    stream_sid: str
    name: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMarkEvent":
        """Parse from Twilio message."""
        mark = message.get("mark") or {}
        return cls(
            stream_sid=message.get("streamSid", ""),
            name=mark.get("name", ""),
        )


@dataclass
class TwilioDTMFEvent:
    """Parsed Twilio DTMF event."""
    stream_sid: str
    digit: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioDTMFEvent":
        """Parse from Twilio message."""
        dtmf = message.get("dtmf") or {}
        return cls(
            stream_sid=message.get("streamSid", ""),
            digit=dtmf.get("digit", ""),
        )


@dataclass
class TwilioStopEvent:
    """Parsed Twilio stop event."""
    stream_sid: str
    call_sid: str = ""

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStopEvent":
        """Parse from Twilio message."""
        stop = message.get("stop") or {}
        return cls(
            stream_sid=message.get("streamSid", ""),
            call_sid=stop.get("callSid", ""),
        )


def parse_twilio_message(raw_message: str | bytes) -> tuple[TwilioEventType, Any]:
    """
    Parse a raw Twilio WebSocket message.

    Args:
        raw_message: Raw JSON string from Twilio

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ValueError: If message cannot be parsed
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        logger.error("Failed to parse Twilio message", error=str(e))
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Invalid message: expected a JSON object")

    event_type_str = message.get("event", "")

    try:
        event_type = TwilioEventType(event_type_str)
    except ValueError:
        logger.warning("Unknown Twilio event type", event_type=event_type_str)
        raise ValueError(f"Unknown event type: {event_type_str}")

    if event_type == TwilioEventType.START:
        return event_type, TwilioStartEvent.from_message(message)
    elif event_type == TwilioEventType.MEDIA:
        return event_type, TwilioMediaEvent.from_message(message)
    elif event_type == TwilioEventType.MARK:
        return event_type, TwilioMarkEvent.from_message(message)
    elif event_type == TwilioEventType.DTMF:
        return event_type, TwilioDTMFEvent.from_message(message)
    elif event_type == TwilioEventType.STOP:
        return event_type, TwilioStopEvent.from_message(message)
    else:
        return event_type, message


def decode_media_payload(payload: str) -> bytes:
    """
    Decode a base64 media payload to raw mu-law bytes.

    An empty payload decodes to b"" (nothing to process yet, not an error).

    Raises:
        MalformedFrameError: If the payload is not valid base64
    """
    if not payload:
        return b""
    if not isinstance(payload, str):
        raise MalformedFrameError(f"Media payload must be a string, got {type(payload).__name__}")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedFrameError(f"Invalid base64 media payload: {e}") from e


def encode_media_payload(audio_payload: bytes) -> str:
    """Encode raw audio bytes as a base64 media payload."""
    return base64.b64encode(audio_payload).decode("utf-8")


def create_media_message(
    stream_sid: str,
    audio_payload: bytes,
) -> str:
    """
    Create a Twilio media message.

    Args:
        stream_sid: The stream SID
        audio_payload: Raw mu-law audio bytes (should be 160 bytes for 20ms)

    Returns:
        JSON string to send to Twilio
    """
    message = {
        "event": "media",
        "streamSid": stream_sid,
        "media": {
            "payload": encode_media_payload(audio_payload)
        }
    }

    return encoder.encode(message).decode("utf-8")


def encode_media_frames(
    stream_sid: str,
    audio_bytes: bytes,
    frame_size: int = TWILIO_FRAME_SIZE,
) -> List[str]:
    """
    Split mu-law audio into 20ms frames and wrap each in a media message.

    Every frame is base64-encoded on its own, so no encoding unit straddles two
    frames and each payload decodes independently at the far end.

    Args:
        stream_sid: The stream SID
        audio_bytes: Raw mu-law audio bytes
        frame_size: Bytes per frame (160 = 20ms at 8kHz)

    Returns:
        List of JSON messages to send, in playback order
    """
    if not audio_bytes:
        return []
    return [create_media_message(stream_sid, chunk) for chunk in chunk_audio(audio_bytes, frame_size)]


def create_mark_message(stream_sid: str, name: str) -> str:
    """
    Create a Twilio mark message.

    Marks are used to get acknowledgment when audio has been played.
    """
    message = {
        "event": "mark",
        "streamSid": stream_sid,
        "mark": {
            "name": name
        }
    }

    return encoder.encode(message).decode("utf-8")

