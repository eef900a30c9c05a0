"""
Audio conversion utilities for the call turn agent.

Twilio Media Streams carry mu-law 8kHz mono audio, one byte per sample:
- Inbound frames are buffered as-is and wrapped in an in-memory WAV for Whisper
- Synthesized speech arrives as 24kHz PCM and is converted to mu-law 8kHz
- Frame energy (RMS over linear PCM) drives utterance boundary detection
"""

import audioop
import io
import wave
from typing import Generator

TWILIO_SAMPLE_RATE = 8000
FRAME_DURATION_MS = 20
TWILIO_FRAME_SIZE = int(TWILIO_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms
ULAW_BYTES_PER_MS = TWILIO_SAMPLE_RATE // 1000  # 8 bytes per ms of mu-law
ULAW_SILENCE = b"\xff"  # 0xFF is silence in mu-law
TTS_PCM_SAMPLE_RATE = 24000  # OpenAI TTS raw PCM output rate


def ulaw_to_linear16(ulaw_bytes: bytes) -> bytes:
    """
    Convert mu-law 8kHz audio to linear PCM 16-bit.

    Args:
        ulaw_bytes: Raw mu-law encoded bytes at 8kHz

    Returns:
        Linear PCM 16-bit bytes at 8kHz
    """
    if not ulaw_bytes:
        return b""

    return audioop.ulaw2lin(ulaw_bytes, 2)


def linear16_to_ulaw(pcm_bytes: bytes) -> bytes:
    """
    Convert linear PCM 16-bit to mu-law.

    Args:
        pcm_bytes: Linear PCM 16-bit bytes

    Returns:
        Mu-law encoded bytes
    """
    if not pcm_bytes:
        return b""

    return audioop.lin2ulaw(pcm_bytes, 2)


def resample_pcm16(pcm_bytes: bytes, source_rate: int, target_rate: int) -> bytes:
    """
    Resample mono 16-bit PCM from `source_rate` to `target_rate` using `audioop.ratecv`.
    """
    if not pcm_bytes or source_rate == target_rate:
        return pcm_bytes
    converted, _ = audioop.ratecv(pcm_bytes, 2, 1, int(source_rate), int(target_rate), None)
    return converted


def pcm16_to_twilio_ulaw(pcm_bytes: bytes, source_rate: int = TTS_PCM_SAMPLE_RATE) -> bytes:
    """
    Convert synthesized 16-bit PCM to Twilio mu-law 8kHz.

    Args:
        pcm_bytes: Little-endian mono PCM 16-bit bytes
        source_rate: Sample rate of `pcm_bytes`

    Returns:
        Mu-law bytes at 8kHz
    """
    if not pcm_bytes:
        return b""

    # ratecv/lin2ulaw need whole samples
    if len(pcm_bytes) % 2:
        pcm_bytes = pcm_bytes[:-1]

    pcm_8k = resample_pcm16(pcm_bytes, source_rate, TWILIO_SAMPLE_RATE)
    return linear16_to_ulaw(pcm_8k)


def ulaw_rms(ulaw_bytes: bytes) -> int:
    """Root-mean-square energy of mu-law audio, measured on its linear PCM."""
    if not ulaw_bytes:
        return 0
    return audioop.rms(ulaw_to_linear16(ulaw_bytes), 2)


def chunk_audio(audio_bytes: bytes, chunk_size: int = TWILIO_FRAME_SIZE) -> Generator[bytes, None, None]:
    """
    Chunk audio into fixed-size frames.

    For Twilio, we want 20ms frames = 160 bytes of mu-law at 8kHz.

    Args:
        audio_bytes: Raw audio bytes
        chunk_size: Size of each chunk in bytes (default: 160 for 20ms mu-law)

    Yields:
        Audio chunks of the specified size
    """
    for i in range(0, len(audio_bytes), chunk_size):
        chunk = audio_bytes[i:i + chunk_size]
        # Pad the last chunk if needed
        if len(chunk) < chunk_size:
            chunk = chunk + ULAW_SILENCE * (chunk_size - len(chunk))
        yield chunk


def get_audio_duration_ms(audio_bytes: bytes, sample_rate: int = TWILIO_SAMPLE_RATE, is_ulaw: bool = True) -> float:
    """
    Calculate the duration of audio in milliseconds.

    Args:
        audio_bytes: Audio bytes
        sample_rate: Sample rate in Hz
        is_ulaw: Whether the audio is mu-law (1 byte per sample) or PCM (2 bytes per sample)

    Returns:
        Duration in milliseconds
    """
    if not audio_bytes:
        return 0.0

    bytes_per_sample = 1 if is_ulaw else 2
    num_samples = len(audio_bytes) // bytes_per_sample
    duration_seconds = num_samples / sample_rate

    return duration_seconds * 1000


def create_silence_ulaw(duration_ms: int) -> bytes:
    """Create `duration_ms` of silence in mu-law format."""
    num_samples = int(TWILIO_SAMPLE_RATE * duration_ms / 1000)
    return ULAW_SILENCE * num_samples


def write_wav_mono_pcm16(pcm_bytes: bytes, sample_rate: int) -> bytes:
    """Create a mono 16-bit PCM WAV byte string from PCM bytes."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm_bytes or b"")
    return buf.getvalue()


def ulaw_to_wav(ulaw_bytes: bytes) -> bytes:
    """
    Wrap Twilio 8kHz mu-law bytes in a mono PCM16 WAV byte string.

    Used to hand a drained utterance to the transcription API without touching disk.
    """
    return write_wav_mono_pcm16(ulaw_to_linear16(ulaw_bytes), TWILIO_SAMPLE_RATE)
