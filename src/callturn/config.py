"""
Configuration management for the call turn agent.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

DEFAULT_AGENT_PERSONA = (
    "You are an assistant calling a clinic on behalf of a client to schedule a checkup. "
    "Be professional, confident, and short."
)
DEFAULT_CALL_OBJECTIVE = "Hi, I'm calling on behalf of my client. They would like to book an appointment."


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 7860
    log_level: str = "INFO"

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_number: str = ""

    # OpenAI (STT + TTS, and completions by default)
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"
    openai_stt_model: str = "whisper-1"
    openai_tts_model: str = "tts-1-hd"
    openai_tts_voice: str = "nova"
    openai_max_retries: int = 1
    stt_language: str = ""

    # LLM provider (OpenAI/Groq)
    # - Set LLM_PROVIDER=groq + GROQ_API_KEY/GROQ_MODEL to route completions to Groq.
    llm_provider: str = "openai"  # "openai" | "groq"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    llm_temperature: float = 0.4
    llm_max_tokens: int = 200

    # Agent settings
    agent_persona: str = DEFAULT_AGENT_PERSONA
    call_objective: str = DEFAULT_CALL_OBJECTIVE
    greeting_text: str = ""

    # Turn detection
    min_utterance_ms: int = 400
    trailing_silence_ms: int = 700
    max_utterance_ms: int = 15000
    speech_rms_threshold: int = 500
    pre_roll_ms: int = 200
    min_transcript_chars: int = 2

    # Remote call budgets
    stt_timeout_seconds: float = 10.0
    llm_timeout_seconds: float = 15.0
    tts_timeout_seconds: float = 10.0

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL for Twilio."""
        return f"wss://{self.public_host}/ws"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def llm_model(self) -> str:
        return self.groq_model if self.llm_provider == "groq" else self.openai_model

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.twilio_account_sid:
            missing.append("TWILIO_ACCOUNT_SID")
        if not self.twilio_auth_token:
            missing.append("TWILIO_AUTH_TOKEN")
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")

        provider = (self.llm_provider or "openai").strip().lower()
        if provider not in ("groq", "openai"):
            raise ConfigError(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. Expected 'openai' or 'groq'."
            )

        if provider == "groq":
            if not self.groq_api_key:
                missing.append("GROQ_API_KEY")
            if not self.groq_model:
                missing.append("GROQ_MODEL")

        if provider == "openai" and not self.openai_model:
            missing.append("OPENAI_MODEL")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        if self.min_utterance_ms <= 0 or self.trailing_silence_ms <= 0:
            raise ConfigError("MIN_UTTERANCE_MS and TRAILING_SILENCE_MS must be positive")
        if self.pre_roll_ms < 0:
            raise ConfigError("PRE_ROLL_MS must not be negative")
        if self.max_utterance_ms < self.min_utterance_ms + self.trailing_silence_ms:
            raise ConfigError(
                "MAX_UTTERANCE_MS must be at least MIN_UTTERANCE_MS + TRAILING_SILENCE_MS"
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
            stt_model=self.openai_stt_model,
            tts_model=self.openai_tts_model,
            tts_voice=self.openai_tts_voice,
            min_utterance_ms=self.min_utterance_ms,
            trailing_silence_ms=self.trailing_silence_ms,
            max_utterance_ms=self.max_utterance_ms,
            speech_rms_threshold=self.speech_rms_threshold,
            pre_roll_ms=self.pre_roll_ms,
            stt_timeout_seconds=self.stt_timeout_seconds,
            llm_timeout_seconds=self.llm_timeout_seconds,
            tts_timeout_seconds=self.tts_timeout_seconds,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            twilio_number_set=bool(self.twilio_number),
            openai_key_set=bool(self.openai_api_key),
            groq_key_set=bool(self.groq_api_key),
        )


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_number=os.getenv("TWILIO_NUMBER", ""),

        # OpenAI
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o"),
        openai_stt_model=os.getenv("OPENAI_STT_MODEL", "whisper-1"),
        openai_tts_model=os.getenv("OPENAI_TTS_MODEL", "tts-1-hd"),
        openai_tts_voice=os.getenv("OPENAI_TTS_VOICE", "nova"),
        openai_max_retries=_get_int("OPENAI_MAX_RETRIES", 1),
        stt_language=os.getenv("STT_LANGUAGE", ""),

        # LLM Provider
        llm_provider=os.getenv("LLM_PROVIDER", "openai").strip().lower(),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
        llm_temperature=_get_float("LLM_TEMPERATURE", 0.4),
        llm_max_tokens=_get_int("LLM_MAX_TOKENS", 200),

        # Agent settings
        agent_persona=os.getenv("AGENT_PERSONA", DEFAULT_AGENT_PERSONA),
        call_objective=os.getenv("CALL_OBJECTIVE", DEFAULT_CALL_OBJECTIVE),
        greeting_text=os.getenv("GREETING_TEXT", ""),

        # Turn detection
        min_utterance_ms=_get_int("MIN_UTTERANCE_MS", 400),
        trailing_silence_ms=_get_int("TRAILING_SILENCE_MS", 700),
        max_utterance_ms=_get_int("MAX_UTTERANCE_MS", 15000),
        speech_rms_threshold=_get_int("SPEECH_RMS_THRESHOLD", 500),
        pre_roll_ms=_get_int("PRE_ROLL_MS", 200),
        min_transcript_chars=_get_int("MIN_TRANSCRIPT_CHARS", 2),

        # Remote call budgets
        stt_timeout_seconds=_get_float("STT_TIMEOUT_SECONDS", 10.0),
        llm_timeout_seconds=_get_float("LLM_TIMEOUT_SECONDS", 15.0),
        tts_timeout_seconds=_get_float("TTS_TIMEOUT_SECONDS", 10.0),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
