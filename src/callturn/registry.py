"""
Session registry.

Maps an active call (Twilio streamSid) to its CallSession. The registry is the
only place sessions are created and destroyed, and it closes the call's
WebSocket once teardown completes.

All access happens on the event loop and no await separates a lookup from the
matching insert or removal, so calls never block each other.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Awaitable, Callable, Dict, List, Optional

import structlog

from src.callturn.accumulator import BoundaryPolicy
from src.callturn.config import get_config, Config
from src.callturn.errors import DuplicateSessionError, UnknownSessionError
from src.callturn.llm import ChatCompletionClient
from src.callturn.session import CallSession, TurnServices
from src.callturn.stt import WhisperTranscriber
from src.callturn.tts import OpenAITTS

logger = structlog.get_logger(__name__)


def build_services(config: Optional[Config] = None) -> TurnServices:
    """Create the production STT/LLM/TTS clients."""
    if config is None:
        config = get_config()
    return TurnServices(
        transcriber=WhisperTranscriber(config),
        completer=ChatCompletionClient(config),
        synthesizer=OpenAITTS(config),
    )


@dataclass
class _RegistryEntry:
    session: CallSession
    close_channel: Optional[Callable[[], Awaitable[None]]] = None


class SessionRegistry:
    """In-memory registry of active call sessions."""

    def __init__(
        self,
        services: Optional[TurnServices] = None,
        config: Optional[Config] = None,
        policy_factory: Optional[Callable[[], BoundaryPolicy]] = None,
    ):
        self.config = config or get_config()
        self._services = services
        self._policy_factory = policy_factory
        self._entries: Dict[str, _RegistryEntry] = {}
        self.total_sessions = 0

    @property
    def services(self) -> TurnServices:
        if self._services is None:
            self._services = build_services(self.config)
        return self._services

    @property
    def active_count(self) -> int:
        return len(self._entries)

    def call_ids(self) -> List[str]:
        return list(self._entries)

    def get(self, call_id: str) -> Optional[CallSession]:
        entry = self._entries.get(call_id)
        return entry.session if entry else None

    def __contains__(self, call_id: str) -> bool:
        return call_id in self._entries

    def on_start(
        self,
        call_id: str,
        *,
        send_message: Callable[[str], Awaitable[None]],
        close_channel: Optional[Callable[[], Awaitable[None]]] = None,
        call_sid: str = "",
        objective: Optional[str] = None,
    ) -> CallSession:
        """
        Create the session for a newly started call.

        Raises:
            DuplicateSessionError: If the call already has a session
        """
        if call_id in self._entries:
            raise DuplicateSessionError(call_id)

        session = CallSession(
            call_id,
            send_message=send_message,
            services=self.services,
            config=self.config,
            call_sid=call_sid,
            objective=objective,
            policy=self._policy_factory() if self._policy_factory else None,
        )
        self._entries[call_id] = _RegistryEntry(session=session, close_channel=close_channel)
        self.total_sessions += 1

        logger.info(
            "Session started",
            stream_sid=call_id,
            call_sid=call_sid,
            objective_override=bool(objective),
            active_calls=self.active_count,
        )
        return session

    def on_media(self, call_id: str, payload: str) -> None:
        """
        Route one inbound media payload to its session.

        Raises:
            UnknownSessionError: If the call has no session
        """
        entry = self._entries.get(call_id)
        if entry is None:
            raise UnknownSessionError(call_id)
        entry.session.on_media(payload)

    async def on_stop(self, call_id: str) -> None:
        """
        Tear down a call's session and close its channel.

        Stopping an unknown or already-stopped call is a no-op, since stop can be
        delivered more than once (Twilio stop event, then WebSocket close).
        """
        entry = self._entries.pop(call_id, None)
        if entry is None:
            logger.debug("Stop for unknown or finished call", stream_sid=call_id)
            return

        await entry.session.close()

        if entry.close_channel is not None:
            try:
                await entry.close_channel()
            except Exception as e:
                logger.warning("Error closing call channel", stream_sid=call_id, error=str(e))

        logger.info("Session removed", stream_sid=call_id, active_calls=self.active_count)

    async def close_all(self) -> None:
        """Tear down every active session (server shutdown)."""
        for call_id in self.call_ids():
            await self.on_stop(call_id)

    async def shutdown(self) -> None:
        """Tear down all sessions, then release the shared service clients."""
        await self.close_all()
        if self._services is not None:
            await self._services.close()


@lru_cache(maxsize=1)
def get_registry() -> SessionRegistry:
    """Get the process-wide session registry."""
    return SessionRegistry()
