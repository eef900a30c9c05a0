"""Exceptions raised by the call turn pipeline and its collaborators."""


class CallTurnError(Exception):
    """Base exception for call handling errors."""

    pass


class DuplicateSessionError(CallTurnError):
    """Raised when a start event arrives for a call that already has a session."""

    def __init__(self, call_id: str):
        super().__init__(f"Session already exists for call {call_id}")
        self.call_id = call_id


class UnknownSessionError(CallTurnError):
    """Raised when an event references a call with no active session."""

    def __init__(self, call_id: str):
        super().__init__(f"No active session for call {call_id}")
        self.call_id = call_id


class StreamAlreadyStartedError(CallTurnError):
    """Raised when a connection that already carries a call receives a start for another."""

    def __init__(self, call_id: str, active_call_id: str):
        super().__init__(f"Connection already carries call {active_call_id}; refusing start for {call_id}")
        self.call_id = call_id
        self.active_call_id = active_call_id


class MalformedFrameError(CallTurnError):
    """Raised when an inbound media payload cannot be decoded."""

    pass


class TurnInProgressError(CallTurnError):
    """Raised when a turn is started while another one is still running."""

    pass


class ChannelClosedError(CallTurnError):
    """Raised when outbound audio is emitted after the call channel closed."""

    pass


class MemoryOrderError(CallTurnError):
    """Raised when a conversation turn is appended out of order."""

    pass


class RemoteServiceError(CallTurnError):
    """Base exception for transcription, completion and synthesis failures."""

    pass


class TranscriptionError(RemoteServiceError):
    """Raised when speech-to-text fails."""

    pass


class TranscriptionTimeoutError(TranscriptionError):
    """Raised when speech-to-text exceeds its time budget."""

    pass


class CompletionError(RemoteServiceError):
    """Raised when the language model call fails."""

    pass


class CompletionTimeoutError(CompletionError):
    """Raised when the language model exceeds its time budget."""

    pass


class SynthesisError(RemoteServiceError):
    """Raised when text-to-speech fails."""

    pass


class SynthesisTimeoutError(SynthesisError):
    """Raised when text-to-speech exceeds its time budget."""

    pass
