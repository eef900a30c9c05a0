"""Per-call conversation memory supplied to the completion service."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional

from src.callturn.errors import MemoryOrderError


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ConversationTurn:
    """A single turn in the conversation."""
    role: Role
    content: str
    timestamp: float = field(default_factory=time.time)

    def to_message(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class ConversationMemory:
    """
    Ordered, append-only log of conversation turns for one call.

    The first turn is always the system persona, optionally followed by a seed
    user turn stating the call objective. After that, turns are appended as the
    pipeline completes them: a user transcript, then the assistant reply. An
    assistant turn must follow a user turn. A user turn whose completion failed
    stays in the log, so the next user turn may follow it directly.
    """

    def __init__(self, system_prompt: str, seed_user_message: Optional[str] = None):
        if not system_prompt or not system_prompt.strip():
            raise ValueError("system_prompt must not be empty")

        self._turns: List[ConversationTurn] = [ConversationTurn(Role.SYSTEM, system_prompt)]
        if seed_user_message and seed_user_message.strip():
            self._turns.append(ConversationTurn(Role.USER, seed_user_message))
        self._seed_count = len(self._turns)

    @property
    def turns(self) -> List[ConversationTurn]:
        """Snapshot of all turns, in order."""
        return list(self._turns)

    @property
    def seed_count(self) -> int:
        """Number of turns established at session creation."""
        return self._seed_count

    @property
    def appended_turns(self) -> List[ConversationTurn]:
        """Turns appended by completed pipeline stages."""
        return self._turns[self._seed_count:]

    @property
    def last_role(self) -> Role:
        return self._turns[-1].role

    def append_user(self, content: str) -> ConversationTurn:
        """Add a caller transcript."""
        if not content or not content.strip():
            raise MemoryOrderError("User turn must not be empty")
        turn = ConversationTurn(Role.USER, content)
        self._turns.append(turn)
        return turn

    def append_assistant(self, content: str) -> ConversationTurn:
        """Add the agent's reply to the most recent user turn."""
        if self.last_role != Role.USER:
            raise MemoryOrderError(
                f"Assistant turn must follow a user turn, last role is {self.last_role.value}"
            )
        if not content or not content.strip():
            raise MemoryOrderError("Assistant turn must not be empty")
        turn = ConversationTurn(Role.ASSISTANT, content)
        self._turns.append(turn)
        return turn

    def messages(self) -> List[Dict[str, str]]:
        """Get messages in OpenAI chat format."""
        return [turn.to_message() for turn in self._turns]

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[ConversationTurn]:
        return iter(list(self._turns))
