"""Conversation state: sliding window of turns + system prompt."""

from dataclasses import dataclass, field
from typing import Optional

from .llm import DEFAULT_SYSTEM_PROMPT

MAX_TURNS = 10  # Keep last N turns (user + assistant messages)


@dataclass
class PendingTurn:
    """One in-flight turn. Only committed to history once it completes."""

    snapshot: list = field(default_factory=list)
    transcript: str = ""
    reply: str = ""
    audio: list = field(default_factory=list)  # AudioChunk per spoken segment

    def messages(self) -> list[dict]:
        return self.snapshot + [{"role": "user", "content": self.transcript}]


class ConversationHistory:
    """Manages conversation turns for the LLM."""

    def __init__(self, system: str = "", max_turns: int = MAX_TURNS):
        self.system = system or DEFAULT_SYSTEM_PROMPT
        self.max_turns = max_turns
        self._turns: list[dict] = []

    def __len__(self):
        return len(self._turns)

    def add_turn(self, role: str, text: str):
        """Add a turn to the history. Trims to max_turns."""
        self._turns.append({"role": role, "content": text})
        if len(self._turns) > self.max_turns:
            self._turns = self._turns[-self.max_turns:]

    def get_messages(self) -> list[dict]:
        """Return the message list for the LLM API, system turn first."""
        return [{"role": "system", "content": self.system}] + list(self._turns)

    def begin(self, transcript: str = "") -> PendingTurn:
        return PendingTurn(snapshot=self.get_messages(), transcript=transcript)

    def commit(self, turn: PendingTurn, reply: Optional[str] = None):
        """Append a finished turn. Empty replies are not recorded."""
        reply = turn.reply if reply is None else reply
        if not turn.transcript or not reply.strip():
            return
        self.add_turn("user", turn.transcript)
        self.add_turn("assistant", reply.strip())

    def clear(self):
        """Reset conversation history."""
        self._turns.clear()
