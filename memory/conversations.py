from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from memory.models import MemoryScope
from memory.models import utc_now


@dataclass(slots=True)
class ConversationState:
    messages: list[dict[str, Any]] = field(default_factory=list)
    messages_since_extraction: int = 0
    last_extraction_at: datetime | None = None


class ConversationStore:
    """
    Per-(user, guild) chat history plus extraction counters.
    messages[0] is always the system prompt; history is trimmed to context_length entries.
    Nothing here survives a restart.
    """

    def __init__(self, *, context_length: int = 20, clock: Callable[[], datetime] = utc_now):
        self.context_length = max(2, int(context_length))
        self._clock = clock
        self._states: dict[MemoryScope, ConversationState] = {}

    def _state(self, scope: MemoryScope) -> ConversationState:
        state = self._states.get(scope)
        if state is None:
            state = ConversationState(last_extraction_at=self._clock())
            self._states[scope] = state
        return state

    def history(self, scope: MemoryScope) -> list[dict[str, Any]]:
        state = self._states.get(scope)
        return [dict(m) for m in state.messages] if state else []

    def build_turn(self, scope: MemoryScope, system_prompt: str, user_text: str) -> list[dict[str, Any]]:
        """Replace the system prompt, append the user turn and return the messages to send."""
        state = self._state(scope)
        body = state.messages[1:] if state.messages else []
        body.append({"role": "user", "content": user_text})
        if len(body) > self.context_length - 1:
            body = body[-(self.context_length - 1):]
        state.messages = [{"role": "system", "content": system_prompt}] + body
        return [dict(m) for m in state.messages]

    def add_assistant_reply(self, scope: MemoryScope, reply: str) -> None:
        state = self._state(scope)
        state.messages.append({"role": "assistant", "content": reply})

    def record_exchange(self, scope: MemoryScope) -> int:
        state = self._state(scope)
        state.messages_since_extraction += 1
        return state.messages_since_extraction

    def should_extract(self, scope: MemoryScope, *, message_threshold: int, inactivity_hours: float) -> bool:
        state = self._state(scope)
        if state.messages_since_extraction >= int(message_threshold):
            return True
        last = state.last_extraction_at or self._clock()
        return (self._clock() - last) > timedelta(hours=float(inactivity_hours))

    def mark_extraction_started(self, scope: MemoryScope) -> None:
        state = self._state(scope)
        state.messages_since_extraction = 0
        state.last_extraction_at = self._clock()

    def clear(self, scope: MemoryScope) -> None:
        self._states.pop(scope, None)

    def scopes(self) -> list[MemoryScope]:
        return list(self._states)
