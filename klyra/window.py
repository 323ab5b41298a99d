"""A bounded conversation window."""

from __future__ import annotations

from klyra.compact import Message, Role, pack_messages

_MIN_MESSAGES = 4


class Window:
    """Keeps the system message and the most recent conversation messages."""

    def __init__(self, max_messages: int, max_tokens: int = 0) -> None:
        self._max_messages = max(max_messages, _MIN_MESSAGES)
        self._max_tokens = max_tokens
        self._messages: list[Message] = []

    def add(self, message: Message) -> None:
        """Append a message and drop the oldest ones beyond the limit."""
        self._messages.append(message)
        self._trim()

    def messages(self) -> list[Message]:
        """A copy of the window's messages, packed to the token budget if set."""
        out = list(self._messages)
        if self._max_tokens > 0:
            out, _ = pack_messages(out, self._max_tokens, self._max_messages)
        return out

    def _trim(self) -> None:
        if len(self._messages) <= self._max_messages:
            return
        system = self._messages[:1] if self._messages[0].role == Role.SYSTEM else []
        tail_size = self._max_messages - len(system)
        self._messages = system + self._messages[-tail_size:]