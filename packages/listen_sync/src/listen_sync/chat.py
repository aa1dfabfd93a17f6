"""Bounded chat and reaction history."""

from __future__ import annotations

from collections import deque

from .models import ChatMessage

SYSTEM_SENDER_ID = "system"


class ChatRelay:
    """Keeps the most recent ``limit`` messages in arrival order."""

    def __init__(self, limit: int = 100) -> None:
        self._messages: deque[ChatMessage] = deque(maxlen=limit)

    @property
    def messages(self) -> list[ChatMessage]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def append(self, message: ChatMessage) -> bool:
        if any(existing.id == message.id for existing in self._messages):
            return False
        self._messages.append(message)
        return True

    def compose_text(self, *, sender_id: str, sender_name: str, text: str, timestamp: int) -> ChatMessage | None:
        body = text.strip()
        if not body:
            return None
        message = ChatMessage(sender_id=sender_id, sender_name=sender_name, text=body, timestamp=timestamp)
        self.append(message)
        return message

    def compose_reaction(self, *, sender_id: str, sender_name: str, emoji: str, timestamp: int) -> ChatMessage | None:
        if not emoji.strip():
            return None
        message = ChatMessage(
            sender_id=sender_id,
            sender_name=sender_name,
            text=emoji.strip(),
            timestamp=timestamp,
            type="reaction",
        )
        self.append(message)
        return message

    def system(self, text: str, *, timestamp: int) -> ChatMessage:
        message = ChatMessage(
            sender_id=SYSTEM_SENDER_ID,
            sender_name="System",
            text=text,
            timestamp=timestamp,
            type="system",
        )
        self.append(message)
        return message

    def clear(self) -> None:
        self._messages.clear()
