"""Process-local event channel."""

from __future__ import annotations

import logging
from typing import Dict
from uuid import uuid4

from ..models import SyncEvent
from .base import EventHandler

logger = logging.getLogger(__name__)


class InMemoryEventBus:
    """Fan-out hub shared by every ``InMemoryEventChannel`` of a process."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, Dict[str, EventHandler]] = {}
        self.published: list[SyncEvent] = []

    def attach(self, session_id: str, token: str, handler: EventHandler) -> None:
        self._subscribers.setdefault(session_id, {})[token] = handler

    def detach(self, session_id: str, token: str) -> None:
        handlers = self._subscribers.get(session_id)
        if not handlers:
            return
        handlers.pop(token, None)
        if not handlers:
            self._subscribers.pop(session_id, None)

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, {}))

    async def deliver(self, session_id: str, event: SyncEvent) -> int:
        self.published.append(event)
        wire = event.to_wire()
        deliveries = 0
        for token, handler in list(self._subscribers.get(session_id, {}).items()):
            # Each subscriber gets its own decoded copy, as it would off the wire.
            try:
                await handler(SyncEvent.model_validate(wire))
                deliveries += 1
            except Exception:  # pylint: disable=broad-except
                logger.exception("Subscriber %s failed to handle %s", token, event.type.value)
        return deliveries


class InMemoryEventChannel:
    """One client's connection to an ``InMemoryEventBus``."""

    def __init__(self, bus: InMemoryEventBus) -> None:
        self._bus = bus
        self._token = uuid4().hex
        self._sessions: set[str] = set()

    async def subscribe(self, session_id: str, handler: EventHandler) -> None:
        # attach() overwrites the previous handler for this token.
        self._bus.attach(session_id, self._token, handler)
        self._sessions.add(session_id)

    async def unsubscribe(self, session_id: str) -> None:
        self._bus.detach(session_id, self._token)
        self._sessions.discard(session_id)

    async def publish(self, session_id: str, event: SyncEvent) -> None:
        deliveries = await self._bus.deliver(session_id, event)
        logger.debug("Delivered %s to %d subscribers of %s", event.type.value, deliveries, session_id)

    async def close(self) -> None:
        for session_id in list(self._sessions):
            await self.unsubscribe(session_id)
