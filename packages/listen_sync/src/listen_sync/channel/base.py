from __future__ import annotations

from typing import Awaitable, Callable, Protocol

from ..models import SyncEvent

EventHandler = Callable[[SyncEvent], Awaitable[None]]


class EventChannel(Protocol):
    """Session-scoped publish/subscribe of ``SyncEvent`` records.

    Delivery is at-least-once and ordered per sender; subscribers receive
    their own publications too and must drop them by ``senderDeviceId``.
    """

    async def subscribe(self, session_id: str, handler: EventHandler) -> None: ...

    async def unsubscribe(self, session_id: str) -> None: ...

    async def publish(self, session_id: str, event: SyncEvent) -> None: ...

    async def close(self) -> None: ...
