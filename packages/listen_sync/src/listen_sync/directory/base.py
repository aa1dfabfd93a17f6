from __future__ import annotations

from typing import Any, Protocol

from ..models import SyncEvent, SyncParticipant, SyncSession


class SessionDirectory(Protocol):
    """Durable store of sessions, participants and events.

    Writes are serialised per record by the backend. ``probe`` returns the
    server clock in epoch ms and doubles as the latency-probe target.
    """

    async def probe(self) -> int: ...

    async def insert_session(self, session: SyncSession) -> SyncSession: ...

    async def get_session(self, session_id: str) -> SyncSession | None: ...

    async def find_session_by_key(self, sync_key: str) -> SyncSession | None: ...

    async def update_session(self, session_id: str, fields: dict[str, Any]) -> SyncSession: ...

    async def delete_session(self, session_id: str) -> None: ...

    async def insert_participant(
        self, participant: SyncParticipant, *, max_participants: int
    ) -> SyncParticipant: ...

    async def get_participant(self, participant_id: str) -> SyncParticipant | None: ...

    async def update_participant(self, participant_id: str, fields: dict[str, Any]) -> SyncParticipant: ...

    async def record_heartbeat(self, participant_id: str, *, latency_ms: float) -> SyncParticipant: ...

    async def delete_participant(self, participant_id: str) -> None: ...

    async def list_participants(self, session_id: str) -> list[SyncParticipant]: ...

    async def count_participants(self, session_id: str) -> int: ...

    async def insert_event(self, event: SyncEvent) -> None: ...

    async def list_events(self, session_id: str, *, limit: int = 50) -> list[SyncEvent]: ...
