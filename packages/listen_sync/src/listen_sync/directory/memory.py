"""Process-local session directory."""

from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict

from ..clock import wall_clock_ms
from ..exceptions import CapacityExceededError, DuplicateSyncKeyError, RecordNotFoundError
from ..models import SyncEvent, SyncParticipant, SyncSession, apply_update


class InMemorySessionDirectory:
    """Directory held in memory and shared by every client of one process.

    Used by tests, the CLI simulation and single-process deployments. The
    server clock is injectable so simulations can drive it.
    """

    def __init__(
        self,
        *,
        session_ttl_seconds: int = 6 * 3600,
        event_history_limit: int = 200,
        clock: Callable[[], float] = wall_clock_ms,
    ) -> None:
        self._ttl = timedelta(seconds=session_ttl_seconds)
        self._event_history_limit = event_history_limit
        self._clock = clock
        self._sessions: Dict[str, SyncSession] = {}
        self._keys: Dict[str, str] = {}
        self._participants: Dict[str, SyncParticipant] = {}
        self._events: Dict[str, deque[SyncEvent]] = {}
        self._lock = asyncio.Lock()
        self.probe_count = 0

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock() / 1000.0, tz=timezone.utc)

    def _is_live(self, session: SyncSession) -> bool:
        return session.expires_at is None or session.expires_at > self._now()

    async def probe(self) -> int:
        self.probe_count += 1
        return int(self._clock())

    async def insert_session(self, session: SyncSession) -> SyncSession:
        async with self._lock:
            existing_id = self._keys.get(session.sync_key)
            existing = self._sessions.get(existing_id) if existing_id else None
            if existing is not None and existing.status == "active" and self._is_live(existing):
                raise DuplicateSyncKeyError(f"Sync key {session.sync_key} is already in use")
            now = self._now()
            stored = apply_update(session, {"created_at": now, "expires_at": now + self._ttl})
            self._sessions[stored.id] = stored
            self._keys[stored.sync_key] = stored.id
            self._events[stored.id] = deque(maxlen=self._event_history_limit)
            return stored

    async def get_session(self, session_id: str) -> SyncSession | None:
        session = self._sessions.get(session_id)
        if session is None or not self._is_live(session):
            return None
        return session

    async def find_session_by_key(self, sync_key: str) -> SyncSession | None:
        session_id = self._keys.get(sync_key)
        if session_id is None:
            return None
        return await self.get_session(session_id)

    async def update_session(self, session_id: str, fields: dict[str, Any]) -> SyncSession:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise RecordNotFoundError(f"Session {session_id} not found")
            updated = apply_update(session, fields)
            self._sessions[session_id] = updated
            return updated

    async def delete_session(self, session_id: str) -> None:
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is not None and self._keys.get(session.sync_key) == session_id:
                self._keys.pop(session.sync_key, None)
            self._events.pop(session_id, None)
            for participant_id in [p.id for p in self._participants.values() if p.session_id == session_id]:
                self._participants.pop(participant_id, None)

    async def insert_participant(self, participant: SyncParticipant, *, max_participants: int) -> SyncParticipant:
        async with self._lock:
            if participant.session_id not in self._sessions:
                raise RecordNotFoundError(f"Session {participant.session_id} not found")
            members = [p for p in self._participants.values() if p.session_id == participant.session_id]
            # One row per device: a rejoining device replaces its previous row.
            for member in members:
                if member.device_id == participant.device_id:
                    self._participants.pop(member.id, None)
            members = [m for m in members if m.device_id != participant.device_id]
            if len(members) >= max_participants:
                raise CapacityExceededError(
                    f"Session {participant.session_id} is full (limit={max_participants})"
                )
            now = self._now()
            stored = apply_update(participant, {"joined_at": now, "last_heartbeat": now})
            self._participants[stored.id] = stored
            return stored

    async def get_participant(self, participant_id: str) -> SyncParticipant | None:
        return self._participants.get(participant_id)

    async def update_participant(self, participant_id: str, fields: dict[str, Any]) -> SyncParticipant:
        async with self._lock:
            participant = self._participants.get(participant_id)
            if participant is None:
                raise RecordNotFoundError(f"Participant {participant_id} not found")
            updated = apply_update(participant, fields)
            self._participants[participant_id] = updated
            return updated

    async def record_heartbeat(self, participant_id: str, *, latency_ms: float) -> SyncParticipant:
        return await self.update_participant(
            participant_id,
            {"last_heartbeat": self._now(), "latency_ms": latency_ms, "status": "connected"},
        )

    async def delete_participant(self, participant_id: str) -> None:
        async with self._lock:
            self._participants.pop(participant_id, None)

    async def list_participants(self, session_id: str) -> list[SyncParticipant]:
        members = [p for p in self._participants.values() if p.session_id == session_id]
        return sorted(members, key=lambda p: p.joined_at)

    async def count_participants(self, session_id: str) -> int:
        return sum(1 for p in self._participants.values() if p.session_id == session_id)

    async def insert_event(self, event: SyncEvent) -> None:
        async with self._lock:
            log = self._events.get(event.session_id)
            if log is None:
                raise RecordNotFoundError(f"Session {event.session_id} not found")
            log.append(event)

    async def list_events(self, session_id: str, *, limit: int = 50) -> list[SyncEvent]:
        log = self._events.get(session_id)
        if not log:
            return []
        return list(log)[-limit:] if limit > 0 else []
