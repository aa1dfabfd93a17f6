"""Redis-backed session directory."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, TypeVar

from redis.exceptions import RedisError, WatchError

from ..exceptions import CapacityExceededError, DirectoryError, DuplicateSyncKeyError, RecordNotFoundError
from ..models import SyncEvent, SyncParticipant, SyncSession, apply_update
from ..redis_bus import RedisFactory

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MAX_WATCH_RETRIES = 20


def _session_key(session_id: str) -> str:
    return f"sync:session:{session_id}"


def _sync_key_index(sync_key: str) -> str:
    return f"sync:key:{sync_key}"


def _members_key(session_id: str) -> str:
    return f"sync:participants:{session_id}"


def _participant_index(participant_id: str) -> str:
    return f"sync:participant:{participant_id}"


def _events_key(session_id: str) -> str:
    return f"sync:events:{session_id}"


class RedisSessionDirectory:
    """Directory stored as JSON records in Redis.

    Layout: one string per session, a ``syncKey → id`` index, one hash of
    participants per session plus a ``participantId → sessionId`` index, and a
    capped list of events. Every key carries the session TTL. Read-modify-write
    paths run under WATCH so concurrent writers retry instead of clobbering.
    """

    def __init__(
        self,
        redis_factory: RedisFactory,
        *,
        session_ttl_seconds: int = 6 * 3600,
        event_history_limit: int = 200,
    ) -> None:
        self._redis_factory = redis_factory
        self._ttl = session_ttl_seconds
        self._event_history_limit = event_history_limit

    async def _guard(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await call()
        except DirectoryError:
            raise
        except RedisError as exc:
            raise DirectoryError(f"Redis {operation} failed: {exc}", cause=exc) from exc

    async def _server_now(self) -> datetime:
        redis = await self._redis_factory.get_client()
        seconds, micros = await redis.time()
        return datetime.fromtimestamp(int(seconds) + int(micros) / 1_000_000, tz=timezone.utc)

    async def probe(self) -> int:
        async def _call() -> int:
            now = await self._server_now()
            return int(now.timestamp() * 1000)

        return await self._guard("probe", _call)

    async def insert_session(self, session: SyncSession) -> SyncSession:
        async def _call() -> SyncSession:
            redis = await self._redis_factory.get_client()
            now = await self._server_now()
            stored = apply_update(
                session, {"created_at": now, "expires_at": now + timedelta(seconds=self._ttl)}
            )
            index = _sync_key_index(stored.sync_key)
            claimed = await redis.set(index, stored.id, nx=True, ex=self._ttl)
            if not claimed:
                holder_id = await redis.get(index)
                holder = await self.get_session(holder_id) if holder_id else None
                if holder is not None and holder.status == "active":
                    raise DuplicateSyncKeyError(f"Sync key {stored.sync_key} is already in use")
                await redis.set(index, stored.id, ex=self._ttl)
            await redis.set(_session_key(stored.id), stored.model_dump_json(by_alias=True), ex=self._ttl)
            return stored

        return await self._guard("insert_session", _call)

    async def get_session(self, session_id: str) -> SyncSession | None:
        async def _call() -> SyncSession | None:
            redis = await self._redis_factory.get_client()
            raw = await redis.get(_session_key(session_id))
            return SyncSession.model_validate_json(raw) if raw else None

        return await self._guard("get_session", _call)

    async def find_session_by_key(self, sync_key: str) -> SyncSession | None:
        async def _call() -> SyncSession | None:
            redis = await self._redis_factory.get_client()
            session_id = await redis.get(_sync_key_index(sync_key))
            if not session_id:
                return None
            return await self.get_session(session_id)

        return await self._guard("find_session_by_key", _call)

    async def update_session(self, session_id: str, fields: dict[str, Any]) -> SyncSession:
        async def _call() -> SyncSession:
            redis = await self._redis_factory.get_client()
            key = _session_key(session_id)
            async with redis.pipeline(transaction=True) as pipe:
                for _ in range(_MAX_WATCH_RETRIES):
                    try:
                        await pipe.watch(key)
                        raw = await pipe.get(key)
                        if not raw:
                            raise RecordNotFoundError(f"Session {session_id} not found")
                        updated = apply_update(SyncSession.model_validate_json(raw), fields)
                        pipe.multi()
                        pipe.set(key, updated.model_dump_json(by_alias=True), keepttl=True)
                        await pipe.execute()
                        return updated
                    except WatchError:
                        logger.debug("Concurrent write on %s, retrying", key)
                        continue
            raise DirectoryError(f"Session {session_id} is under heavy contention")

        return await self._guard("update_session", _call)

    async def delete_session(self, session_id: str) -> None:
        async def _call() -> None:
            redis = await self._redis_factory.get_client()
            session = await self.get_session(session_id)
            member_ids = await redis.hkeys(_members_key(session_id))
            keys = [_session_key(session_id), _members_key(session_id), _events_key(session_id)]
            keys.extend(_participant_index(pid) for pid in member_ids)
            if session is not None:
                index = _sync_key_index(session.sync_key)
                if await redis.get(index) == session_id:
                    keys.append(index)
            await redis.delete(*keys)

        await self._guard("delete_session", _call)

    async def insert_participant(self, participant: SyncParticipant, *, max_participants: int) -> SyncParticipant:
        async def _call() -> SyncParticipant:
            redis = await self._redis_factory.get_client()
            if await self.get_session(participant.session_id) is None:
                raise RecordNotFoundError(f"Session {participant.session_id} not found")
            members_key = _members_key(participant.session_id)
            now = await self._server_now()
            stored = apply_update(participant, {"joined_at": now, "last_heartbeat": now})
            async with redis.pipeline(transaction=True) as pipe:
                for _ in range(_MAX_WATCH_RETRIES):
                    try:
                        await pipe.watch(members_key)
                        raw_members = await pipe.hgetall(members_key)
                        members = [SyncParticipant.model_validate_json(raw) for raw in raw_members.values()]
                        # One row per device: a rejoining device replaces its previous row.
                        stale = [m.id for m in members if m.device_id == participant.device_id]
                        if len(members) - len(stale) >= max_participants:
                            raise CapacityExceededError(
                                f"Session {participant.session_id} is full (limit={max_participants})"
                            )
                        pipe.multi()
                        if stale:
                            pipe.hdel(members_key, *stale)
                            pipe.delete(*[_participant_index(pid) for pid in stale])
                        pipe.hset(members_key, stored.id, stored.model_dump_json(by_alias=True))
                        pipe.expire(members_key, self._ttl)
                        pipe.set(_participant_index(stored.id), stored.session_id, ex=self._ttl)
                        await pipe.execute()
                        return stored
                    except WatchError:
                        logger.debug("Concurrent join on %s, retrying", members_key)
                        continue
            raise DirectoryError(f"Session {participant.session_id} is under heavy contention")

        return await self._guard("insert_participant", _call)

    async def get_participant(self, participant_id: str) -> SyncParticipant | None:
        async def _call() -> SyncParticipant | None:
            redis = await self._redis_factory.get_client()
            session_id = await redis.get(_participant_index(participant_id))
            if not session_id:
                return None
            raw = await redis.hget(_members_key(session_id), participant_id)
            return SyncParticipant.model_validate_json(raw) if raw else None

        return await self._guard("get_participant", _call)

    async def update_participant(self, participant_id: str, fields: dict[str, Any]) -> SyncParticipant:
        async def _call() -> SyncParticipant:
            redis = await self._redis_factory.get_client()
            session_id = await redis.get(_participant_index(participant_id))
            if not session_id:
                raise RecordNotFoundError(f"Participant {participant_id} not found")
            members_key = _members_key(session_id)
            async with redis.pipeline(transaction=True) as pipe:
                for _ in range(_MAX_WATCH_RETRIES):
                    try:
                        await pipe.watch(members_key)
                        raw = await pipe.hget(members_key, participant_id)
                        if not raw:
                            raise RecordNotFoundError(f"Participant {participant_id} not found")
                        updated = apply_update(SyncParticipant.model_validate_json(raw), fields)
                        pipe.multi()
                        pipe.hset(members_key, participant_id, updated.model_dump_json(by_alias=True))
                        await pipe.execute()
                        return updated
                    except WatchError:
                        continue
            raise DirectoryError(f"Participant {participant_id} is under heavy contention")

        return await self._guard("update_participant", _call)

    async def record_heartbeat(self, participant_id: str, *, latency_ms: float) -> SyncParticipant:
        now = await self._guard("record_heartbeat", self._server_now)
        return await self.update_participant(
            participant_id,
            {"last_heartbeat": now, "latency_ms": latency_ms, "status": "connected"},
        )

    async def delete_participant(self, participant_id: str) -> None:
        async def _call() -> None:
            redis = await self._redis_factory.get_client()
            session_id = await redis.get(_participant_index(participant_id))
            if session_id:
                await redis.hdel(_members_key(session_id), participant_id)
            await redis.delete(_participant_index(participant_id))

        await self._guard("delete_participant", _call)

    async def list_participants(self, session_id: str) -> list[SyncParticipant]:
        async def _call() -> list[SyncParticipant]:
            redis = await self._redis_factory.get_client()
            raw_members = await redis.hvals(_members_key(session_id))
            members = [SyncParticipant.model_validate_json(raw) for raw in raw_members]
            return sorted(members, key=lambda p: p.joined_at)

        return await self._guard("list_participants", _call)

    async def count_participants(self, session_id: str) -> int:
        async def _call() -> int:
            redis = await self._redis_factory.get_client()
            return int(await redis.hlen(_members_key(session_id)))

        return await self._guard("count_participants", _call)

    async def insert_event(self, event: SyncEvent) -> None:
        async def _call() -> None:
            if self._event_history_limit <= 0:
                return
            redis = await self._redis_factory.get_client()
            key = _events_key(event.session_id)
            async with redis.pipeline(transaction=True) as pipe:
                pipe.rpush(key, event.model_dump_json(by_alias=True, exclude_none=True))
                pipe.ltrim(key, -self._event_history_limit, -1)
                pipe.expire(key, self._ttl)
                await pipe.execute()

        await self._guard("insert_event", _call)

    async def list_events(self, session_id: str, *, limit: int = 50) -> list[SyncEvent]:
        async def _call() -> list[SyncEvent]:
            if limit <= 0:
                return []
            redis = await self._redis_factory.get_client()
            raw_events = await redis.lrange(_events_key(session_id), -limit, -1)
            return [SyncEvent.model_validate_json(raw) for raw in raw_events]

        return await self._guard("list_events", _call)
