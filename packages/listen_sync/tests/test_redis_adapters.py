from __future__ import annotations

import asyncio
import json
from uuid import uuid4

import pytest
import pytest_asyncio

from listen_sync.channel import RedisEventChannel
from listen_sync.directory import RedisSessionDirectory
from listen_sync.exceptions import CapacityExceededError, DuplicateSyncKeyError
from listen_sync.models import SyncEvent, SyncEventType, SyncParticipant, SyncSession
from listen_sync.redis_bus import RedisFactory


@pytest_asyncio.fixture
async def factory():  # type: ignore[no-untyped-def]
    redis_factory = RedisFactory(f"fakeredis://adapters-{uuid4().hex}")
    try:
        yield redis_factory
    finally:
        await redis_factory.close()


def _event(session_id: str, *, sender: str = "d1", position: float = 12.5) -> SyncEvent:
    return SyncEvent(
        session_id=session_id,
        type=SyncEventType.SEEK,
        timestamp=1_700_000_000_000,
        position=position,
        sender_device_id=sender,
    )


@pytest.mark.asyncio
async def test_redis_directory_sessions_and_capacity(factory: RedisFactory) -> None:
    directory = RedisSessionDirectory(factory, session_ttl_seconds=600)
    session = await directory.insert_session(SyncSession(sync_key="XT-REDIS2", host_participant_id="h"))

    with pytest.raises(DuplicateSyncKeyError):
        await directory.insert_session(SyncSession(sync_key="XT-REDIS2", host_participant_id="h2"))

    found = await directory.find_session_by_key("XT-REDIS2")
    assert found is not None and found.id == session.id
    assert found.expires_at is not None

    first = await directory.insert_participant(
        SyncParticipant(session_id=session.id, device_id="a"), max_participants=2
    )
    await directory.insert_participant(SyncParticipant(session_id=session.id, device_id="b"), max_participants=2)
    with pytest.raises(CapacityExceededError):
        await directory.insert_participant(
            SyncParticipant(session_id=session.id, device_id="c"), max_participants=2
        )
    # Rejoining device replaces its row instead of taking another seat.
    again = await directory.insert_participant(
        SyncParticipant(session_id=session.id, device_id="a"), max_participants=2
    )

    assert await directory.count_participants(session.id) == 2
    assert await directory.get_participant(first.id) is None
    assert (await directory.get_participant(again.id)).device_id == "a"  # type: ignore[union-attr]

    updated = await directory.update_session(session.id, {"status": "ended"})
    assert updated.status == "ended"
    reused = await directory.insert_session(SyncSession(sync_key="XT-REDIS2", host_participant_id="h3"))
    assert (await directory.find_session_by_key("XT-REDIS2")).id == reused.id  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_redis_directory_heartbeat_and_events(factory: RedisFactory) -> None:
    directory = RedisSessionDirectory(factory, event_history_limit=2)
    session = await directory.insert_session(SyncSession(sync_key="XT-EVENTS", host_participant_id="h"))
    participant = await directory.insert_participant(
        SyncParticipant(session_id=session.id, device_id="a", status="syncing"), max_participants=30
    )

    beat = await directory.record_heartbeat(participant.id, latency_ms=33.0)
    assert beat.status == "connected"
    assert beat.latency_ms == 33.0
    assert await directory.probe() > 0

    for position in (1.0, 2.0, 3.0):
        await directory.insert_event(_event(session.id, position=position))
    events = await directory.list_events(session.id, limit=10)
    assert [e.position for e in events] == [2.0, 3.0]

    await directory.delete_participant(participant.id)
    assert await directory.list_participants(session.id) == []


@pytest.mark.asyncio
async def test_redis_channel_roundtrip(factory: RedisFactory) -> None:
    publisher = RedisEventChannel(factory)
    subscriber = RedisEventChannel(factory)
    received: list[SyncEvent] = []
    arrived = asyncio.Event()

    async def handler(event: SyncEvent) -> None:
        received.append(event)
        arrived.set()

    await subscriber.subscribe("s1", handler)
    try:
        await asyncio.sleep(0.05)
        await publisher.publish("s1", _event("s1"))
        await asyncio.wait_for(arrived.wait(), timeout=3.0)
    finally:
        await subscriber.close()

    assert received[0].type is SyncEventType.SEEK
    assert received[0].position == 12.5
    assert received[0].sender_device_id == "d1"


def test_decode_skips_invalid_and_own_messages() -> None:
    channel = RedisEventChannel(RedisFactory("fakeredis://decode"), node_id="node-a", skip_own_origin=True)
    wire = _event("s1").to_wire()

    assert channel.decode("not json") is None
    assert channel.decode(json.dumps({"origin": "node-b"})) is None
    assert channel.decode(json.dumps({"origin": "node-b", "event": {"type": "seek"}})) is None
    assert channel.decode(json.dumps({"origin": "node-a", "event": wire})) is None

    decoded = channel.decode(json.dumps({"origin": "node-b", "event": wire}))
    assert decoded is not None and decoded.session_id == "s1"
