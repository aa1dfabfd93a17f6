from __future__ import annotations

from datetime import timedelta

import pytest

from listen_sync.channel import InMemoryEventBus, InMemoryEventChannel
from listen_sync.clock import ClockEstimator
from listen_sync.directory import InMemorySessionDirectory
from listen_sync.exceptions import PublishError
from listen_sync.heartbeat import HeartbeatMonitor
from listen_sync.models import SyncEvent, SyncEventType, SyncParticipant, SyncSession
from listen_sync.simulation import SimulationClock


class Monotonic:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_beat_records_liveness_and_publishes() -> None:
    clock = SimulationClock()
    directory = InMemorySessionDirectory(clock=clock.ms)
    bus = InMemoryEventBus()
    session = await directory.insert_session(SyncSession(sync_key="XT-HHHHHH", host_participant_id="h"))
    participant = await directory.insert_participant(
        SyncParticipant(session_id=session.id, device_id="d1", status="syncing"), max_participants=30
    )
    estimator = ClockEstimator(directory.probe, local_clock=clock.ms, timer=clock.ms)
    monitor = HeartbeatMonitor(directory, InMemoryEventChannel(bus), estimator, device_id="d1")
    monitor.bind(session.id, participant.id)

    record = await monitor.beat()

    assert record is not None
    assert record.status == "connected"
    assert record.latency_ms == 0.0
    assert [e.type for e in bus.published] == [SyncEventType.HEARTBEAT]
    assert bus.published[0].payload["participantId"] == participant.id


@pytest.mark.asyncio
async def test_unbound_monitor_does_nothing() -> None:
    directory = InMemorySessionDirectory()
    bus = InMemoryEventBus()
    monitor = HeartbeatMonitor(
        directory, InMemoryEventChannel(bus), ClockEstimator(directory.probe), device_id="d1"
    )

    assert await monitor.beat() is None
    assert bus.published == []


def test_silent_peers_become_stale_locally() -> None:
    monotonic = Monotonic()
    directory = InMemorySessionDirectory()
    monitor = HeartbeatMonitor(
        directory,
        InMemoryEventChannel(InMemoryEventBus()),
        ClockEstimator(directory.probe),
        device_id="d1",
        interval=3.0,
        stale_factor=3,
        monotonic=monotonic,
    )
    monitor.bind("s1", "me")
    me = SyncParticipant(id="me", session_id="s1", device_id="d1")
    peer = SyncParticipant(id="peer", session_id="s1", device_id="d2")
    monitor.observe_roster([me, peer])

    monotonic.now += 8.0
    assert monitor.stale_ids() == set()

    monotonic.now += 2.0
    assert monitor.stale_ids() == {"peer"}
    annotated = {p.id: p.status for p in monitor.annotate([me, peer])}
    assert annotated == {"me": "connected", "peer": "disconnected"}
    # Local judgement only: the record itself is untouched.
    assert peer.status == "connected"

    monitor.observe("peer")
    assert monitor.stale_ids() == set()


def test_newer_directory_heartbeat_counts_as_sign_of_life() -> None:
    monotonic = Monotonic()
    directory = InMemorySessionDirectory()
    monitor = HeartbeatMonitor(
        directory,
        InMemoryEventChannel(InMemoryEventBus()),
        ClockEstimator(directory.probe),
        device_id="d1",
        monotonic=monotonic,
    )
    monitor.bind("s1", "me")
    peer = SyncParticipant(id="peer", session_id="s1", device_id="d2")
    monitor.observe_roster([peer])

    monotonic.now += 20.0
    monitor.observe_roster([peer])
    assert monitor.stale_ids() == {"peer"}

    fresher = peer.model_copy(update={"last_heartbeat": peer.last_heartbeat + timedelta(seconds=5)})
    monitor.observe_roster([fresher])
    assert monitor.stale_ids() == set()


@pytest.mark.asyncio
async def test_heartbeat_publish_failure_is_swallowed() -> None:
    clock = SimulationClock()
    directory = InMemorySessionDirectory(clock=clock.ms)
    session = await directory.insert_session(SyncSession(sync_key="XT-HHHHHH", host_participant_id="h"))
    participant = await directory.insert_participant(
        SyncParticipant(session_id=session.id, device_id="d1"), max_participants=30
    )

    class BrokenChannel(InMemoryEventChannel):
        async def publish(self, session_id: str, event: SyncEvent) -> None:
            raise PublishError("broker down")

    monitor = HeartbeatMonitor(
        directory,
        BrokenChannel(InMemoryEventBus()),
        ClockEstimator(directory.probe, local_clock=clock.ms, timer=clock.ms),
        device_id="d1",
    )
    monitor.bind(session.id, participant.id)

    record = await monitor.beat()

    assert record is not None and record.status == "connected"
