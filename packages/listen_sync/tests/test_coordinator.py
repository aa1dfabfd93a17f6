from __future__ import annotations

import pytest

from listen_sync.channel import InMemoryEventChannel
from listen_sync.config import Settings
from listen_sync.exceptions import PublishError
from listen_sync.models import SessionOptions, SyncEvent, SyncEventType, SyncState, TrackRef
from listen_sync.results import SyncOutcome


class FailingChannel(InMemoryEventChannel):
    async def publish(self, session_id: str, event: SyncEvent) -> None:
        raise PublishError("broker down")


async def _join(world, device_id: str, sync_key: str, **kwargs):
    coordinator, transport = world.client(device_id, **kwargs)
    result = await coordinator.join_session(sync_key)
    assert result.outcome is SyncOutcome.OK
    return coordinator, transport


@pytest.mark.asyncio
async def test_end_to_end_host_and_listener(world, track: TrackRef) -> None:
    host, host_transport, created = await world.host(track)
    assert created.outcome is SyncOutcome.OK
    assert created.sync_key is not None and created.sync_key.startswith("XT-")
    assert host.is_host and host.can_control

    world.clock.advance(30.0)
    listener, listener_transport = await _join(world, "listener-1", created.sync_key.lower())

    # Uncapped catch-up on join.
    assert listener_transport.track == track
    assert listener_transport.position == pytest.approx(30.0)
    assert listener.participant is not None and listener.participant.status == "connected"
    assert not listener.is_syncing
    assert {p.device_id for p in host.participants} >= {"host-device"}

    await host_transport.pause()
    result = await host.broadcast_pause(host_transport.position)
    assert result.applied and result.delivered
    assert not listener_transport.is_playing
    assert listener_transport.position == pytest.approx(30.0)
    stored = await world.directory.get_session(host.session.id)  # type: ignore[union-attr]
    assert stored is not None and not stored.is_playing and stored.start_timestamp is None

    world.clock.advance(10.0)
    await host_transport.resume()
    await host.broadcast_play(host_transport.position)
    world.clock.advance(5.0)
    assert listener_transport.is_playing
    assert listener_transport.position == pytest.approx(35.0)
    assert listener.current_sync_position() == pytest.approx(35.0)

    await host_transport.seek(100.0)
    await host.broadcast_seek(100.0)
    assert listener_transport.position == pytest.approx(100.0)

    next_track = TrackRef(id="yt:next", title="Second Song", duration_seconds=200.0)
    await host_transport.play(next_track)
    await host.broadcast_song_change(next_track)
    assert listener_transport.track == next_track
    assert listener_transport.position == pytest.approx(0.0)
    assert listener.session is not None and listener.session.current_track == next_track

    await listener.send_chat_message("hello there")
    assert [m.text for m in host.chat] == ["hello there"]

    ended = await host.end_session()
    assert ended.applied
    assert host.session is None
    assert listener.session is None
    assert not listener.tasks_running
    assert not host.tasks_running


@pytest.mark.asyncio
async def test_create_session_failures(world, track: TrackRef) -> None:
    anonymous, _ = world.client("anon-device")
    assert (await anonymous.create_session(track)).outcome is SyncOutcome.NOT_AUTHENTICATED

    signed_in, _ = world.client("device-2", user_id="u2")
    assert (await signed_in.create_session(None)).outcome is SyncOutcome.TRACK_REQUIRED

    host, _, created = await world.host(track)
    assert created.ok
    assert (await host.create_session(track)).outcome is SyncOutcome.ALREADY_IN_SESSION


@pytest.mark.asyncio
async def test_sync_key_collision_is_retried(world, track: TrackRef) -> None:
    _, _, first = await world.host(track)
    assert first.sync_key is not None
    keys = iter([first.sync_key, first.sync_key, "XT-FRESHK"])
    second, _ = world.client("second-host", user_id="u2", key_factory=lambda: next(keys))

    result = await second.create_session(track)

    assert result.ok
    assert result.sync_key == "XT-FRESHK"


@pytest.mark.asyncio
async def test_sync_key_exhaustion_reports_unavailable(world, track: TrackRef) -> None:
    _, _, first = await world.host(track)
    taken = first.sync_key
    second, _ = world.client("second-host", user_id="u2", key_factory=lambda: taken)

    result = await second.create_session(track)

    assert result.outcome is SyncOutcome.UNAVAILABLE
    assert second.session is None


@pytest.mark.asyncio
async def test_join_failures(make_world, track: TrackRef) -> None:
    world = make_world(
        Settings(heartbeat_interval_seconds=3600.0, drift_check_interval_seconds=3600.0, max_participants=2)
    )
    host, _, created = await world.host(track)

    stranger, _ = world.client("stranger")
    assert (await stranger.join_session("not-a-key")).outcome is SyncOutcome.SESSION_NOT_FOUND
    assert (await stranger.join_session("XT-ZZZZZZ")).outcome is SyncOutcome.SESSION_NOT_FOUND

    await _join(world, "listener-1", created.sync_key)
    full = await stranger.join_session(created.sync_key)
    assert full.outcome is SyncOutcome.SESSION_FULL
    assert stranger.session is None
    assert await world.directory.count_participants(host.session.id) == 2  # type: ignore[union-attr]

    await host.end_session()
    late, _ = world.client("late")
    assert (await late.join_session(created.sync_key)).outcome is SyncOutcome.SESSION_ENDED
    assert late.session is None


@pytest.mark.asyncio
async def test_join_catch_up_sees_pause_made_before_subscribing(
    world, track: TrackRef, monkeypatch: pytest.MonkeyPatch
) -> None:
    host, _, created = await world.host(track)
    world.clock.advance(20.0)
    insert = world.directory.insert_participant

    async def insert_then_pause(participant, *, max_participants):
        stored = await insert(participant, max_participants=max_participants)
        # The host pauses after the row exists but before the listener subscribes.
        await host.broadcast_pause(42.0)
        return stored

    monkeypatch.setattr(world.directory, "insert_participant", insert_then_pause)
    listener, listener_transport = await _join(world, "listener-1", created.sync_key)

    assert listener.session is not None and not listener.session.is_playing
    assert not listener_transport.is_playing
    assert listener_transport.position == pytest.approx(42.0)


@pytest.mark.asyncio
async def test_crashed_device_can_rejoin_full_session(make_world, track: TrackRef) -> None:
    world = make_world(
        Settings(heartbeat_interval_seconds=3600.0, drift_check_interval_seconds=3600.0, max_participants=2)
    )
    host, _, created = await world.host(track)
    await _join(world, "listener-1", created.sync_key)

    # Same device comes back without having left; its old row is replaced.
    again, _ = await _join(world, "listener-1", created.sync_key)

    assert again.participant is not None
    assert await world.directory.count_participants(host.session.id) == 2  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_self_echo_is_suppressed(world, track: TrackRef) -> None:
    host, _, created = await world.host(track)
    listener, _ = await _join(world, "listener-1", created.sync_key)
    host_seen: list[SyncEventType] = []
    listener_seen: list[SyncEventType] = []
    host.on_sync_event(lambda event: host_seen.append(event.type))
    listener.on_sync_event(lambda event: listener_seen.append(event.type))

    await host.broadcast_seek(12.0)
    await listener.send_reaction("🔥")

    assert host_seen == [SyncEventType.REACTION]
    assert listener_seen == [SyncEventType.SEEK]


@pytest.mark.asyncio
async def test_locked_session_rejects_listener_control(world, track: TrackRef) -> None:
    host, host_transport, created = await world.host(track, SessionOptions(is_locked=True))
    listener, _ = await _join(world, "listener-1", created.sync_key)
    assert not listener.can_control

    denied = await listener.broadcast_play(55.0)
    assert not denied.applied
    stored = await world.directory.get_session(host.session.id)  # type: ignore[union-attr]
    assert stored is not None and stored.current_position == 0.0

    assert not (await listener.transfer_host(listener.participant.id)).applied  # type: ignore[union-attr]
    assert not (await listener.lock_session()).applied
    assert not (await listener.kick_member(host.participant.id)).applied  # type: ignore[union-attr]
    assert not (await listener.end_session()).applied
    assert host.is_host

    await host.add_cohost(listener.participant.id)  # type: ignore[union-attr]
    assert listener.is_cohost and listener.can_control

    applied = await listener.broadcast_seek(80.0)
    assert applied.applied
    # The host follows transport changes made by a cohost.
    assert host_transport.position == pytest.approx(80.0)

    await host.remove_cohost(listener.participant.id)  # type: ignore[union-attr]
    assert not listener.can_control


@pytest.mark.asyncio
async def test_unlocked_session_lets_anyone_control(world, track: TrackRef) -> None:
    host, host_transport, created = await world.host(track)
    listener, _ = await _join(world, "listener-1", created.sync_key)

    assert listener.can_control
    assert (await listener.broadcast_seek(42.0)).applied
    assert host_transport.position == pytest.approx(42.0)

    await host.lock_session()
    assert listener.session is not None and listener.session.is_locked
    assert not listener.can_control
    assert any(m.type == "system" for m in listener.chat)

    await host.unlock_session()
    assert listener.can_control


@pytest.mark.asyncio
async def test_transfer_host_updates_directory_and_peers(world, track: TrackRef) -> None:
    host, _, created = await world.host(track)
    listener, _ = await _join(world, "listener-1", created.sync_key, display_name="Bea")
    new_host_id = listener.participant.id  # type: ignore[union-attr]

    result = await host.transfer_host(new_host_id)

    assert result.applied
    stored = await world.directory.get_session(listener.session.id)  # type: ignore[union-attr]
    assert stored is not None and stored.host_participant_id == new_host_id
    assert listener.is_host
    assert not host.is_host
    assert (await world.directory.get_participant(new_host_id)).is_host  # type: ignore[union-attr]
    assert any("Bea is now the host" == m.text for m in host.chat)
    assert any("Bea is now the host" == m.text for m in listener.chat)
    # The former host can no longer act as host.
    assert not (await host.kick_member(new_host_id)).applied


@pytest.mark.asyncio
async def test_kicked_member_is_torn_down(world, track: TrackRef) -> None:
    host, _, created = await world.host(track)
    listener, _ = await _join(world, "listener-1", created.sync_key)
    kicked_id = listener.participant.id  # type: ignore[union-attr]

    result = await host.kick_member(kicked_id)

    assert result.applied
    assert listener.session is None
    assert not listener.tasks_running
    assert await world.directory.get_participant(kicked_id) is None
    assert all(p.id != kicked_id for p in host.participants)


@pytest.mark.asyncio
async def test_majority_vote_promotes_item(world, track: TrackRef) -> None:
    host, _, created = await world.host(track, SessionOptions(voting_policy="majority"))
    first, _ = await _join(world, "listener-1", created.sync_key)
    second, _ = await _join(world, "listener-2", created.sync_key)
    # Rosters come from the directory; the deciding voter sees all three members.
    await second.run_heartbeat_cycle()

    await host.add_to_queue(TrackRef(id="a", title="A"))
    await host.add_to_queue(TrackRef(id="b", title="B"))
    item_a, item_b = (item.id for item in host.queue)

    assert (await first.vote_for_song(item_b)).applied
    assert not (await first.vote_for_song(item_b)).applied
    assert [i.id for i in second.queue] == [item_a, item_b]

    await second.vote_for_song(item_b)

    for client in (host, first, second):
        assert [i.id for i in client.queue] == [item_b, item_a]
        assert client.queue[0].votes == 2


@pytest.mark.asyncio
async def test_queue_controls_follow_policy(world, track: TrackRef) -> None:
    host, _, created = await world.host(track, SessionOptions(voting_policy="host_override", is_locked=True))
    listener, listener_transport = await _join(world, "listener-1", created.sync_key)

    await listener.add_to_queue(TrackRef(id="a", title="A"))
    await listener.add_to_queue(TrackRef(id="b", title="B"))
    item_a, item_b = (item.id for item in host.queue)

    assert not (await listener.reorder_queue(item_b, 0)).applied
    assert not (await listener.remove_from_queue(item_a)).applied
    assert not (await listener.clear_queue()).applied
    assert not (await listener.play_next()).applied

    assert (await host.reorder_queue(item_b, 0)).applied
    assert [i.id for i in listener.queue] == [item_b, item_a]

    assert (await host.play_next()).applied
    assert listener_transport.track is not None and listener_transport.track.id == "b"
    assert [i.id for i in listener.queue] == [item_a]

    await host.clear_queue()
    assert listener.queue == []


@pytest.mark.asyncio
async def test_publish_failure_is_a_warning(world, track: TrackRef) -> None:
    host, _ = world.client("host-device", user_id="host-user", channel=FailingChannel(world.bus))
    created = await host.create_session(track)
    assert created.ok

    result = await host.broadcast_seek(64.0)

    assert result.applied
    assert not result.delivered
    assert result.warning is not None and "broker down" in result.warning
    stored = await world.directory.get_session(host.session.id)  # type: ignore[union-attr]
    assert stored is not None and stored.current_position == 64.0


@pytest.mark.asyncio
async def test_leave_cancels_tasks_and_is_idempotent(world, track: TrackRef) -> None:
    host, _, created = await world.host(track)
    listener, _ = await _join(world, "listener-1", created.sync_key)
    session_id = listener.session.id  # type: ignore[union-attr]
    assert listener.tasks_running

    await listener.leave_session()
    await listener.leave_session()

    assert not listener.tasks_running
    assert listener.session is None
    assert listener.queue == [] and listener.chat == []
    assert await world.directory.count_participants(session_id) == 1
    assert world.bus.subscriber_count(session_id) == 1


@pytest.mark.asyncio
async def test_heartbeat_cycle_leaves_ended_session(world, track: TrackRef) -> None:
    host, _, created = await world.host(track)
    listener, _ = await _join(world, "listener-1", created.sync_key)
    listener_id = listener.participant.id  # type: ignore[union-attr]

    world.clock.advance(3.0)
    await listener.run_heartbeat_cycle()
    assert host.heartbeat.stale_ids() == set()
    assert listener.session is not None
    row = await world.directory.get_participant(listener_id)
    assert row is not None and row.latency_ms == 0.0

    # The end notification is lost; the next refresh notices the directory state.
    await world.directory.update_session(host.session.id, {"status": "ended"})  # type: ignore[union-attr]
    await listener.run_heartbeat_cycle()

    assert listener.session is None
    assert not listener.tasks_running


@pytest.mark.asyncio
async def test_heartbeat_cycle_leaves_when_row_is_gone(world, track: TrackRef) -> None:
    _, _, created = await world.host(track)
    listener, _ = await _join(world, "listener-1", created.sync_key)

    # The kick notification is lost; only the directory row disappears.
    await world.directory.delete_participant(listener.participant.id)  # type: ignore[union-attr]
    await listener.run_heartbeat_cycle()

    assert listener.session is None
    assert not listener.tasks_running


@pytest.mark.asyncio
async def test_drift_cycle_skips_host_and_corrects_listener(world, track: TrackRef) -> None:
    host, _, created = await world.host(track)
    listener, listener_transport = await _join(world, "listener-1", created.sync_key)
    await listener_transport.seek(listener_transport.position + 5.0)

    world.clock.advance(2.0)
    assert await host.run_drift_cycle() is None
    correction = await listener.run_drift_cycle()

    assert correction is not None and correction.adjustment == pytest.approx(2.0)
    assert abs(listener.current_sync_position() - listener_transport.position) == pytest.approx(3.0)


@pytest.mark.asyncio
async def test_state_listeners_and_share_link(world, track: TrackRef) -> None:
    host, _, created = await world.host(track)
    states: list[SyncState] = []
    remove = host.add_listener(states.append)

    await host.broadcast_seek(5.0)
    assert states and states[-1].is_host and states[-1].session is not None
    seen = len(states)

    remove()
    await host.broadcast_seek(6.0)
    assert len(states) == seen
    assert host.share_link() == f"https://listen.example.com/join/{created.sync_key}"


@pytest.mark.asyncio
async def test_blank_chat_is_not_sent(world, track: TrackRef) -> None:
    host, _, _ = await world.host(track)

    assert not (await host.send_chat_message("   ")).applied
    assert host.chat == []
