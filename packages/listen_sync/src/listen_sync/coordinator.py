"""Session coordinator: the public API of a sync client.

One ``SessionCoordinator`` exists per client device. It mirrors the session,
roster, queue and chat locally, writes authoritative changes to the session
directory before announcing them on the event channel, applies events from
peers to the local playback transport, and owns the heartbeat and drift
correction tasks of the session it is attached to.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict

from .channel.base import EventChannel
from .chat import ChatRelay
from .clock import ClockEstimator
from .config import Settings, get_settings
from .directory.base import SessionDirectory
from .drift import DriftCorrection, DriftCorrector
from .exceptions import (
    CapacityExceededError,
    DirectoryError,
    DuplicateSyncKeyError,
    PublishError,
    RecordNotFoundError,
    SyncError,
)
from .heartbeat import HeartbeatMonitor
from .models import (
    ChatMessage,
    QueueItem,
    SessionOptions,
    SyncEvent,
    SyncEventType,
    SyncParticipant,
    SyncSession,
    SyncState,
    TrackRef,
    apply_update,
    new_id,
)
from .queue import QueueEngine
from .results import BroadcastResult, SessionResult, SyncOutcome
from .sync_key import generate_sync_key, looks_like_sync_key, normalize_sync_key
from .tasks import PeriodicTask
from .transport import PlaybackTransport

logger = logging.getLogger(__name__)

StateListener = Callable[[SyncState], None]
EventObserver = Callable[[SyncEvent], Any]
EventApplier = Callable[[SyncEvent], Awaitable[None]]


class SessionCoordinator:
    """Creates, joins and drives one synchronized listening session."""

    def __init__(
        self,
        *,
        device_id: str,
        directory: SessionDirectory,
        channel: EventChannel,
        transport: PlaybackTransport,
        user_id: str | None = None,
        display_name: str = "Guest",
        settings: Settings | None = None,
        clock: ClockEstimator | None = None,
        key_factory: Callable[[], str] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.device_id = device_id
        self.user_id = user_id
        self.display_name = display_name
        self._directory = directory
        self._channel = channel
        self._transport = transport
        self.clock = clock or ClockEstimator(
            directory.probe,
            probe_count=self.settings.latency_probe_count,
            window=self.settings.latency_window,
            default_latency_ms=self.settings.default_latency_ms,
        )
        self._key_factory = key_factory or (lambda: generate_sync_key(self.settings.sync_key_prefix))
        self.heartbeat = HeartbeatMonitor(
            directory,
            channel,
            self.clock,
            device_id=device_id,
            interval=self.settings.heartbeat_interval_seconds,
            stale_factor=self.settings.stale_heartbeat_factor,
        )
        self.drift = DriftCorrector(
            transport,
            self.clock,
            threshold=self.settings.drift_threshold_seconds,
            max_adjustment=self.settings.max_seek_adjustment_seconds,
        )
        self._queue = QueueEngine()
        self._chat = ChatRelay(self.settings.chat_history_limit)

        self._session: SyncSession | None = None
        self._participant: SyncParticipant | None = None
        self._participants: list[SyncParticipant] = []
        self._is_syncing = False
        self._heartbeat_task: PeriodicTask | None = None
        self._drift_task: PeriodicTask | None = None
        self._listeners: list[StateListener] = []
        self._observers: list[EventObserver] = []
        self._appliers: Dict[SyncEventType, EventApplier] = {
            SyncEventType.PLAY: self._apply_play,
            SyncEventType.PAUSE: self._apply_pause,
            SyncEventType.SEEK: self._apply_seek,
            SyncEventType.STOP: self._apply_stop,
            SyncEventType.SONG_CHANGE: self._apply_song_change,
            SyncEventType.HEARTBEAT: self._apply_heartbeat,
            SyncEventType.QUEUE_ADD: self._apply_queue_add,
            SyncEventType.QUEUE_REMOVE: self._apply_queue_remove,
            SyncEventType.QUEUE_REORDER: self._apply_queue_reorder,
            SyncEventType.QUEUE_CLEAR: self._apply_queue_clear,
            SyncEventType.VOTE_CAST: self._apply_vote_cast,
            SyncEventType.CHAT_MESSAGE: self._apply_chat,
            SyncEventType.REACTION: self._apply_chat,
            SyncEventType.HOST_TRANSFER: self._apply_host_transfer,
            SyncEventType.COHOST_ADD: self._apply_cohost_add,
            SyncEventType.COHOST_REMOVE: self._apply_cohost_remove,
            SyncEventType.SESSION_LOCK: self._apply_lock,
            SyncEventType.SESSION_UNLOCK: self._apply_lock,
            SyncEventType.MEMBER_KICK: self._apply_member_kick,
            SyncEventType.SESSION_END: self._apply_session_end,
        }

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def session(self) -> SyncSession | None:
        return self._session

    @property
    def participant(self) -> SyncParticipant | None:
        return self._participant

    @property
    def participants(self) -> list[SyncParticipant]:
        return self.heartbeat.annotate(self._participants)

    @property
    def queue(self) -> list[QueueItem]:
        return self._queue.items

    @property
    def chat(self) -> list[ChatMessage]:
        return self._chat.messages

    @property
    def voter_id(self) -> str:
        return self.user_id or self.device_id

    @property
    def is_connected(self) -> bool:
        return self._session is not None

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    @property
    def is_host(self) -> bool:
        return (
            self._session is not None
            and self._participant is not None
            and self._session.host_participant_id == self._participant.id
        )

    @property
    def is_cohost(self) -> bool:
        return (
            self._session is not None
            and self._participant is not None
            and self._participant.id in self._session.cohost_ids
        )

    @property
    def can_control(self) -> bool:
        if self._session is None:
            return False
        return self.is_host or self.is_cohost or not self._session.is_locked

    @property
    def tasks_running(self) -> bool:
        return any(task is not None and task.running for task in (self._heartbeat_task, self._drift_task))

    @property
    def state(self) -> SyncState:
        return SyncState(
            session=self._session,
            participant_id=self._participant.id if self._participant else None,
            participants=self.participants,
            queue=self._queue.items,
            chat=self._chat.messages,
            is_host=self.is_host,
            is_cohost=self.is_cohost,
            can_control=self.can_control,
            is_connected=self.is_connected,
            is_syncing=self._is_syncing,
        )

    def current_sync_position(self) -> float:
        """Position the session is at right now, in seconds."""

        if self._session is None:
            return 0.0
        return self._session.projected_position(self.clock.authoritative_now())

    def share_link(self) -> str | None:
        if self._session is None:
            return None
        return f"{self.settings.share_base_url.rstrip('/')}/join/{self._session.sync_key}"

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Register a state-change callback; returns a function that removes it."""

        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def on_sync_event(self, observer: EventObserver) -> Callable[[], None]:
        """Observe every accepted remote event after it has been applied."""

        self._observers.append(observer)

        def _remove() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _remove

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def create_session(self, track: TrackRef | None, options: SessionOptions | None = None) -> SessionResult:
        """Start a session as host, anchored at the local transport's position."""

        if self.user_id is None:
            return SessionResult(SyncOutcome.NOT_AUTHENTICATED)
        if track is None:
            return SessionResult(SyncOutcome.TRACK_REQUIRED)
        if self._session is not None:
            return SessionResult(SyncOutcome.ALREADY_IN_SESSION, sync_key=self._session.sync_key)
        options = options or SessionOptions()
        if options.display_name:
            self.display_name = options.display_name

        session: SyncSession | None = None
        try:
            await self.clock.measure_latency()
            participant_id = new_id()
            session = await self._insert_session(track, options, participant_id)
            if session is None:
                return SessionResult(SyncOutcome.UNAVAILABLE, detail="no unused sync key found")
            participant = await self._directory.insert_participant(
                SyncParticipant(
                    id=participant_id,
                    session_id=session.id,
                    device_id=self.device_id,
                    user_id=self.user_id,
                    display_name=self.display_name,
                    is_host=True,
                    latency_ms=self.clock.latency_ms,
                ),
                max_participants=self.settings.max_participants,
            )
            self._session = session
            self._participant = participant
            await self._attach()
        except SyncError as exc:
            logger.warning("Failed to create session: %s", exc)
            await self._teardown(delete_row=True)
            if session is not None:
                await self._discard_session(session.id)
            return SessionResult(SyncOutcome.UNAVAILABLE, detail=str(exc))

        logger.info("Created session %s with key %s", session.id, session.sync_key)
        self._notify()
        return SessionResult(SyncOutcome.OK, sync_key=session.sync_key)

    async def _insert_session(
        self, track: TrackRef, options: SessionOptions, participant_id: str
    ) -> SyncSession | None:
        playing = self._transport.is_playing
        for attempt in range(1, self.settings.sync_key_attempts + 1):
            candidate = SyncSession(
                sync_key=self._key_factory(),
                host_participant_id=participant_id,
                host_user_id=self.user_id,
                current_track=track,
                current_position=max(0.0, self._transport.position),
                is_playing=playing,
                start_timestamp=self.clock.authoritative_now() if playing else None,
                is_locked=options.is_locked,
                voting_policy=options.voting_policy,
            )
            try:
                return await self._directory.insert_session(candidate)
            except DuplicateSyncKeyError:
                logger.info("Sync key collision on attempt %d; regenerating", attempt)
        return None

    async def _discard_session(self, session_id: str) -> None:
        try:
            await self._directory.delete_session(session_id)
        except DirectoryError as exc:
            logger.warning("Failed to discard half-created session %s: %s", session_id, exc)

    async def join_session(self, sync_key: str, display_name: str | None = None) -> SessionResult:
        """Join by key, catch up with the host and report ``connected``."""

        if self._session is not None:
            return SessionResult(SyncOutcome.ALREADY_IN_SESSION, sync_key=self._session.sync_key)
        key = normalize_sync_key(sync_key)
        if not looks_like_sync_key(key):
            return SessionResult(SyncOutcome.SESSION_NOT_FOUND, sync_key=key)
        if display_name:
            self.display_name = display_name

        try:
            session = await self._directory.find_session_by_key(key)
            if session is None:
                return SessionResult(SyncOutcome.SESSION_NOT_FOUND, sync_key=key)
            if session.status == "ended":
                return SessionResult(SyncOutcome.SESSION_ENDED, sync_key=key)
            # A leftover row of this device is replaced at insert and does not count.
            members = await self._directory.list_participants(session.id)
            if sum(1 for p in members if p.device_id != self.device_id) >= self.settings.max_participants:
                return SessionResult(SyncOutcome.SESSION_FULL, sync_key=key)
            await self.clock.measure_latency()
            try:
                participant = await self._directory.insert_participant(
                    SyncParticipant(
                        session_id=session.id,
                        device_id=self.device_id,
                        user_id=self.user_id,
                        display_name=self.display_name,
                        latency_ms=self.clock.latency_ms,
                        status="syncing",
                    ),
                    max_participants=self.settings.max_participants,
                )
            except CapacityExceededError:
                return SessionResult(SyncOutcome.SESSION_FULL, sync_key=key)

            self._session = session
            self._participant = participant
            self._is_syncing = True
            await self._attach()
            if self._session is None:
                return SessionResult(SyncOutcome.UNAVAILABLE, sync_key=key, detail="Removed while joining")
            # Re-read after subscribing so changes made before the subscription are not lost.
            fresh = await self._directory.get_session(session.id)
            if fresh is None or fresh.status == "ended":
                await self._teardown(delete_row=True)
                outcome = SyncOutcome.SESSION_NOT_FOUND if fresh is None else SyncOutcome.SESSION_ENDED
                return SessionResult(outcome, sync_key=key)
            self._session = fresh
            await self.drift.catch_up(fresh)
            await self._directory.update_participant(participant.id, {"status": "connected"})
            self._is_syncing = False
            await self._refresh_roster()
        except SyncError as exc:
            logger.warning("Failed to join session %s: %s", key, exc)
            await self._teardown(delete_row=True)
            return SessionResult(SyncOutcome.UNAVAILABLE, sync_key=key, detail=str(exc))

        logger.info("Joined session %s as %s", session.id, participant.id)
        self._notify()
        return SessionResult(SyncOutcome.OK, sync_key=key)

    async def leave_session(self) -> None:
        if self._session is None:
            return
        logger.info("Leaving session %s", self._session.id)
        await self._teardown(delete_row=True)

    async def end_session(self) -> BroadcastResult:
        """Host only: mark the session ended, notify peers, then leave."""

        if not self.is_host or self._session is None:
            return BroadcastResult.denied()
        session = self._session
        try:
            await self._directory.update_session(
                session.id,
                {
                    "status": "ended",
                    "is_playing": False,
                    "start_timestamp": None,
                    "current_position": self.current_sync_position(),
                },
            )
        except SyncError as exc:
            logger.warning("Failed to end session %s: %s", session.id, exc)
            return BroadcastResult(applied=False, warning=str(exc))
        delivered, warning = await self._publish(self._event(SyncEventType.SESSION_END))
        logger.info("Ended session %s", session.id)
        await self._teardown(delete_row=True)
        return BroadcastResult(applied=True, delivered=delivered, warning=warning)

    async def close(self) -> None:
        """Release tasks, subscriptions and the channel."""

        if self._session is not None:
            await self._teardown(delete_row=True)
        await self._channel.close()

    async def _attach(self) -> None:
        assert self._session is not None and self._participant is not None
        self.heartbeat.bind(self._session.id, self._participant.id)
        await self._channel.subscribe(self._session.id, self._handle_event)
        self._heartbeat_task = PeriodicTask(
            f"heartbeat-{self.device_id}", self.settings.heartbeat_interval_seconds, self.run_heartbeat_cycle
        )
        self._drift_task = PeriodicTask(
            f"drift-{self.device_id}", self.settings.drift_check_interval_seconds, self.run_drift_cycle
        )
        self._heartbeat_task.start()
        self._drift_task.start()
        await self._refresh_roster()

    async def _teardown(self, *, delete_row: bool) -> None:
        session, participant = self._session, self._participant
        tasks = [task for task in (self._heartbeat_task, self._drift_task) if task is not None]
        self._session = None
        self._participant = None
        self._participants = []
        self._heartbeat_task = None
        self._drift_task = None
        self._is_syncing = False
        self._queue.clear()
        self._chat.clear()
        self.heartbeat.reset()

        for task in tasks:
            await task.stop()
        if session is not None:
            try:
                await self._channel.unsubscribe(session.id)
            except SyncError as exc:
                logger.warning("Failed to unsubscribe from %s: %s", session.id, exc)
        if delete_row and participant is not None:
            try:
                await self._directory.delete_participant(participant.id)
            except SyncError as exc:
                logger.warning("Failed to delete participant %s: %s", participant.id, exc)
        if session is not None:
            self._notify()

    # ------------------------------------------------------------------
    # Periodic work
    # ------------------------------------------------------------------
    async def run_heartbeat_cycle(self) -> None:
        if self._session is None:
            return
        try:
            await self.heartbeat.beat()
        except RecordNotFoundError:
            logger.info("Participant row for %s is gone; leaving", self.device_id)
            await self._teardown(delete_row=False)
            return
        await self._refresh_from_directory()

    async def run_drift_cycle(self) -> DriftCorrection | None:
        """One correction step; skipped for the host, while catching up and while paused."""

        session = self._session
        if session is None or self.is_host or self._is_syncing or not session.is_playing:
            return None
        return await self.drift.run_cycle(session)

    async def _refresh_from_directory(self) -> None:
        if self._session is None:
            return
        session = await self._directory.get_session(self._session.id)
        if session is None or session.status == "ended":
            logger.info("Session %s is gone; leaving", self._session.id)
            await self._teardown(delete_row=False)
            return
        self._session = session
        await self._refresh_roster()
        self._notify()

    async def _refresh_roster(self) -> None:
        if self._session is None or self._participant is None:
            return
        participants = await self._directory.list_participants(self._session.id)
        own = next((p for p in participants if p.id == self._participant.id), None)
        if own is None:
            logger.info("Participant %s is no longer listed; leaving", self._participant.id)
            await self._teardown(delete_row=False)
            return
        self._participant = own
        self._participants = participants
        self.heartbeat.observe_roster(participants)

    # ------------------------------------------------------------------
    # Transport control
    # ------------------------------------------------------------------
    async def broadcast_play(self, position: float) -> BroadcastResult:
        now = self.clock.authoritative_now()
        return await self._broadcast_transport(
            SyncEventType.PLAY,
            {"is_playing": True, "start_timestamp": now, "current_position": max(0.0, position)},
            timestamp=now,
            position=max(0.0, position),
        )

    async def broadcast_pause(self, position: float) -> BroadcastResult:
        return await self._broadcast_transport(
            SyncEventType.PAUSE,
            {"is_playing": False, "start_timestamp": None, "current_position": max(0.0, position)},
            position=max(0.0, position),
        )

    async def broadcast_seek(self, position: float) -> BroadcastResult:
        if self._session is None:
            return BroadcastResult.denied()
        now = self.clock.authoritative_now()
        fields: dict[str, Any] = {"current_position": max(0.0, position)}
        if self._session.is_playing:
            fields["start_timestamp"] = now
        return await self._broadcast_transport(SyncEventType.SEEK, fields, timestamp=now, position=max(0.0, position))

    async def broadcast_song_change(self, track: TrackRef, position: float = 0.0) -> BroadcastResult:
        now = self.clock.authoritative_now()
        return await self._broadcast_transport(
            SyncEventType.SONG_CHANGE,
            {
                "current_track": track,
                "current_position": max(0.0, position),
                "is_playing": True,
                "start_timestamp": now,
            },
            timestamp=now,
            position=max(0.0, position),
            track=track,
        )

    async def broadcast_stop(self) -> BroadcastResult:
        return await self._broadcast_transport(
            SyncEventType.STOP,
            {"is_playing": False, "start_timestamp": None, "current_position": 0.0},
        )

    async def _broadcast_transport(
        self,
        event_type: SyncEventType,
        fields: dict[str, Any],
        *,
        timestamp: int | None = None,
        position: float | None = None,
        track: TrackRef | None = None,
    ) -> BroadcastResult:
        if not self.can_control or self._session is None:
            return BroadcastResult.denied()
        session_id = self._session.id
        try:
            self._session = await self._directory.update_session(session_id, fields)
        except SyncError as exc:
            logger.warning("Failed to write %s for session %s: %s", event_type.value, session_id, exc)
            return BroadcastResult(applied=False, warning=str(exc))
        event = self._event(event_type, timestamp=timestamp, position=position, track=track)
        delivered, warning = await self._publish(event)
        self._notify()
        return BroadcastResult(applied=True, delivered=delivered, warning=warning)

    # ------------------------------------------------------------------
    # Host authority
    # ------------------------------------------------------------------
    async def transfer_host(self, participant_id: str) -> BroadcastResult:
        if not self.is_host or self._session is None or self._participant is None:
            return BroadcastResult.denied()
        if participant_id == self._participant.id:
            return BroadcastResult.denied()
        previous_id = self._participant.id
        session_id = self._session.id
        try:
            target = await self._directory.get_participant(participant_id)
            if target is None or target.session_id != session_id:
                return BroadcastResult(applied=False, warning=f"participant {participant_id} is not in the session")
            self._session = await self._directory.update_session(
                session_id,
                {
                    "host_participant_id": participant_id,
                    "cohost_ids": self._session.cohost_ids - {participant_id},
                },
            )
            await self._directory.update_participant(participant_id, {"is_host": True, "is_cohost": False})
            self._participant = await self._directory.update_participant(previous_id, {"is_host": False})
        except SyncError as exc:
            logger.warning("Host transfer to %s failed: %s", participant_id, exc)
            return BroadcastResult(applied=False, warning=str(exc))
        self._system_message(f"{target.display_name} is now the host")
        return await self._announce(
            SyncEventType.HOST_TRANSFER,
            {"newHostParticipantId": participant_id, "previousHostParticipantId": previous_id},
        )

    async def add_cohost(self, participant_id: str) -> BroadcastResult:
        return await self._set_cohost(participant_id, enabled=True)

    async def remove_cohost(self, participant_id: str) -> BroadcastResult:
        return await self._set_cohost(participant_id, enabled=False)

    async def _set_cohost(self, participant_id: str, *, enabled: bool) -> BroadcastResult:
        if not self.is_host or self._session is None:
            return BroadcastResult.denied()
        if participant_id == self._session.host_participant_id:
            return BroadcastResult.denied()
        cohosts = set(self._session.cohost_ids)
        if enabled:
            cohosts.add(participant_id)
        else:
            cohosts.discard(participant_id)
        try:
            self._session = await self._directory.update_session(self._session.id, {"cohost_ids": cohosts})
            await self._directory.update_participant(participant_id, {"is_cohost": enabled})
        except SyncError as exc:
            logger.warning("Cohost change for %s failed: %s", participant_id, exc)
            return BroadcastResult(applied=False, warning=str(exc))
        event_type = SyncEventType.COHOST_ADD if enabled else SyncEventType.COHOST_REMOVE
        return await self._announce(event_type, {"participantId": participant_id})

    async def lock_session(self) -> BroadcastResult:
        return await self._set_locked(True)

    async def unlock_session(self) -> BroadcastResult:
        return await self._set_locked(False)

    async def _set_locked(self, locked: bool) -> BroadcastResult:
        if not self.is_host or self._session is None:
            return BroadcastResult.denied()
        try:
            self._session = await self._directory.update_session(self._session.id, {"is_locked": locked})
        except SyncError as exc:
            logger.warning("Lock change failed: %s", exc)
            return BroadcastResult(applied=False, warning=str(exc))
        self._system_message("Session locked by host" if locked else "Session unlocked by host")
        return await self._announce(SyncEventType.SESSION_LOCK if locked else SyncEventType.SESSION_UNLOCK)

    async def kick_member(self, participant_id: str) -> BroadcastResult:
        if not self.is_host or self._session is None or self._participant is None:
            return BroadcastResult.denied()
        if participant_id == self._participant.id:
            return BroadcastResult.denied()
        kicked = next((p for p in self._participants if p.id == participant_id), None)
        try:
            await self._directory.delete_participant(participant_id)
            if participant_id in self._session.cohost_ids:
                self._session = await self._directory.update_session(
                    self._session.id, {"cohost_ids": self._session.cohost_ids - {participant_id}}
                )
        except SyncError as exc:
            logger.warning("Kick of %s failed: %s", participant_id, exc)
            return BroadcastResult(applied=False, warning=str(exc))
        self._participants = [p for p in self._participants if p.id != participant_id]
        self.heartbeat.forget(participant_id)
        self._system_message(f"{kicked.display_name if kicked else 'A listener'} was removed from the session")
        return await self._announce(SyncEventType.MEMBER_KICK, {"participantId": participant_id})

    # ------------------------------------------------------------------
    # Queue and voting
    # ------------------------------------------------------------------
    async def add_to_queue(self, track: TrackRef) -> BroadcastResult:
        if self._session is None:
            return BroadcastResult.denied()
        item = self._queue.add(track, added_by=self.voter_id, added_at=self.clock.authoritative_now())
        return await self._announce(SyncEventType.QUEUE_ADD, {"item": _dump(item)})

    async def remove_from_queue(self, item_id: str) -> BroadcastResult:
        if not self.can_control or not self._queue.remove(item_id):
            return BroadcastResult.denied()
        return await self._announce(SyncEventType.QUEUE_REMOVE, {"itemId": item_id})

    async def clear_queue(self) -> BroadcastResult:
        if not self.can_control:
            return BroadcastResult.denied()
        self._queue.clear()
        return await self._announce(SyncEventType.QUEUE_CLEAR)

    async def vote_for_song(self, item_id: str) -> BroadcastResult:
        """Count this client's vote once; under ``majority`` the deciding vote promotes the item."""

        if self._session is None:
            return BroadcastResult.denied()
        item = self._queue.vote(item_id, self.voter_id)
        if item is None:
            return BroadcastResult.denied()
        result = await self._announce(SyncEventType.VOTE_CAST, {"itemId": item_id, "voterId": self.voter_id})
        if (
            self._session is not None
            and self._session.voting_policy == "majority"
            and self._queue.order[0] != item_id
            and self._queue.has_majority(item, self._connected_count())
        ):
            order = self._queue.promote(item_id)
            logger.info("Item %s reached a majority with %d votes; promoting", item_id, item.votes)
            await self._announce(SyncEventType.QUEUE_REORDER, {"order": order})
        return result

    async def reorder_queue(self, item_id: str, new_index: int) -> BroadcastResult:
        if self._session is None:
            return BroadcastResult.denied()
        if self._session.voting_policy != "free" and not (self.is_host or self.is_cohost):
            return BroadcastResult.denied()
        order = self._queue.move(item_id, new_index)
        if order is None:
            return BroadcastResult.denied()
        return await self._announce(SyncEventType.QUEUE_REORDER, {"order": order})

    async def play_next(self) -> BroadcastResult:
        """Pop the head of the queue and switch every listener to it."""

        if not self.can_control:
            return BroadcastResult.denied()
        item = self._queue.pop_head()
        if item is None:
            return BroadcastResult.denied()
        result = await self.broadcast_song_change(item.track)
        await self._announce(SyncEventType.QUEUE_REMOVE, {"itemId": item.id})
        return result

    def _connected_count(self) -> int:
        return sum(1 for p in self.participants if p.status != "disconnected")

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------
    async def send_chat_message(self, text: str) -> BroadcastResult:
        if self._participant is None:
            return BroadcastResult.denied()
        message = self._chat.compose_text(
            sender_id=self._participant.id,
            sender_name=self.display_name,
            text=text,
            timestamp=self.clock.authoritative_now(),
        )
        if message is None:
            return BroadcastResult.denied()
        return await self._announce(SyncEventType.CHAT_MESSAGE, {"message": _dump(message)})

    async def send_reaction(self, emoji: str) -> BroadcastResult:
        if self._participant is None:
            return BroadcastResult.denied()
        message = self._chat.compose_reaction(
            sender_id=self._participant.id,
            sender_name=self.display_name,
            emoji=emoji,
            timestamp=self.clock.authoritative_now(),
        )
        if message is None:
            return BroadcastResult.denied()
        return await self._announce(SyncEventType.REACTION, {"reaction": _dump(message)})

    def _system_message(self, text: str) -> None:
        self._chat.system(text, timestamp=self.clock.authoritative_now())

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------
    def _event(
        self,
        event_type: SyncEventType,
        *,
        timestamp: int | None = None,
        position: float | None = None,
        track: TrackRef | None = None,
        payload: dict[str, Any] | None = None,
    ) -> SyncEvent:
        assert self._session is not None
        return SyncEvent(
            session_id=self._session.id,
            type=event_type,
            timestamp=timestamp if timestamp is not None else self.clock.authoritative_now(),
            position=position,
            track=track,
            payload=payload or {},
            sender_device_id=self.device_id,
        )

    async def _announce(self, event_type: SyncEventType, payload: dict[str, Any] | None = None) -> BroadcastResult:
        if self._session is None:
            return BroadcastResult.denied()
        delivered, warning = await self._publish(self._event(event_type, payload=payload))
        self._notify()
        return BroadcastResult(applied=True, delivered=delivered, warning=warning)

    async def _publish(self, event: SyncEvent) -> tuple[bool, str | None]:
        try:
            await self._directory.insert_event(event)
        except SyncError as exc:
            logger.debug("Event %s not recorded: %s", event.id, exc)
        try:
            await self._channel.publish(event.session_id, event)
        except PublishError as exc:
            logger.warning("Publish of %s failed; directory state is already written: %s", event.type.value, exc)
            return False, str(exc)
        return True, None

    def _notify(self) -> None:
        if not self._listeners:
            return
        state = self.state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:  # pylint: disable=broad-except
                logger.exception("State listener failed")

    # ------------------------------------------------------------------
    # Remote events
    # ------------------------------------------------------------------
    async def _handle_event(self, event: SyncEvent) -> None:
        if self._session is None or event.session_id != self._session.id:
            return
        if event.sender_device_id == self.device_id:
            return
        sender = next((p for p in self._participants if p.device_id == event.sender_device_id), None)
        if sender is not None:
            self.heartbeat.observe(sender.id)
        applier = self._appliers.get(event.type)
        if applier is not None:
            try:
                await applier(event)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Malformed %s event %s: %s", event.type.value, event.id, exc)
                return
        for observer in list(self._observers):
            try:
                outcome = observer(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:  # pylint: disable=broad-except
                logger.exception("Sync event observer failed")
        self._notify()

    def _mirror(self, fields: dict[str, Any]) -> SyncSession | None:
        if self._session is None:
            return None
        self._session = apply_update(self._session, fields)
        return self._session

    async def _apply_play(self, event: SyncEvent) -> None:
        session = self._mirror(
            {"is_playing": True, "start_timestamp": event.timestamp, "current_position": event.position or 0.0}
        )
        if session is None or self._is_syncing:
            return
        await self._transport.seek(self.drift.target_position(session))
        await self._transport.resume()

    async def _apply_pause(self, event: SyncEvent) -> None:
        session = self._mirror(
            {"is_playing": False, "start_timestamp": None, "current_position": event.position or 0.0}
        )
        if session is None or self._is_syncing:
            return
        await self._transport.seek(session.current_position)
        await self._transport.pause()

    async def _apply_seek(self, event: SyncEvent) -> None:
        assert self._session is not None
        fields: dict[str, Any] = {"current_position": event.position or 0.0}
        if self._session.is_playing:
            fields["start_timestamp"] = event.timestamp
        session = self._mirror(fields)
        if session is None or self._is_syncing:
            return
        await self._transport.seek(self.drift.target_position(session))

    async def _apply_stop(self, event: SyncEvent) -> None:
        self._mirror({"is_playing": False, "start_timestamp": None, "current_position": 0.0})
        if not self._is_syncing:
            await self._transport.stop()

    async def _apply_song_change(self, event: SyncEvent) -> None:
        session = self._mirror(
            {
                "current_track": event.track,
                "current_position": event.position or 0.0,
                "is_playing": True,
                "start_timestamp": event.timestamp,
            }
        )
        if session is None or self._is_syncing:
            return
        await self.drift.catch_up(session)

    async def _apply_heartbeat(self, event: SyncEvent) -> None:
        participant_id = event.payload["participantId"]
        self.heartbeat.observe(participant_id)
        latency = event.payload.get("latencyMs")
        if latency is not None:
            self._participants = [
                p.model_copy(update={"latency_ms": float(latency), "status": "connected"}) if p.id == participant_id else p
                for p in self._participants
            ]

    async def _apply_queue_add(self, event: SyncEvent) -> None:
        self._queue.insert(QueueItem.model_validate(event.payload["item"]))

    async def _apply_queue_remove(self, event: SyncEvent) -> None:
        self._queue.remove(event.payload["itemId"])

    async def _apply_queue_reorder(self, event: SyncEvent) -> None:
        self._queue.reorder(event.payload["order"])

    async def _apply_queue_clear(self, event: SyncEvent) -> None:
        self._queue.clear()

    async def _apply_vote_cast(self, event: SyncEvent) -> None:
        self._queue.vote(event.payload["itemId"], event.payload["voterId"])

    async def _apply_chat(self, event: SyncEvent) -> None:
        key = "reaction" if event.type is SyncEventType.REACTION else "message"
        self._chat.append(ChatMessage.model_validate(event.payload[key]))

    async def _apply_host_transfer(self, event: SyncEvent) -> None:
        new_host = event.payload["newHostParticipantId"]
        session = self._mirror(
            {"host_participant_id": new_host, "cohost_ids": (self._session.cohost_ids if self._session else set()) - {new_host}}
        )
        if session is None:
            return
        self._participants = [
            p.model_copy(update={"is_host": p.id == new_host, "is_cohost": p.id in session.cohost_ids})
            for p in self._participants
        ]
        if self._participant is not None:
            self._participant = self._participant.model_copy(
                update={"is_host": self._participant.id == new_host, "is_cohost": self._participant.id in session.cohost_ids}
            )
        name = next((p.display_name for p in self._participants if p.id == new_host), "A listener")
        self._system_message(f"{name} is now the host")

    async def _apply_cohost_add(self, event: SyncEvent) -> None:
        await self._apply_cohost(event.payload["participantId"], enabled=True)

    async def _apply_cohost_remove(self, event: SyncEvent) -> None:
        await self._apply_cohost(event.payload["participantId"], enabled=False)

    async def _apply_cohost(self, participant_id: str, *, enabled: bool) -> None:
        if self._session is None:
            return
        cohosts = set(self._session.cohost_ids)
        if enabled:
            cohosts.add(participant_id)
        else:
            cohosts.discard(participant_id)
        self._mirror({"cohost_ids": cohosts})
        self._participants = [
            p.model_copy(update={"is_cohost": enabled}) if p.id == participant_id else p for p in self._participants
        ]
        if self._participant is not None and self._participant.id == participant_id:
            self._participant = self._participant.model_copy(update={"is_cohost": enabled})

    async def _apply_lock(self, event: SyncEvent) -> None:
        locked = event.type is SyncEventType.SESSION_LOCK
        self._mirror({"is_locked": locked})
        self._system_message("Session locked by host" if locked else "Session unlocked by host")

    async def _apply_member_kick(self, event: SyncEvent) -> None:
        participant_id = event.payload["participantId"]
        if self._participant is not None and participant_id == self._participant.id:
            logger.info("Removed from session %s by the host", event.session_id)
            await self._teardown(delete_row=False)
            return
        kicked = next((p for p in self._participants if p.id == participant_id), None)
        self._participants = [p for p in self._participants if p.id != participant_id]
        self.heartbeat.forget(participant_id)
        self._system_message(f"{kicked.display_name if kicked else 'A listener'} was removed from the session")

    async def _apply_session_end(self, event: SyncEvent) -> None:
        logger.info("Session %s ended by the host", event.session_id)
        await self._teardown(delete_row=False)


def _dump(record: QueueItem | ChatMessage) -> dict[str, Any]:
    return record.model_dump(mode="json", by_alias=True)
