"""Participant liveness reporting and local staleness judgement."""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable, Dict, Iterable

from .channel.base import EventChannel
from .clock import ClockEstimator
from .directory.base import SessionDirectory
from .exceptions import PublishError
from .models import SyncEvent, SyncEventType, SyncParticipant

logger = logging.getLogger(__name__)


class HeartbeatMonitor:
    """Writes this client's liveness record and tracks when peers were last heard.

    Staleness is advisory: a peer silent for ``interval * stale_factor``
    seconds is shown as ``disconnected`` locally, while the directory's
    participant set only changes on explicit leave or kick.
    """

    def __init__(
        self,
        directory: SessionDirectory,
        channel: EventChannel,
        clock: ClockEstimator,
        *,
        device_id: str,
        interval: float = 3.0,
        stale_factor: int = 3,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._directory = directory
        self._channel = channel
        self._clock = clock
        self._device_id = device_id
        self._interval = interval
        self._stale_factor = stale_factor
        self._monotonic = monotonic
        self._session_id: str | None = None
        self._participant_id: str | None = None
        self._last_seen: Dict[str, float] = {}
        self._last_reported: Dict[str, datetime] = {}

    @property
    def stale_after(self) -> float:
        return self._interval * self._stale_factor

    def bind(self, session_id: str, participant_id: str) -> None:
        self.reset()
        self._session_id = session_id
        self._participant_id = participant_id

    def reset(self) -> None:
        self._session_id = None
        self._participant_id = None
        self._last_seen.clear()
        self._last_reported.clear()

    async def beat(self) -> SyncParticipant | None:
        """Re-measure latency, persist it, and announce liveness to peers."""

        if self._session_id is None or self._participant_id is None:
            return None
        latency = await self._clock.measure_latency()
        record = await self._directory.record_heartbeat(self._participant_id, latency_ms=latency)
        event = SyncEvent(
            session_id=self._session_id,
            type=SyncEventType.HEARTBEAT,
            timestamp=self._clock.authoritative_now(),
            payload={"participantId": self._participant_id, "latencyMs": latency},
            sender_device_id=self._device_id,
        )
        try:
            await self._channel.publish(self._session_id, event)
        except PublishError as exc:
            logger.warning("Heartbeat notification dropped: %s", exc)
        return record

    def observe(self, participant_id: str, at: float | None = None) -> None:
        self._last_seen[participant_id] = at if at is not None else self._monotonic()

    def observe_roster(self, participants: Iterable[SyncParticipant]) -> None:
        """Count a newer directory ``lastHeartbeat`` as a sign of life."""

        for participant in participants:
            previous = self._last_reported.get(participant.id)
            if previous is None or participant.last_heartbeat > previous:
                self._last_reported[participant.id] = participant.last_heartbeat
                self.observe(participant.id)

    def forget(self, participant_id: str) -> None:
        self._last_seen.pop(participant_id, None)
        self._last_reported.pop(participant_id, None)

    def stale_ids(self, now: float | None = None) -> set[str]:
        current = now if now is not None else self._monotonic()
        return {
            participant_id
            for participant_id, seen in self._last_seen.items()
            if participant_id != self._participant_id and current - seen > self.stale_after
        }

    def annotate(self, participants: Iterable[SyncParticipant], now: float | None = None) -> list[SyncParticipant]:
        """Return the roster with stale peers shown as ``disconnected``."""

        stale = self.stale_ids(now)
        return [
            p.model_copy(update={"status": "disconnected"}) if p.id in stale else p
            for p in participants
        ]
