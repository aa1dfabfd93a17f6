"""Playback transport contract and a clock-driven simulated player."""

from __future__ import annotations

import time
from typing import Callable, Protocol, runtime_checkable

from .models import TrackRef


@runtime_checkable
class PlaybackTransport(Protocol):
    """The only surface of the media player the sync engine touches."""

    @property
    def position(self) -> float: ...

    @property
    def is_playing(self) -> bool: ...

    async def play(self, track: TrackRef) -> None: ...

    async def pause(self) -> None: ...

    async def resume(self) -> None: ...

    async def seek(self, seconds: float) -> None: ...

    async def stop(self) -> None: ...


class SimulatedTransport:
    """Virtual player whose position advances with ``clock`` while playing.

    ``rate`` lets a simulation model a device that runs slightly fast or slow.
    Every seek is recorded in ``seeks`` for inspection.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic, rate: float = 1.0) -> None:
        self._clock = clock
        self.rate = rate
        self.track: TrackRef | None = None
        self._anchor_position = 0.0
        self._anchor_time: float | None = None
        self.seeks: list[float] = []

    @property
    def position(self) -> float:
        if self._anchor_time is None:
            return self._anchor_position
        elapsed = (self._clock() - self._anchor_time) * self.rate
        position = self._anchor_position + elapsed
        if self.track and self.track.duration_seconds is not None:
            position = min(position, self.track.duration_seconds)
        return position

    @property
    def is_playing(self) -> bool:
        return self._anchor_time is not None

    async def play(self, track: TrackRef) -> None:
        self.track = track
        self._anchor_position = 0.0
        self._anchor_time = self._clock()

    async def pause(self) -> None:
        self._anchor_position = self.position
        self._anchor_time = None

    async def resume(self) -> None:
        if self._anchor_time is None and self.track is not None:
            self._anchor_time = self._clock()

    async def seek(self, seconds: float) -> None:
        target = max(0.0, seconds)
        self.seeks.append(target)
        self._anchor_position = target
        if self._anchor_time is not None:
            self._anchor_time = self._clock()

    async def stop(self) -> None:
        self._anchor_position = 0.0
        self._anchor_time = None
