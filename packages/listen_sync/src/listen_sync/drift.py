"""Bounded drift correction toward the host's projected position."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from .clock import ClockEstimator
from .models import SyncSession
from .transport import PlaybackTransport

logger = logging.getLogger(__name__)


class DriftState(str, Enum):
    IDLE = "idle"
    CORRECTING = "correcting"


@dataclass(frozen=True)
class DriftCorrection:
    target: float
    local: float
    drift: float
    adjustment: float

    @property
    def corrected(self) -> bool:
        return self.adjustment > 0


def corrective_step(local: float, target: float, *, threshold: float, max_adjustment: float) -> float:
    """Signed position change for one cycle; ``0.0`` when within ``threshold``.

    The step never overshoots ``target`` and never exceeds ``max_adjustment``.
    """

    drift = abs(target - local)
    if drift <= threshold:
        return 0.0
    step = min(drift, max_adjustment)
    return step if target > local else -step


class DriftCorrector:
    """Compares the local transport with the authoritative position."""

    def __init__(
        self,
        transport: PlaybackTransport,
        clock: ClockEstimator,
        *,
        threshold: float = 0.5,
        max_adjustment: float = 2.0,
    ) -> None:
        self._transport = transport
        self._clock = clock
        self.threshold = threshold
        self.max_adjustment = max_adjustment
        self.state = DriftState.IDLE
        self.history: list[DriftCorrection] = []

    def target_position(self, session: SyncSession) -> float:
        return session.projected_position(self._clock.authoritative_now())

    async def run_cycle(self, session: SyncSession) -> DriftCorrection:
        target = self.target_position(session)
        local = self._transport.position
        step = corrective_step(local, target, threshold=self.threshold, max_adjustment=self.max_adjustment)
        correction = DriftCorrection(target=target, local=local, drift=abs(target - local), adjustment=abs(step))
        if step:
            self.state = DriftState.CORRECTING
            try:
                logger.info(
                    "Drift correction: drift=%.3fs adjusting %.3fs to %.3fs",
                    correction.drift,
                    step,
                    local + step,
                )
                await self._transport.seek(local + step)
            finally:
                self.state = DriftState.IDLE
        self.history.append(correction)
        del self.history[:-50]
        return correction

    async def catch_up(self, session: SyncSession, *, load_track: bool = True) -> float:
        """Uncapped alignment used on join and track change; returns the target."""

        if load_track and session.current_track is not None:
            await self._transport.play(session.current_track)
        target = self.target_position(session)
        await self._transport.seek(target)
        if session.is_playing:
            await self._transport.resume()
        else:
            await self._transport.pause()
        logger.info("Catch-up seek to %.3fs (playing=%s)", target, session.is_playing)
        return target
