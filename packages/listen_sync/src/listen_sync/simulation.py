"""In-process host/listener simulation on a virtual clock."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .channel.memory import InMemoryEventBus, InMemoryEventChannel
from .clock import ClockEstimator
from .config import Settings, get_settings
from .coordinator import SessionCoordinator
from .directory.memory import InMemorySessionDirectory
from .models import TrackRef
from .transport import SimulatedTransport

logger = logging.getLogger(__name__)

SIMULATION_TRACK = TrackRef(id="sim-track", title="Simulation", duration_seconds=600.0)


class SimulationClock:
    """Shared virtual wall clock; nothing moves until ``advance`` is called."""

    def __init__(self, start_ms: float = 1_700_000_000_000.0) -> None:
        self._now_ms = start_ms

    def ms(self) -> float:
        return self._now_ms

    def seconds(self) -> float:
        return self._now_ms / 1000.0

    def advance(self, seconds: float) -> None:
        self._now_ms += seconds * 1000.0


@dataclass
class SimulationReport:
    sync_key: str
    threshold: float
    max_adjustment: float
    drift_by_cycle: list[list[float]] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return bool(self.drift_by_cycle) and all(d <= self.threshold for d in self.drift_by_cycle[-1])


async def run_simulation(
    *,
    listeners: int = 3,
    initial_drift: float = 5.0,
    cycles: int = 5,
    rate_skew: float = 0.0,
    settings: Settings | None = None,
) -> SimulationReport:
    """Run a host and ``listeners`` followers; listener ``i`` starts ``±initial_drift`` off.

    Periodic tasks are parked on a long interval and the drift cycle is driven
    explicitly, one step per ``drift_check_interval_seconds`` of virtual time.
    """

    base = settings or get_settings()
    step = base.drift_check_interval_seconds
    parked = base.model_copy(update={"heartbeat_interval_seconds": 3600.0, "drift_check_interval_seconds": 3600.0})

    clock = SimulationClock()
    directory = InMemorySessionDirectory(
        session_ttl_seconds=parked.session_ttl_seconds,
        event_history_limit=parked.event_history_limit,
        clock=clock.ms,
    )
    bus = InMemoryEventBus()

    def _coordinator(device_id: str, user_id: str, transport: SimulatedTransport) -> SessionCoordinator:
        estimator = ClockEstimator(
            directory.probe,
            probe_count=parked.latency_probe_count,
            window=parked.latency_window,
            default_latency_ms=parked.default_latency_ms,
            local_clock=clock.ms,
            timer=clock.ms,
        )
        return SessionCoordinator(
            device_id=device_id,
            user_id=user_id,
            display_name=device_id,
            directory=directory,
            channel=InMemoryEventChannel(bus),
            transport=transport,
            settings=parked,
            clock=estimator,
        )

    host_transport = SimulatedTransport(clock=clock.seconds)
    host = _coordinator("host-device", "host", host_transport)
    await host_transport.play(SIMULATION_TRACK)
    created = await host.create_session(SIMULATION_TRACK)
    if not created.ok or created.sync_key is None:
        raise RuntimeError(f"Simulation could not create a session: {created.outcome.value}")
    clock.advance(30.0)

    followers: list[tuple[SessionCoordinator, SimulatedTransport]] = []
    for index in range(listeners):
        sign = 1 if index % 2 == 0 else -1
        transport = SimulatedTransport(clock=clock.seconds, rate=1.0 + sign * rate_skew)
        follower = _coordinator(f"listener-{index + 1}", f"user-{index + 1}", transport)
        joined = await follower.join_session(created.sync_key)
        if not joined.ok:
            raise RuntimeError(f"Listener {index + 1} could not join: {joined.outcome.value}")
        await transport.seek(transport.position + sign * initial_drift)
        followers.append((follower, transport))

    report = SimulationReport(
        sync_key=created.sync_key,
        threshold=parked.drift_threshold_seconds,
        max_adjustment=parked.max_seek_adjustment_seconds,
    )
    try:
        for cycle in range(1, cycles + 1):
            clock.advance(step)
            drifts: list[float] = []
            for follower, transport in followers:
                await follower.run_drift_cycle()
                drifts.append(abs(follower.current_sync_position() - transport.position))
            report.drift_by_cycle.append(drifts)
            logger.debug("Cycle %d drift: %s", cycle, drifts)
    finally:
        for follower, _ in followers:
            await follower.close()
        await host.end_session()
        await host.close()
    return report
