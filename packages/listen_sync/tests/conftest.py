from __future__ import annotations

from typing import AsyncIterator, Callable, Iterator

import pytest
import pytest_asyncio

from listen_sync.channel import EventChannel, InMemoryEventBus, InMemoryEventChannel
from listen_sync.clock import ClockEstimator
from listen_sync.config import Settings, get_settings
from listen_sync.coordinator import SessionCoordinator
from listen_sync.directory import InMemorySessionDirectory
from listen_sync.models import SessionOptions, TrackRef
from listen_sync.results import SessionResult
from listen_sync.simulation import SimulationClock
from listen_sync.transport import SimulatedTransport


@pytest.fixture(autouse=True)
def reset_settings() -> Iterator[None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def track() -> TrackRef:
    return TrackRef(id="yt:abc123", title="Opening Theme", duration_seconds=300.0)


@pytest.fixture
def settings() -> Settings:
    # Periodic tasks are parked; tests drive cycles explicitly.
    return Settings(heartbeat_interval_seconds=3600.0, drift_check_interval_seconds=3600.0)


class SyncWorld:
    """Clients sharing one in-memory directory, bus and virtual clock."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.clock = SimulationClock()
        self.directory = InMemorySessionDirectory(
            session_ttl_seconds=settings.session_ttl_seconds,
            event_history_limit=settings.event_history_limit,
            clock=self.clock.ms,
        )
        self.bus = InMemoryEventBus()
        self.clients: list[SessionCoordinator] = []

    def client(
        self,
        device_id: str,
        *,
        user_id: str | None = None,
        display_name: str | None = None,
        channel: EventChannel | None = None,
        key_factory: Callable[[], str] | None = None,
    ) -> tuple[SessionCoordinator, SimulatedTransport]:
        transport = SimulatedTransport(clock=self.clock.seconds)
        estimator = ClockEstimator(
            self.directory.probe,
            probe_count=self.settings.latency_probe_count,
            window=self.settings.latency_window,
            default_latency_ms=self.settings.default_latency_ms,
            local_clock=self.clock.ms,
            timer=self.clock.ms,
        )
        coordinator = SessionCoordinator(
            device_id=device_id,
            user_id=user_id,
            display_name=display_name or device_id,
            directory=self.directory,
            channel=channel or InMemoryEventChannel(self.bus),
            transport=transport,
            settings=self.settings,
            clock=estimator,
            key_factory=key_factory,
        )
        self.clients.append(coordinator)
        return coordinator, transport

    async def host(
        self, track: TrackRef, options: SessionOptions | None = None
    ) -> tuple[SessionCoordinator, SimulatedTransport, SessionResult]:
        coordinator, transport = self.client("host-device", user_id="host-user", display_name="Host")
        await transport.play(track)
        result = await coordinator.create_session(track, options)
        return coordinator, transport, result

    async def close(self) -> None:
        for client in self.clients:
            await client.close()


@pytest_asyncio.fixture
async def world(settings: Settings) -> AsyncIterator[SyncWorld]:
    sync_world = SyncWorld(settings)
    try:
        yield sync_world
    finally:
        await sync_world.close()


@pytest_asyncio.fixture
async def make_world() -> AsyncIterator[Callable[[Settings], SyncWorld]]:
    worlds: list[SyncWorld] = []

    def _make(custom: Settings) -> SyncWorld:
        sync_world = SyncWorld(custom)
        worlds.append(sync_world)
        return sync_world

    try:
        yield _make
    finally:
        for sync_world in worlds:
            await sync_world.close()
