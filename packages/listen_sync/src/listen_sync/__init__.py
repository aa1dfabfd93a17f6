"""Synchronized multi-listener playback engine."""

from .channel import EventChannel, InMemoryEventBus, InMemoryEventChannel, RedisEventChannel
from .chat import ChatRelay
from .clock import ClockEstimator
from .config import Settings, get_settings
from .coordinator import SessionCoordinator
from .directory import InMemorySessionDirectory, RedisSessionDirectory, SessionDirectory
from .drift import DriftCorrection, DriftCorrector
from .exceptions import (
    CapacityExceededError,
    ChannelError,
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
)
from .queue import QueueEngine
from .results import BroadcastResult, SessionResult, SyncOutcome
from .sync_key import generate_sync_key, normalize_sync_key
from .transport import PlaybackTransport, SimulatedTransport
from .version import __version__

__all__ = [
    "BroadcastResult",
    "CapacityExceededError",
    "ChannelError",
    "ChatMessage",
    "ChatRelay",
    "ClockEstimator",
    "DirectoryError",
    "DriftCorrection",
    "DriftCorrector",
    "DuplicateSyncKeyError",
    "EventChannel",
    "HeartbeatMonitor",
    "InMemoryEventBus",
    "InMemoryEventChannel",
    "InMemorySessionDirectory",
    "PlaybackTransport",
    "PublishError",
    "QueueEngine",
    "QueueItem",
    "RecordNotFoundError",
    "RedisEventChannel",
    "RedisSessionDirectory",
    "SessionCoordinator",
    "SessionDirectory",
    "SessionOptions",
    "SessionResult",
    "Settings",
    "SimulatedTransport",
    "SyncError",
    "SyncEvent",
    "SyncEventType",
    "SyncOutcome",
    "SyncParticipant",
    "SyncSession",
    "SyncState",
    "TrackRef",
    "__version__",
    "generate_sync_key",
    "get_settings",
    "normalize_sync_key",
]
