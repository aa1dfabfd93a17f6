"""Event channel protocol and adapters."""

from .base import EventChannel, EventHandler
from .memory import InMemoryEventBus, InMemoryEventChannel
from .redis_channel import RedisEventChannel, channel_topic

__all__ = [
    "EventChannel",
    "EventHandler",
    "InMemoryEventBus",
    "InMemoryEventChannel",
    "RedisEventChannel",
    "channel_topic",
]
