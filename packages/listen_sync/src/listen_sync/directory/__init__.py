"""Session directory protocol and adapters."""

from .base import SessionDirectory
from .memory import InMemorySessionDirectory
from .redis_store import RedisSessionDirectory

__all__ = ["SessionDirectory", "InMemorySessionDirectory", "RedisSessionDirectory"]
