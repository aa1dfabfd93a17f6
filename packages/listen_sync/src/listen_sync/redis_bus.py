"""Shared Redis connection for the directory and the event channel."""

from __future__ import annotations

import logging
from typing import Dict

import redis.asyncio as redis

try:  # pragma: no cover - optional in production
    import fakeredis
except Exception:  # pragma: no cover
    fakeredis = None  # type: ignore

logger = logging.getLogger(__name__)

_FAKE_SERVERS: Dict[str, object] = {}


def _fake_server(name: str) -> object:
    server = _FAKE_SERVERS.get(name)
    if server is None:
        server = fakeredis.FakeServer()
        _FAKE_SERVERS[name] = server
    return server


class RedisFactory:
    """Lazy Redis connector.

    ``fakeredis://`` URLs resolve to an in-process server; every factory built
    with the same URL shares it, so separate clients observe each other's
    writes and pub/sub traffic (``fakeredis://room-a`` and ``fakeredis://room-b``
    are isolated from each other).
    """

    def __init__(self, url: str) -> None:
        self._url = url
        self._client: redis.Redis | None = None

    @property
    def url(self) -> str:
        return self._url

    async def ensure_connected(self) -> None:
        if self._client is not None:
            return
        self._client = self._build_client()
        logger.debug("Redis client created for %s", self._url)

    async def get_client(self) -> redis.Redis:
        if self._client is None:
            await self.ensure_connected()
        assert self._client is not None
        return self._client

    async def close(self) -> None:
        if self._client:
            try:
                await self._client.aclose()
            except Exception:
                logger.debug("Failed to close redis client", exc_info=True)
            self._client = None

    def _build_client(self) -> redis.Redis:
        if self._url.startswith("fakeredis://"):
            if not fakeredis:
                raise RuntimeError("fakeredis is not installed")
            name = self._url[len("fakeredis://") :] or "default"
            return fakeredis.FakeAsyncRedis(server=_fake_server(name), decode_responses=True)
        return redis.from_url(self._url, decode_responses=True)
