"""Redis-backed WebSocket relay for listening sessions."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Set

from fastapi import HTTPException, WebSocket, status
from fastapi.websockets import WebSocketDisconnect
from jsonschema import ValidationError
from pydantic import ValidationError as ModelValidationError

from listen_sync.channel import RedisEventChannel
from listen_sync.directory import RedisSessionDirectory
from listen_sync.exceptions import DirectoryError, PublishError
from listen_sync.models import SyncEvent
from listen_sync.redis_bus import RedisFactory
from listen_sync.schemas import validate_event_payload

from .config import Settings

logger = logging.getLogger(__name__)


class ConnectionLimitError(RuntimeError):
    """Raised when a session connection limit is exceeded."""


class SessionRoom:
    """WebSocket connections of one listening session on this node."""

    def __init__(self, *, session_id: str, settings: Settings, channel: RedisEventChannel) -> None:
        self._session_id = session_id
        self._settings = settings
        self._channel = channel
        self._connections: Set[WebSocket] = set()
        self._lock = asyncio.Lock()
        self._subscribed = False

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def is_empty(self) -> bool:
        return not self._connections

    async def start(self) -> None:
        if self._subscribed:
            return
        await self._channel.subscribe(self._session_id, self._on_remote_event)
        self._subscribed = True

    async def stop(self) -> None:
        if not self._subscribed:
            return
        self._subscribed = False
        await self._channel.unsubscribe(self._session_id)

    async def connect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if len(self._connections) >= self._settings.max_connections_per_session:
                raise ConnectionLimitError(
                    f"Too many subscribers for session {self._session_id} "
                    f"(limit={self._settings.max_connections_per_session})"
                )
            self._connections.add(websocket)

        await websocket.accept()
        await self.start()
        logger.debug("WebSocket joined session=%s", self._session_id)

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._connections.discard(websocket)
        logger.debug("WebSocket left session=%s", self._session_id)

    async def fan_out(self, event: SyncEvent) -> int:
        """Send the event to every local connection, the sender's included."""

        payload = event.to_wire()
        deliveries = 0
        async with self._lock:
            connections = list(self._connections)

        for connection in connections:
            try:
                await connection.send_json(payload)
                deliveries += 1
            except RuntimeError as exc:
                logger.warning("Failed to send event to client: %s", exc)
                await self._safe_disconnect(connection)
        return deliveries

    async def _on_remote_event(self, event: SyncEvent) -> None:
        await self.fan_out(event)

    async def _safe_disconnect(self, websocket: WebSocket) -> None:
        try:
            await websocket.close()
        except RuntimeError:
            logger.debug("Ignored error while closing websocket", exc_info=True)
        finally:
            await self.disconnect(websocket)


class SyncHub:
    """Bridges the session event channel to WebSocket clients."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._redis_factory = RedisFactory(settings.redis_url)
        self.directory = RedisSessionDirectory(
            self._redis_factory,
            session_ttl_seconds=settings.session_ttl_seconds,
            event_history_limit=settings.event_history_limit,
        )
        # Local rooms are served directly; skip echoes of our own publishes.
        self.channel = RedisEventChannel(self._redis_factory, skip_own_origin=True)
        self._rooms: Dict[str, SessionRoom] = {}
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        await self._redis_factory.ensure_connected()

    async def stop(self) -> None:
        async with self._lock:
            rooms = list(self._rooms.values())
            self._rooms.clear()
        for room in rooms:
            await room.stop()
        await self.channel.close()
        await self._redis_factory.close()

    async def acquire_room(self, session_id: str) -> SessionRoom:
        async with self._lock:
            existing = self._rooms.get(session_id)
            if existing is not None:
                return existing
            if len(self._rooms) >= self._settings.max_sessions:
                raise HTTPException(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    detail="Session limit reached",
                )
            room = SessionRoom(session_id=session_id, settings=self._settings, channel=self.channel)
            self._rooms[session_id] = room
            return room

    async def handle_connection(self, session_id: str, websocket: WebSocket) -> None:
        """Main loop for websocket connection."""

        room = await self.acquire_room(session_id)
        try:
            await room.connect(websocket)
        except ConnectionLimitError as exc:
            logger.warning("Connection refused for %s: %s", session_id, exc)
            await websocket.close(code=1001, reason="Session at capacity")
            await self._maybe_cleanup_room(room)
            return

        try:
            while True:
                data = await websocket.receive_json()
                try:
                    event = self.parse_event(data, session_id=session_id)
                except (ValidationError, ModelValidationError, ValueError) as exc:
                    logger.warning("Invalid event on session %s: %s", session_id, exc)
                    await websocket.close(code=1003, reason="Invalid payload")
                    return
                await self.publish(session_id, event)
        except WebSocketDisconnect:
            logger.debug("Client disconnected from %s", session_id)
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Unexpected error in websocket loop: %s", exc)
            await websocket.close(code=1011, reason="Internal error")
        finally:
            await room.disconnect(websocket)
            await self._maybe_cleanup_room(room)

    @staticmethod
    def parse_event(data: Any, *, session_id: str) -> SyncEvent:
        """Validate a raw frame and bind it to ``session_id``.

        Raises:
            jsonschema.ValidationError: When the frame violates its event schema.
            ValueError: When the frame targets another session.
        """

        if not isinstance(data, dict):
            raise ValueError("Event frame must be a JSON object")
        validate_event_payload(data)
        event = SyncEvent.model_validate(data)
        if event.session_id != session_id:
            raise ValueError(f"sessionId {event.session_id} does not match channel {session_id}")
        return event

    async def publish(self, session_id: str, event: SyncEvent) -> int:
        """Record the event, deliver it locally and propagate it via Redis."""

        try:
            await self.directory.insert_event(event)
        except DirectoryError as exc:
            logger.warning("Event %s not recorded: %s", event.id, exc)
        deliveries = 0
        room = self._rooms.get(session_id)
        if room is not None:
            deliveries = await room.fan_out(event)
        try:
            await self.channel.publish(session_id, event)
        except PublishError as exc:
            logger.warning("Failed to publish to Redis: %s", exc)
        logger.info(
            "Broadcast event %s to session %s for %d receivers",
            event.type.value,
            session_id,
            deliveries,
        )
        return deliveries

    async def _maybe_cleanup_room(self, room: SessionRoom) -> None:
        async with self._lock:
            if not room.is_empty or self._rooms.get(room.session_id) is not room:
                return
            self._rooms.pop(room.session_id, None)
        await room.stop()
