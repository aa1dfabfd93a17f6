"""Redis pub/sub event channel."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict
from uuid import uuid4

from jsonschema import ValidationError
from pydantic import ValidationError as ModelValidationError

from ..exceptions import PublishError
from ..models import SyncEvent
from ..redis_bus import RedisFactory
from ..schemas import validate_event_payload
from .base import EventHandler

logger = logging.getLogger(__name__)


def channel_topic(session_id: str) -> str:
    return f"sync:{session_id}"


@dataclass
class _Subscription:
    topic: str
    handler: EventHandler
    pubsub: Any
    task: asyncio.Task[None] | None = None
    stopped: bool = field(default=False)


class RedisEventChannel:
    """Publishes JSON envelopes ``{"origin", "event"}`` on ``sync:<sessionId>``.

    ``skip_own_origin`` drops messages this instance published itself; relays
    that have already delivered locally use it to avoid double fan-out. Sync
    clients leave it off and rely on ``senderDeviceId`` filtering instead.
    """

    def __init__(
        self,
        redis_factory: RedisFactory,
        *,
        node_id: str | None = None,
        skip_own_origin: bool = False,
    ) -> None:
        self._redis_factory = redis_factory
        self._node_id = node_id or uuid4().hex
        self._skip_own_origin = skip_own_origin
        self._subscriptions: Dict[str, _Subscription] = {}

    @property
    def node_id(self) -> str:
        return self._node_id

    async def subscribe(self, session_id: str, handler: EventHandler) -> None:
        await self.unsubscribe(session_id)
        redis = await self._redis_factory.get_client()
        pubsub = redis.pubsub()
        topic = channel_topic(session_id)
        await pubsub.subscribe(topic)
        subscription = _Subscription(topic=topic, handler=handler, pubsub=pubsub)
        subscription.task = asyncio.create_task(self._consume(subscription), name=f"sync-listener-{topic}")
        self._subscriptions[session_id] = subscription
        logger.debug("Subscribed to %s", topic)

    async def unsubscribe(self, session_id: str) -> None:
        subscription = self._subscriptions.pop(session_id, None)
        if subscription is None:
            return
        subscription.stopped = True
        task = subscription.task
        if task is None or task is asyncio.current_task():
            # Called from inside the handler; the consumer exits after it returns.
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def publish(self, session_id: str, event: SyncEvent) -> None:
        payload = json.dumps({"origin": self._node_id, "event": event.to_wire()})
        try:
            redis = await self._redis_factory.get_client()
            await redis.publish(channel_topic(session_id), payload)
        except Exception as exc:  # pylint: disable=broad-except
            raise PublishError(f"Failed to publish {event.type.value} to {session_id}: {exc}", cause=exc) from exc

    async def close(self) -> None:
        for session_id in list(self._subscriptions):
            await self.unsubscribe(session_id)

    def decode(self, data: str | bytes) -> SyncEvent | None:
        """Turn a raw pub/sub payload into an event, or ``None`` to skip it."""

        try:
            decoded = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Skip non-JSON message")
            return None
        if self._skip_own_origin and decoded.get("origin") == self._node_id:
            return None
        wire = decoded.get("event")
        if not isinstance(wire, dict):
            logger.warning("Skip message without event envelope")
            return None
        try:
            validate_event_payload(wire)
            return SyncEvent.model_validate(wire)
        except (ValidationError, ModelValidationError) as exc:
            logger.warning("Invalid event from pubsub: %s", exc)
            return None

    async def _consume(self, subscription: _Subscription) -> None:
        pubsub = subscription.pubsub
        try:
            while not subscription.stopped:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if not message:
                    await asyncio.sleep(0.01)
                    continue
                data = message.get("data")
                if not data:
                    continue
                event = self.decode(data)
                if event is None:
                    continue
                try:
                    await subscription.handler(event)
                except Exception:  # pylint: disable=broad-except
                    logger.exception("Handler failed for %s on %s", event.type.value, subscription.topic)
        except asyncio.CancelledError:
            logger.debug("Channel listener %s cancelled", subscription.topic)
            raise
        finally:
            try:
                await pubsub.unsubscribe(subscription.topic)
                await pubsub.aclose()
            except Exception:
                logger.debug("Failed to close pubsub for %s", subscription.topic, exc_info=True)
