"""Domain event fan-out over Redis pub/sub."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

BET_SETTLED = "bet.settled"
TRANSACTION_COMPLETED = "transaction.completed"
TRANSACTION_REJECTED = "transaction.rejected"
WITHDRAWAL_DISPATCHED = "withdrawal.dispatched"


class EventBus:
    """Publishes JSON events on a single channel.

    Events are emitted after the effect they describe has committed, so a
    publish failure is logged and swallowed rather than propagated.
    """

    def __init__(self, client: Optional[redis.Redis], channel: str):
        self._client = client
        self._channel = channel

    async def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self._client is None:
            return
        message = json.dumps(
            {
                "type": event_type,
                "payload": payload,
                "published_at": datetime.now(timezone.utc).isoformat(),
            },
            default=str,
        )
        try:
            await self._client.publish(self._channel, message)
        except RedisError as e:
            logger.warning(f"Could not publish {event_type} event: {e}")

    async def subscribe(self) -> AsyncIterator[Dict[str, Any]]:
        """Yield decoded events as they arrive."""
        if self._client is None:
            raise RuntimeError("Event bus has no Redis client")
        pubsub = self._client.pubsub()
        await pubsub.subscribe(self._channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    yield json.loads(message["data"])
                except (TypeError, ValueError):
                    logger.warning("Dropping undecodable event")
        finally:
            await pubsub.unsubscribe(self._channel)
            await pubsub.aclose()
