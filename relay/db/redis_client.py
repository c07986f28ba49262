"""
Redis connection and the event bus used to fan realtime events out across
server instances.

Every instance publishes events on the recipient's channel and subscribes to
the channels of the users connected to it; events arriving on those channels
are handed to a single handler (the dispatcher's local forwarder).
"""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.client import PubSub
from redis.exceptions import ConnectionError, RedisError

from relay.core.config import settings

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, Dict[str, Any]], Awaitable[None]]


class RedisManager:
    """Owns the connection pool and the shared client."""

    def __init__(self):
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self._is_connected = False

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def client(self) -> Redis:
        if not self._is_connected or not self._client:
            raise ConnectionError("Redis client not connected")
        return self._client

    async def connect(self):
        """Create the pool and verify the server answers."""
        self._pool = ConnectionPool.from_url(
            settings.redis_url,
            max_connections=20,
            retry_on_timeout=True,
            socket_keepalive=True,
            health_check_interval=30,
            decode_responses=True
        )
        self._client = Redis(connection_pool=self._pool)

        try:
            await self._client.ping()
        except RedisError as e:
            logger.error(f"Failed to connect to Redis at {settings.redis_host}:{settings.redis_port}: {e}")
            self._is_connected = False
            raise

        self._is_connected = True
        logger.info("Redis connection established")

    async def disconnect(self):
        self._is_connected = False
        try:
            if self._client:
                await self._client.aclose()
            if self._pool:
                await self._pool.disconnect()
        except RedisError as e:
            logger.error(f"Error closing Redis connections: {e}")
        finally:
            self._client = None
            self._pool = None
        logger.info("Redis connections closed")

    async def health_check(self) -> Dict[str, Any]:
        """Report `disabled`, `healthy`, `disconnected` or `unhealthy`."""
        if not settings.redis_enabled:
            return {"redis": "disabled", "details": {}}
        if not self._client:
            return {"redis": "disconnected", "details": {}}

        try:
            await self._client.ping()
            info = await self._client.info("server")
        except RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return {"redis": "unhealthy", "details": {"error": str(e)}}

        return {"redis": "healthy", "details": {"redis_version": info.get("redis_version")}}


class EventBus:
    """Publish/subscribe of JSON events over Redis channels."""

    def __init__(self, redis_manager: RedisManager):
        self.redis_manager = redis_manager
        self._handler: Optional[EventHandler] = None
        self._pubsub: Optional[PubSub] = None
        self._listener: Optional[asyncio.Task] = None
        self._channels: Set[str] = set()

    def set_handler(self, handler: EventHandler):
        """Set the coroutine called with (channel, event) for every received event."""
        self._handler = handler

    async def publish(self, channel: str, event: Dict[str, Any]) -> int:
        """
        Publish an event.

        Returns:
            int: Number of subscribers that received it (0 on failure)
        """
        try:
            return await self.redis_manager.client.publish(channel, json.dumps(event))
        except (RedisError, TypeError) as e:
            logger.error(f"Failed to publish to channel {channel}: {e}")
            return 0

    async def subscribe(self, channel: str):
        if channel in self._channels:
            return
        if self._pubsub is None:
            self._pubsub = self.redis_manager.client.pubsub()

        await self._pubsub.subscribe(channel)
        self._channels.add(channel)

        # listen() returns once nothing is subscribed, so restart it when needed
        if self._listener is None or self._listener.done():
            self._listener = asyncio.create_task(self._listen())
        logger.debug(f"Subscribed to channel {channel}")

    async def unsubscribe(self, channel: str):
        if channel not in self._channels:
            return
        self._channels.discard(channel)
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(channel)
        logger.debug(f"Unsubscribed from channel {channel}")

    async def _listen(self):
        try:
            async for message in self._pubsub.listen():
                if message["type"] != "message":
                    continue

                channel = message["channel"]
                try:
                    event = json.loads(message["data"])
                except json.JSONDecodeError as e:
                    logger.error(f"Dropping malformed event on channel {channel}: {e}")
                    continue

                if self._handler is None:
                    continue
                try:
                    await self._handler(channel, event)
                except Exception as e:
                    logger.error(f"Event handler failed for channel {channel}: {e}", exc_info=True)

        except asyncio.CancelledError:
            raise
        except RedisError as e:
            logger.error(f"Event bus listener stopped: {e}")

    async def close(self):
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None

        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None

        self._channels.clear()
        logger.info("Event bus closed")


# Global instances
redis_manager = RedisManager()
event_bus = EventBus(redis_manager)


async def init_redis():
    await redis_manager.connect()


async def close_redis():
    await event_bus.close()
    await redis_manager.disconnect()
