"""
Realtime delivery of persisted messages.

The dispatcher is the sink of the "message persisted" event. Delivery is
at-most-once: when the recipient has no live channel the event is dropped and
the message is picked up from the store on the next fetch.

With Redis enabled, events travel through the `chat:{user_id}` channel so
that the instance holding the recipient's WebSocket delivers it. Each
instance subscribes to that channel for as long as the user is connected
to it.
"""
import logging

from relay.core.config import settings
from relay.db.redis_client import EventBus, event_bus, redis_manager
from relay.utils.websocket_manager import ConnectionManager, connection_manager

logger = logging.getLogger(__name__)


def user_channel(user_id: int) -> str:
    return f"chat:{user_id}"


class MessageDispatcher:
    """Routes realtime events to the channel of their recipient."""

    def __init__(self, connections: ConnectionManager, bus: EventBus):
        self.connections = connections
        self.bus = bus
        self._fanout_started = False

    @property
    def uses_redis(self) -> bool:
        return settings.redis_enabled and redis_manager.is_connected

    async def dispatch(self, user_id: int, event: dict) -> bool:
        """
        Send an event to a user without waiting on any acknowledgement.

        Returns:
            True if a live channel (local or on another instance) took the event.
        """
        try:
            if self.uses_redis:
                receivers = await self.bus.publish(user_channel(user_id), event)
                return receivers > 0
            return await self.connections.push(user_id, event)
        except Exception as e:
            logger.error(f"Failed to dispatch {event.get('type')} event to user {user_id}: {e}")
            return False

    def start_fanout(self):
        """Mirror local connections as event bus subscriptions."""
        if self._fanout_started:
            return
        self.bus.set_handler(self._forward)
        self.connections.add_listener(
            on_connect=self._subscribe_user,
            on_disconnect=self._unsubscribe_user
        )
        self._fanout_started = True

    async def _subscribe_user(self, user_id: int):
        if self.uses_redis:
            await self.bus.subscribe(user_channel(user_id))

    async def _unsubscribe_user(self, user_id: int):
        if self.uses_redis:
            await self.bus.unsubscribe(user_channel(user_id))

    async def _forward(self, channel: str, event: dict):
        user_id = int(channel.split(":", 1)[1])
        await self.connections.push(user_id, event)


# Global dispatcher instance
message_dispatcher = MessageDispatcher(connection_manager, event_bus)
