"""
WebSocket connection manager for real-time chat functionality.

Each identity owns at most one live channel. Reconnecting replaces the
previous channel instead of adding a second one, so a pushed message is never
delivered twice. Registry mutations run under a single asyncio lock; pushes
read the current mapping and never wait for the client to acknowledge.
"""
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError
from sqlmodel import Session

from relay.core.exceptions import ChatError
from relay.schemas.chat import WebSocketEvent, WebSocketSendMessage

logger = logging.getLogger(__name__)

# Close code sent to a channel that has been superseded by a newer connection
CLOSE_REPLACED = 4000


class ConnectionManager:
    """Single owned registry of realtime channels, keyed by user id."""

    def __init__(self):
        # user_id -> the one active WebSocket of that user
        self.active_connections: Dict[int, WebSocket] = {}
        self._lock = asyncio.Lock()
        self._on_connect = []
        self._on_disconnect = []

    def add_listener(self, on_connect=None, on_disconnect=None):
        """Register async callbacks run after a user connects or fully disconnects."""
        if on_connect:
            self._on_connect.append(on_connect)
        if on_disconnect:
            self._on_disconnect.append(on_disconnect)

    async def connect(self, websocket: WebSocket, user_id: int):
        """Accept WebSocket connection and register it as the user's channel."""
        await websocket.accept()

        async with self._lock:
            stale = self.active_connections.get(user_id)
            self.active_connections[user_id] = websocket

        if stale is not None and stale is not websocket:
            logger.info(f"Replacing stale channel for user {user_id}")
            await self._close_quietly(stale, CLOSE_REPLACED, "Replaced by a newer connection")
        elif stale is None:
            for callback in self._on_connect:
                await callback(user_id)

        logger.info(f"User {user_id} connected via WebSocket")

        await self.send_personal_message(WebSocketEvent(
            type="connection_confirmed",
            data={"user_id": user_id, "message": "Connected to chat server"}
        ).to_payload(), websocket)

    async def disconnect(self, user_id: int, websocket: Optional[WebSocket] = None) -> bool:
        """
        Deregister the user's channel.

        When `websocket` is given, the registry entry is only removed if it is
        still that socket; a late disconnect from a replaced channel leaves the
        newer one in place.
        """
        async with self._lock:
            current = self.active_connections.get(user_id)
            if current is None:
                return False
            if websocket is not None and current is not websocket:
                return False
            del self.active_connections[user_id]

        for callback in self._on_disconnect:
            await callback(user_id)

        logger.info(f"User {user_id} disconnected from WebSocket")
        return True

    async def send_personal_message(self, message: dict, websocket: WebSocket) -> bool:
        """Send message to a specific WebSocket connection."""
        try:
            await websocket.send_text(json.dumps(message))
            return True
        except Exception as e:
            logger.error(f"Error sending message to WebSocket: {e}")
            return False

    async def push(self, user_id: int, message: dict) -> bool:
        """
        Push an event to the user's channel if one is active.

        Returns False when the user has no channel (the push is dropped) or
        the send failed, in which case the broken channel is retired.
        """
        websocket = self.active_connections.get(user_id)
        if websocket is None:
            logger.debug(f"No active channel for user {user_id}, push dropped")
            return False

        if await self.send_personal_message(message, websocket):
            return True

        await self.disconnect(user_id, websocket)
        return False

    async def close_all(self):
        """Close every channel, used on shutdown."""
        async with self._lock:
            connections = list(self.active_connections.items())
            self.active_connections.clear()

        for user_id, websocket in connections:
            await self._close_quietly(websocket, 1001, "Server shutting down")
            for callback in self._on_disconnect:
                await callback(user_id)

    async def get_online_users(self) -> List[int]:
        """Get list of currently online user IDs."""
        return list(self.active_connections.keys())

    async def is_user_online(self, user_id: int) -> bool:
        """Check if a user is currently online."""
        return user_id in self.active_connections

    @staticmethod
    async def _close_quietly(websocket: WebSocket, code: int, reason: str):
        try:
            await websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"Ignoring error while closing WebSocket: {e}")


class ChatWebSocketHandler:
    """Handles inbound WebSocket chat operations."""

    def __init__(self, connection_manager: ConnectionManager):
        self.connection_manager = connection_manager

    async def handle_message(self, websocket: WebSocket, user_id: int, data: Dict[str, Any], db: Session):
        """Process incoming WebSocket message."""
        message_type = data.get("type")
        message_data = data.get("data") or {}

        try:
            if message_type == "send_message":
                await self._handle_send_message(websocket, user_id, message_data, db)
            elif message_type == "mark_read":
                await self._handle_mark_read(websocket, user_id, message_data, db)
            elif message_type == "get_online_status":
                await self._handle_online_status(websocket, message_data)
            elif message_type == "ping":
                await self._reply(websocket, "pong", {})
            else:
                await self._reply(websocket, "error", {"message": f"Unknown message type: {message_type}"})

        except ChatError as e:
            await self._reply(websocket, "error", {**e.to_dict(), "request_type": message_type})

        except Exception as e:
            logger.error(f"Error handling WebSocket message: {e}", exc_info=True)
            await self._reply(websocket, "error", {"message": "Failed to process message"})

    async def _handle_send_message(self, websocket: WebSocket, user_id: int, data: dict, db: Session):
        """Handle sending a chat message via WebSocket."""
        from relay.services.chat_service import ChatService

        try:
            payload = WebSocketSendMessage(**data)
        except PydanticValidationError as e:
            await self._reply(websocket, "error", {"message": "Invalid send_message payload", "details": e.errors(include_url=False)})
            return

        service = ChatService(db)
        message = service.send_message(user_id, payload.receiver_id, text=payload.text, image=payload.image)

        await self._reply(websocket, "message_sent", {
            "client_id": payload.client_id,
            "message": service.serialize(message),
        })
        await service.deliver(message)

    async def _handle_mark_read(self, websocket: WebSocket, user_id: int, data: dict, db: Session):
        """Handle marking every message from a sender as read."""
        from relay.services.chat_service import ChatService

        sender_id = data.get("sender_id")
        if not sender_id:
            await self._reply(websocket, "error", {"message": "sender_id is required"})
            return

        service = ChatService(db)
        message_ids = service.mark_conversation_read(user_id, int(sender_id))
        await service.notify_read(user_id, int(sender_id), message_ids)
        await self._reply(websocket, "marked_read", {"sender_id": int(sender_id), "message_ids": message_ids})

    async def _handle_online_status(self, websocket: WebSocket, data: dict):
        """Handle online status requests."""
        user_ids = data.get("user_ids", [])

        online_status = {}
        for user_id in user_ids:
            online_status[user_id] = await self.connection_manager.is_user_online(user_id)

        await self._reply(websocket, "online_status", {"online_status": online_status})

    async def _reply(self, websocket: WebSocket, event_type: str, data: dict):
        await self.connection_manager.send_personal_message(
            WebSocketEvent(type=event_type, data=data).to_payload(), websocket
        )


async def serve_channel(websocket: WebSocket, user_id: int, db: Session):
    """Run the receive loop of an authenticated channel until it closes."""
    await connection_manager.connect(websocket, user_id)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await chat_handler._reply(websocket, "error", {"message": "Invalid JSON format"})
                continue
            if not isinstance(data, dict):
                await chat_handler._reply(websocket, "error", {"message": "Expected a JSON object"})
                continue
            await chat_handler.handle_message(websocket, user_id, data, db)

    except WebSocketDisconnect:
        logger.info(f"User {user_id} disconnected.")
    except Exception as e:
        logger.error(f"Unexpected error in WebSocket for user {user_id}: {e}", exc_info=True)
    finally:
        await connection_manager.disconnect(user_id, websocket)


# Global connection manager instance
connection_manager = ConnectionManager()
chat_handler = ChatWebSocketHandler(connection_manager)
