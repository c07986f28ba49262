"""
Chat service: the write path of the messaging core.

Sending persists through the message store and then emits the persisted
message to the delivery layer. Routers and the WebSocket handler go through
this service rather than the store directly.
"""
import logging
from typing import List, Optional, Tuple

from sqlmodel import Session, select

from relay.core.exceptions import NotFoundError, ValidationError
from relay.db.database import db_manager
from relay.models.chat import ChatMessage, MessageStatus
from relay.models.user import User
from relay.schemas.chat import MessageResponse, WebSocketEvent
from relay.services.delivery import MessageDispatcher, message_dispatcher
from relay.services.message_store import MessageStore, MessageWindow

logger = logging.getLogger(__name__)


class ChatService:
    """Service for chat operations."""

    def __init__(self, db: Session, dispatcher: Optional[MessageDispatcher] = None):
        self.db = db
        self.store = MessageStore(db)
        self.dispatcher = dispatcher or message_dispatcher

    def get_peer(self, peer_id: int) -> User:
        """Get an active user the requester can talk to."""
        peer = self.db.exec(select(User).where(User.id == peer_id, User.is_active == True)).first()  # noqa: E712
        if not peer:
            raise NotFoundError("User not found or inactive")
        return peer

    def send_message(
        self,
        sender_id: int,
        receiver_id: int,
        text: Optional[str] = None,
        image: Optional[str] = None
    ) -> ChatMessage:
        """Validate the receiver and persist a new message."""
        if sender_id == receiver_id:
            raise ValidationError("Cannot send a message to yourself", field="receiver_id")
        self.get_peer(receiver_id)

        message = self.store.append(sender_id, receiver_id, text=text, image=image)
        logger.info(f"Message {message.id} sent from user {sender_id} to user {receiver_id}")
        return message

    def get_history(
        self,
        user_id: int,
        peer_id: int,
        after: Optional[str] = None,
        before: Optional[str] = None,
        limit: Optional[int] = None
    ) -> MessageWindow:
        """Get a page of messages between the user and a peer."""
        self.get_peer(peer_id)
        return self.store.list_between(user_id, peer_id, after=after, before=before, limit=limit)

    def mark_conversation_read(self, reader_id: int, sender_id: int) -> List[int]:
        """Mark all messages from sender_id to reader_id as read."""
        message_ids = self.store.mark_conversation_read(reader_id, sender_id)
        if message_ids:
            logger.info(f"User {reader_id} read {len(message_ids)} messages from user {sender_id}")
        return message_ids

    def mark_message_read(self, reader_id: int, message_id: int) -> Tuple[ChatMessage, bool]:
        """
        Mark a single received message as read.

        Returns:
            The message and whether its read flag changed.
        """
        message = self.store.get(message_id)
        if message.receiver_id != reader_id:
            raise NotFoundError(f"Message {message_id} not found")
        was_read = message.read
        return self.store.mark_read(message_id), not was_read

    @staticmethod
    def serialize(message: ChatMessage) -> dict:
        return MessageResponse.from_message(message).model_dump(mode="json")

    async def deliver(self, message: ChatMessage) -> bool:
        """
        Push a persisted message to its receiver's channel.

        The event carries the message as persisted (status `sent`); when a
        live channel accepted it the message is flagged delivered and the
        sender is told.
        """
        event = WebSocketEvent(type="new_message", data=self.serialize(message)).to_payload()
        delivered = await self.dispatcher.dispatch(message.receiver_id, event)
        if not delivered:
            return False

        self.store.mark_delivered(message.id)
        await self.dispatcher.dispatch(message.sender_id, WebSocketEvent(
            type="message_delivered",
            data={"message_id": message.id, "receiver_id": message.receiver_id, "status": MessageStatus.DELIVERED}
        ).to_payload())
        return True

    async def notify_read(self, reader_id: int, sender_id: int, message_ids: List[int]) -> bool:
        """Tell the original sender that the reader has read their messages."""
        if not message_ids:
            return False
        return await self.dispatcher.dispatch(sender_id, WebSocketEvent(
            type="messages_read",
            data={"reader_id": reader_id, "message_ids": message_ids, "status": MessageStatus.READ}
        ).to_payload())


async def deliver_message(message_id: int):
    """Background task: deliver a stored message using a fresh session."""
    with db_manager.get_session() as db:
        service = ChatService(db)
        try:
            message = service.store.get(message_id)
        except NotFoundError:
            logger.warning(f"Message {message_id} vanished before delivery")
            return
        await service.deliver(message)


async def notify_messages_read(reader_id: int, sender_id: int, message_ids: List[int]):
    """Background task: send a read receipt."""
    with db_manager.get_session() as db:
        await ChatService(db).notify_read(reader_id, sender_id, message_ids)
