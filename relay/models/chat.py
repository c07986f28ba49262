"""
Chat message model for direct messaging using SQLModel.
"""
from datetime import datetime
from typing import Optional, TYPE_CHECKING
from sqlmodel import Field, Relationship, SQLModel, Index

from relay.utils.timeutils import utcnow

if TYPE_CHECKING:
    from relay.models.user import User


class MessageStatus:
    """Derived delivery status of a message. Precedence: read > delivered > sent."""
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class ChatMessageBase(SQLModel):
    """Base chat message model."""
    text: Optional[str] = Field(default=None)
    image: Optional[str] = Field(default=None, max_length=2048)
    read: bool = Field(default=False, index=True)
    delivered: bool = Field(default=False)


class ChatMessage(ChatMessageBase, table=True):
    """
    Chat message database model.

    Append-only: after creation only the read/delivered flags change.
    """
    __tablename__ = "chat_messages"
    __table_args__ = (
        Index("idx_chat_pair_created", "sender_id", "receiver_id", "created_at", "id"),
        Index("idx_chat_receiver_unread", "receiver_id", "read"),
    )

    id: Optional[int] = Field(default=None, primary_key=True, index=True)
    sender_id: int = Field(foreign_key="users.id", index=True)
    receiver_id: int = Field(foreign_key="users.id", index=True)
    created_at: datetime = Field(default_factory=utcnow, nullable=False, index=True)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False)

    # Relationships
    sender: "User" = Relationship(
        back_populates="sent_messages",
        sa_relationship_kwargs={"foreign_keys": "[ChatMessage.sender_id]"}
    )
    receiver: "User" = Relationship(
        back_populates="received_messages",
        sa_relationship_kwargs={"foreign_keys": "[ChatMessage.receiver_id]"}
    )

    @property
    def status(self) -> str:
        if self.read:
            return MessageStatus.READ
        if self.delivered:
            return MessageStatus.DELIVERED
        return MessageStatus.SENT

    def __repr__(self) -> str:
        preview = self.text or ""
        preview = preview[:50] + "..." if len(preview) > 50 else preview
        return (
            f"<ChatMessage(id={self.id}, sender_id={self.sender_id}, "
            f"receiver_id={self.receiver_id}, text='{preview}', image={self.image is not None})>"
        )
