"""
User model for the identities taking part in conversations, using SQLModel.

Accounts are owned by the external auth service; this table mirrors the
display fields the chat core needs (name and avatar).
"""
from datetime import datetime
from typing import List, Optional, TYPE_CHECKING
from sqlmodel import Field, Relationship, SQLModel

from relay.utils.timeutils import utcnow

if TYPE_CHECKING:
    from relay.models.chat import ChatMessage


class UserBase(SQLModel):
    """Base user model with common fields."""
    username: str = Field(unique=True, index=True, max_length=50)
    full_name: Optional[str] = Field(default=None, max_length=100)
    email: Optional[str] = Field(default=None, unique=True, index=True, max_length=255)
    profile_pic: Optional[str] = Field(default=None, max_length=500)
    is_active: bool = Field(default=True)


class User(UserBase, table=True):
    """
    User database model.
    """
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True, index=True)

    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False)

    # Relationships
    sent_messages: List["ChatMessage"] = Relationship(
        back_populates="sender",
        sa_relationship_kwargs={"foreign_keys": "ChatMessage.sender_id"}
    )
    received_messages: List["ChatMessage"] = Relationship(
        back_populates="receiver",
        sa_relationship_kwargs={"foreign_keys": "ChatMessage.receiver_id"}
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username='{self.username}')>"
