"""
Chat schemas for API validation and push payloads.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field

from relay.models.chat import ChatMessage
from relay.utils.timeutils import utcnow


class MessageSend(BaseModel):
    """
    Schema for sending a chat message.

    Both fields are optional here; the "text or image" rule and the URL check
    are enforced by the message store so that they hold for every write path.
    """
    text: Optional[str] = Field(None, description="Message text")
    image: Optional[str] = Field(None, description="Already uploaded image URL")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "text": "Hello! How are you doing today?",
            "image": None
        }
    })


class MessageResponse(BaseModel):
    """Schema for chat message response and the `new_message` push payload."""
    id: int = Field(..., description="Message ID")
    sender_id: int = Field(..., description="ID of the message sender")
    receiver_id: int = Field(..., description="ID of the message receiver")
    text: Optional[str] = Field(None, description="Message text")
    image: Optional[str] = Field(None, description="Image URL")
    read: bool = Field(..., description="Whether message has been read")
    delivered: bool = Field(..., description="Whether message reached a live connection")
    status: str = Field(..., description="sent, delivered or read")
    created_at: datetime = Field(..., description="Message timestamp")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "id": 1,
            "sender_id": 1,
            "receiver_id": 2,
            "text": "Hello! How are you doing today?",
            "image": None,
            "read": False,
            "delivered": False,
            "status": "sent",
            "created_at": "2024-01-01T12:00:00"
        }
    })

    @classmethod
    def from_message(cls, message: ChatMessage) -> "MessageResponse":
        return cls(
            id=message.id,
            sender_id=message.sender_id,
            receiver_id=message.receiver_id,
            text=message.text,
            image=message.image,
            read=message.read,
            delivered=message.delivered,
            status=message.status,
            created_at=message.created_at,
        )


class MessagePage(BaseModel):
    """One cursor-delimited page of a conversation, oldest first."""
    messages: List[MessageResponse] = Field(..., description="Messages in ascending order")
    has_more: bool = Field(..., description="Whether more messages exist past this page")
    oldest_cursor: Optional[str] = Field(None, description="Pass as `before` to load older messages")
    newest_cursor: Optional[str] = Field(None, description="Pass as `after` to load newer messages")


class LastMessage(BaseModel):
    """Projection of the most recent message of a conversation."""
    id: int
    text: Optional[str] = None
    image: Optional[str] = None
    created_at: datetime
    status: str
    is_from_me: bool


class ConversationSummary(BaseModel):
    """Per-peer rollup of the last message and the unread count."""
    peer_id: int = Field(..., description="The other party of the conversation")
    username: str
    full_name: Optional[str] = None
    profile_pic: Optional[str] = None
    last_message: LastMessage
    unread_count: int = Field(..., ge=0)


class ConversationList(BaseModel):
    """Schema for listing user conversations."""
    conversations: List[ConversationSummary] = Field(..., description="Most recent first")
    total: int = Field(..., description="Number of conversations returned")
    total_unread: int = Field(..., description="Unread messages across the returned conversations")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "conversations": [
                {
                    "peer_id": 2,
                    "username": "janedoe",
                    "full_name": "Jane Doe",
                    "profile_pic": None,
                    "last_message": {
                        "id": 7,
                        "text": "Hello! How are you?",
                        "image": None,
                        "created_at": "2024-01-01T12:00:00",
                        "status": "sent",
                        "is_from_me": True
                    },
                    "unread_count": 0
                }
            ],
            "total": 1,
            "total_unread": 0
        }
    })


class MessageMarkReadBySender(BaseModel):
    """Schema for marking every message from one sender as read."""
    sender_id: int = Field(..., gt=0, description="ID of the user whose messages should be marked as read")


class MessageMarkReadResponse(BaseModel):
    """Schema for mark as read response."""
    marked_count: int = Field(..., description="Number of messages marked as read")
    message_ids: List[int] = Field(default_factory=list, description="IDs of the messages marked as read")


class OnlineStatusResponse(BaseModel):
    """Schema for online status response."""
    online_users: List[int] = Field(..., description="List of online user IDs")
    total_online: int = Field(..., description="Total number of online users")
    requesting_user: int = Field(..., description="ID of the requesting user")


class UserStatusResponse(BaseModel):
    """Schema for individual user status response."""
    user_id: int = Field(..., description="User ID")
    is_online: bool = Field(..., description="Whether user is online")


class UserBasicInfo(BaseModel):
    """Discovery entry for a user the requester can talk to."""
    id: int
    username: str
    full_name: Optional[str] = None
    profile_pic: Optional[str] = None
    is_online: bool = False


class UsersListResponse(BaseModel):
    """Schema for the chat user directory."""
    users: List[UserBasicInfo]
    total_users: int
    online_count: int


class WebSocketEvent(BaseModel):
    """Envelope of every event pushed over a realtime channel."""
    type: str = Field(..., description="Event type (new_message, messages_read, ...)")
    data: dict = Field(default_factory=dict, description="Event payload")
    timestamp: datetime = Field(default_factory=utcnow, description="Event timestamp")

    def to_payload(self) -> dict:
        return self.model_dump(mode="json")


class WebSocketSendMessage(BaseModel):
    """Inbound `send_message` payload on the realtime channel."""
    receiver_id: int = Field(..., gt=0)
    text: Optional[str] = None
    image: Optional[str] = None
    client_id: Optional[str] = Field(None, max_length=64, description="Correlation id echoed in `message_sent`")
