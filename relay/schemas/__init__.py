"""
Pydantic schemas for API validation.
"""

# Chat schemas
from .chat import (
    MessageSend,
    MessageResponse,
    MessagePage,
    LastMessage,
    ConversationSummary,
    ConversationList,
    MessageMarkReadBySender,
    MessageMarkReadResponse,
    OnlineStatusResponse,
    UserStatusResponse,
    UserBasicInfo,
    UsersListResponse,
    WebSocketEvent,
    WebSocketSendMessage,
)

__all__ = [
    "MessageSend",
    "MessageResponse",
    "MessagePage",
    "LastMessage",
    "ConversationSummary",
    "ConversationList",
    "MessageMarkReadBySender",
    "MessageMarkReadResponse",
    "OnlineStatusResponse",
    "UserStatusResponse",
    "UserBasicInfo",
    "UsersListResponse",
    "WebSocketEvent",
    "WebSocketSendMessage",
]
