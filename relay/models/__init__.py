"""
SQLModel table models for the messaging backend.

- User: identities that can exchange messages
- ChatMessage: the append-only log of direct messages
"""

from relay.models.user import User
from relay.models.chat import ChatMessage

__all__ = [
    "User",
    "ChatMessage",
]
