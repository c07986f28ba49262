# Client SDK: HTTP access and conversation view reconciliation
from .api import ChatAPIClient
from .reconciler import ClientMessage, MessageReconciler, OutgoingMessage, SendFailed, SendState

__all__ = [
    "ChatAPIClient",
    "ClientMessage",
    "MessageReconciler",
    "OutgoingMessage",
    "SendFailed",
    "SendState",
]
