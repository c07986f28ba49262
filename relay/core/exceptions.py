"""
Domain exceptions for the chat core.

Every error raised by the store, the aggregator, the delivery layer or the
client SDK derives from ChatError so that the API layer can translate it into
the standard error envelope in one place (see relay.core.error_handlers).
"""
from typing import Optional


class ChatError(Exception):
    """Base class for chat errors carrying an HTTP status equivalent."""

    status_code: int = 500
    code: str = "CHAT_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(ChatError):
    """User-correctable input problem, reported with the offending field."""

    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
        return data


class NotFoundError(ChatError):
    """Unknown peer, message or conversation."""

    status_code = 404
    code = "NOT_FOUND"


class AuthError(ChatError):
    """Missing or invalid identity claim."""

    status_code = 401
    code = "AUTHENTICATION_FAILED"


class TransientError(ChatError):
    """Store unavailable or push failed; safe to retry for idempotent reads only."""

    status_code = 503
    code = "SERVICE_UNAVAILABLE"
