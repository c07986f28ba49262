"""
Exception handlers translating errors into the `{"error": {...}}` envelope.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

from relay.core.config import settings
from relay.core.exceptions import ChatError, ValidationError
from relay.utils import error_response

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError):
        if exc.status_code >= 500:
            logger.warning(f"{exc.code} on {request.url.path}: {exc.message}")
        return error_response(
            code=exc.code,
            message=exc.message,
            path=request.url.path,
            status_code=exc.status_code,
            field=exc.field if isinstance(exc, ValidationError) else None
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return error_response(
            code=f"HTTP_{exc.status_code}",
            message=str(exc.detail),
            path=request.url.path,
            status_code=exc.status_code
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = [
            {
                "field": ".".join(str(part) for part in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            }
            for error in exc.errors()
        ]
        return error_response(
            code="VALIDATION_ERROR",
            message="Request validation failed",
            path=request.url.path,
            status_code=422,
            details=details
        )

    @app.exception_handler(OperationalError)
    async def store_unavailable_handler(request: Request, exc: OperationalError):
        logger.error(f"Message store unavailable on {request.url.path}: {exc}")
        return error_response(
            code="SERVICE_UNAVAILABLE",
            message="Message store unavailable",
            path=request.url.path,
            status_code=503
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
        # Internals are only echoed back in debug mode
        return error_response(
            code="INTERNAL_SERVER_ERROR",
            message=str(exc) if settings.debug else "An unexpected error occurred",
            path=request.url.path,
            status_code=500,
            type=type(exc).__name__ if settings.debug else None
        )
