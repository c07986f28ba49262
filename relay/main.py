"""
Relay Chat application: routers, middleware, lifecycle and MCP exposure.
"""
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi_mcp import FastApiMCP

from relay.core.config import settings
from relay.core.error_handlers import register_exception_handlers
from relay.db.database import create_db_and_tables, db_manager
from relay.db.redis_client import close_redis, init_redis, redis_manager
from relay.routers import auth_router, chat_router
from relay.services.delivery import message_dispatcher
from relay.utils.websocket_manager import connection_manager

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.app_name} {settings.app_version}...")

    create_db_and_tables()

    if settings.redis_enabled:
        await init_redis()
        message_dispatcher.start_fanout()
        logger.info("Cross-instance fan-out enabled")

    yield

    logger.info(f"Shutting down {settings.app_name}...")
    try:
        await connection_manager.close_all()
        if settings.redis_enabled:
            await close_redis()
        db_manager.close_all_connections()
    except Exception as e:
        logger.error(f"Error during application shutdown: {e}", exc_info=True)


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Direct messaging backend with conversation summaries and realtime delivery",
    debug=settings.debug,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

register_exception_handlers(app)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed = time.perf_counter() - started

    logger.info(f"{request.method} {request.url.path} -> {response.status_code} in {elapsed:.4f}s")
    response.headers["X-Process-Time"] = f"{elapsed:.4f}"
    return response


@app.get("/health", tags=["Health"])
async def health_check() -> Dict[str, Any]:
    """Health of the message store, the event bus and the realtime layer."""
    database = db_manager.health_check()
    redis = await redis_manager.health_check()
    online = await connection_manager.get_online_users()

    healthy = database["database"] == "healthy" and redis["redis"] in ("healthy", "disabled")
    return {
        "status": "healthy" if healthy else "unhealthy",
        "version": settings.app_version,
        "components": {
            "database": database,
            "redis": redis,
            "realtime": {"connected_users": len(online)},
        },
    }


@app.get("/", tags=["Root"])
async def root() -> Dict[str, str]:
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs_url": "/docs" if settings.debug else "Documentation disabled in production",
        "health_url": "/health",
    }


app.include_router(auth_router, tags=["Authentication"])
app.include_router(chat_router, tags=["Chat"])

# Chat operations exposed as MCP tools; must run after the routers are included
mcp = FastApiMCP(
    app,
    include_operations=[
        "get_current_identity",
        "list_conversations",
        "get_messages",
        "send_message",
        "mark_messages_as_read",
        "get_chat_users",
    ]
)
mcp.mount_http()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "relay.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info"
    )
