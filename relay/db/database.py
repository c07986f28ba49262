"""
Message store connection and session management.

Any SQLAlchemy URL works; SQLite (file or in-memory) is the default and is
what the test-suite runs on.
"""
import logging
from typing import Any, Dict, Generator

from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import QueuePool, StaticPool
from sqlmodel import Session, SQLModel, create_engine, text

from relay.core.config import settings

logger = logging.getLogger(__name__)

# Created on first use so that settings can be overridden before import-time wiring
_engine = None


def _engine_options() -> Dict[str, Any]:
    options: Dict[str, Any] = {"echo": settings.debug}

    if settings.is_memory_db:
        # A single shared connection keeps one in-memory database for every session
        options.update(connect_args={"check_same_thread": False}, poolclass=StaticPool)
    elif settings.is_sqlite:
        options.update(connect_args={"check_same_thread": False})
    else:
        options.update(
            poolclass=QueuePool,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_recycle=settings.db_pool_recycle,
            pool_pre_ping=True,
        )
    return options


def get_engine():
    """Get or create the SQLAlchemy engine."""
    global _engine
    if _engine is not None:
        return _engine

    _engine = create_engine(settings.database_url, **_engine_options())

    if settings.is_sqlite:
        @event.listens_for(_engine, "connect")
        def enable_sqlite_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    logger.info(f"Database engine created for dialect '{_engine.dialect.name}'")
    return _engine


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency yielding a session per request (or per WebSocket).
    Rolls back and re-raises on error.
    """
    with Session(get_engine()) as session:
        try:
            yield session
        except Exception as e:
            logger.error(f"Database session error: {e}", exc_info=True)
            session.rollback()
            raise


def create_db_and_tables():
    """Create the users and chat_messages tables if missing. Idempotent."""
    # Registers the tables on SQLModel.metadata
    from relay.models import ChatMessage, User  # noqa: F401

    logger.info("Creating database tables with SQLModel...")
    try:
        with get_engine().begin() as conn:
            SQLModel.metadata.create_all(conn)
    except SQLAlchemyError as e:
        logger.error(f"Table creation failed: {e}", exc_info=True)
        raise
    logger.info("Database tables ready.")


def drop_db_and_tables():
    """Drop every table known to SQLModel.metadata."""
    with get_engine().begin() as conn:
        SQLModel.metadata.drop_all(conn)


def check_database_connection() -> bool:
    """Return True if `SELECT 1` succeeds."""
    try:
        with get_engine().connect() as connection:
            connection.scalar(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database connection check failed: {e}")
        return False


class DatabaseManager:
    """Sessions outside the request cycle (background delivery) and health checks."""

    def get_session(self) -> Session:
        return Session(get_engine())

    def close_all_connections(self):
        if settings.is_memory_db:
            # The data lives in the single pooled connection
            return
        get_engine().dispose()
        logger.info("All database connections closed.")

    def health_check(self) -> dict:
        """
        Returns:
            dict: {"database": "healthy" | "unhealthy", "details": {...}}
        """
        if not check_database_connection():
            return {"database": "unhealthy", "details": {"error": "Failed to establish a basic connection."}}

        engine = get_engine()
        details = {"dialect": engine.dialect.name}
        if isinstance(engine.pool, QueuePool):
            details.update(
                pool_size=engine.pool.size(),
                checked_out_connections=engine.pool.checkedout(),
            )
        return {"database": "healthy", "details": details}


# Global database manager instance
db_manager = DatabaseManager()
