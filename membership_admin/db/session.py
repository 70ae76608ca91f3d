"""
Async database session management using SQLAlchemy 2.0.
Provides connection pooling, the request-scoped session dependency and the
single-transaction boundary used by stores.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from membership_admin.core.config import Settings, get_settings
from membership_admin.core.errors import (
    DatabaseConnectionError,
    DatabaseError,
    DomainError,
    TransactionError,
)
from membership_admin.core.logging import get_logger

logger = get_logger(__name__)

# Engine owned by the application lifespan (unused when a factory is injected)
_engine: AsyncEngine | None = None


def create_engine_for(settings: Settings) -> AsyncEngine:
    """Build an engine; sqlite URLs share one connection so in-memory DBs persist."""
    if settings.is_sqlite:
        return create_async_engine(
            settings.database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=settings.debug,
        )
    return create_async_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_timeout=settings.database_pool_timeout,
        pool_pre_ping=True,
        echo=settings.debug,
    )


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def init_db(settings: Settings | None = None) -> async_sessionmaker[AsyncSession]:
    """
    Initialize the database engine and return a session factory for it.

    Called by the application factory; the engine is disposed by ``close_db``
    when the application shuts down.
    """
    global _engine

    _engine = create_engine_for(settings or get_settings())
    return make_session_factory(_engine)


async def close_db() -> None:
    """
    Close the database engine and connection pool.

    Called during application shutdown to cleanly release resources.
    """
    global _engine

    if _engine is not None:
        await _engine.dispose()
        _engine = None


def _translate(exc: SQLAlchemyError) -> DatabaseError:
    if isinstance(exc, (OperationalError, InterfaceError)) and exc.connection_invalidated:
        return DatabaseConnectionError("connection lost")
    if isinstance(exc, InterfaceError):
        return DatabaseConnectionError("connection unavailable")
    if isinstance(exc, IntegrityError):
        return TransactionError("constraint violated")
    if isinstance(exc, DBAPIError):
        return DatabaseError("statement failed")
    return TransactionError("transaction failed")


@asynccontextmanager
async def transaction(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Run one logical operation in its own session and transaction.

    Commits on success and rolls back on any error. SQLAlchemy errors are
    logged with their driver message and re-raised as domain database
    errors; domain errors raised by the body pass through untouched.
    """
    async with factory() as session:
        try:
            async with session.begin():
                yield session
        except DomainError:
            raise
        except SQLAlchemyError as exc:
            logger.warning(
                "database_transaction_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise _translate(exc) from exc


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    """Dependency returning the factory installed on the application."""
    factory: async_sessionmaker[AsyncSession] | None = getattr(
        request.app.state, "session_factory", None
    )
    if factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return factory


async def get_db_session(
    factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency that provides a read session for the duration of the request.

    Handlers that write go through a store and ``transaction()`` instead.
    """
    async with factory() as session:
        try:
            yield session
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.warning("database_read_failed", error_type=type(exc).__name__, error=str(exc))
            raise _translate(exc) from exc


# Type aliases for dependency injection
SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
