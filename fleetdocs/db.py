"""
Database connection and session management for the FleetDocs application.

This module provides utilities for connecting to the database and managing sessions
with proper connection pooling and error handling.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, Callable, Optional, TypeVar, cast

from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.exc import SQLAlchemyError, DBAPIError
from sqlalchemy.pool import StaticPool

from fleetdocs import settings
from fleetdocs.errors import StorageError
from fleetdocs.models import Base

# Configure logging
logger = logging.getLogger("fleetdocs.db")

# Type variables
T = TypeVar('T')


# Convert PostgreSQL connection string to async format
def get_async_connection_string(conn_str: str) -> str:
    """
    Convert a synchronous connection string to an async one.

    Args:
        conn_str: Synchronous PostgreSQL or SQLite connection string

    Returns:
        Async connection string
    """
    if conn_str.startswith("postgresql://"):
        return conn_str.replace("postgresql://", "postgresql+asyncpg://", 1)
    if conn_str.startswith("sqlite://"):
        return conn_str.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return conn_str


class DatabaseManager:
    """
    Database connection manager for the FleetDocs application.

    This class manages database connections and sessions with proper connection
    pooling and error handling. The engine is created lazily on first use.
    """

    def __init__(self, conn_str: Optional[str] = None):
        """
        Initialize the database manager.

        Args:
            conn_str: Connection string. Defaults to settings.PG_CONNSTR.
        """
        self.conn_str = conn_str
        self._engine: Optional[AsyncEngine] = None
        self._sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None

    def _initialize(self) -> None:
        """Create the engine and session factory."""
        async_conn_str = get_async_connection_string(self.conn_str or settings.PG_CONNSTR)

        if async_conn_str.startswith("sqlite"):
            # Single shared connection so in-memory databases survive across sessions
            self._engine = create_async_engine(
                async_conn_str,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
                echo=False,
            )
            logger.info("Database manager initialized with SQLite engine")
        else:
            # Configure connection pool settings
            pool_size = 5
            max_overflow = 10

            self._engine = create_async_engine(
                async_conn_str,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_timeout=30,
                pool_recycle=1800,  # 30 minutes
                pool_pre_ping=True,
                echo=False,
            )
            logger.info(f"Database manager initialized with connection pool (size={pool_size}, max_overflow={max_overflow})")

        # Create session factory
        self._sessionmaker = async_sessionmaker(
            bind=self._engine,
            expire_on_commit=False,
            class_=AsyncSession,
        )

    @property
    def engine(self) -> AsyncEngine:
        """
        Get the SQLAlchemy async engine.

        Returns:
            AsyncEngine instance
        """
        if self._engine is None:
            self._initialize()
        return cast(AsyncEngine, self._engine)

    @property
    def sessionmaker(self) -> async_sessionmaker[AsyncSession]:
        """
        Get the SQLAlchemy async session maker.

        Returns:
            async_sessionmaker instance
        """
        if self._sessionmaker is None:
            self._initialize()
        return cast(async_sessionmaker[AsyncSession], self._sessionmaker)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get a database session as an async context manager.

        Yields:
            AsyncSession: Database session

        Example:
            ```python
            async with db_manager.session() as session:
                result = await session.execute(select(DocumentRecord))
                documents = result.scalars().all()
            ```
        """
        session = self.sessionmaker()
        try:
            yield session
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"Database error: {str(e)}")
            raise
        finally:
            await session.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get a session whose work is committed atomically.

        The transaction commits when the block exits normally and rolls back
        when it raises, whatever the exception type.

        Yields:
            AsyncSession: Database session inside an open transaction
        """
        async with self.session() as session:
            async with session.begin():
                yield session

    async def create_tables(self) -> None:
        """
        Create all tables defined in the models.

        This method should be called during application startup.
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            logger.info("Database tables created")

    async def close(self) -> None:
        """
        Close the database connection pool.

        This method should be called during application shutdown.
        """
        if self._engine is not None:
            await self._engine.dispose()
            logger.info("Database connection pool closed")
            self._engine = None
            self._sessionmaker = None


# Create a global database manager instance
db_manager = DatabaseManager()


async def execute_with_retry(
    session: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3
) -> T:
    """
    Execute a database operation with retry logic.

    Args:
        session: Database session
        operation: Coroutine function that performs the database operation
        max_retries: Maximum number of retries

    Returns:
        Result of the operation

    Raises:
        SQLAlchemyError: If the operation fails after all retries
    """
    retries = 0
    last_error: Exception = SQLAlchemyError("Unknown database error")

    while retries <= max_retries:
        try:
            return await operation()
        except (DBAPIError, StorageError) as e:
            # Repositories wrap driver errors, so look at the cause as well
            cause = e if isinstance(e, DBAPIError) else e.__cause__
            # Only retry on connection-related errors
            if isinstance(cause, DBAPIError) and cause.connection_invalidated:
                retries += 1
                last_error = e
                logger.warning(f"Database connection error, retrying ({retries}/{max_retries}): {str(e)}")
                await session.rollback()
                continue
            raise
        except SQLAlchemyError:
            # Don't retry on other SQLAlchemy errors
            await session.rollback()
            raise

    # If we get here, all retries failed
    logger.error(f"Database operation failed after {max_retries} retries: {str(last_error)}")
    raise last_error
