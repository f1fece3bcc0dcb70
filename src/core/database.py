from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager

from loguru import logger
from sqlalchemy import event
from sqlalchemy.engine.interfaces import DBAPIConnection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import ConnectionPoolEntry
from sqlmodel.ext.asyncio.session import AsyncSession

from src.config.settings import settings
from src.core.errors import TransactionFailure

# Construct Async SQLite URL
DATABASE_URL = f"sqlite+aiosqlite:///{settings.SQLITE_DB_PATH}"

engine: AsyncEngine = create_async_engine(
    DATABASE_URL,
    echo=settings.DEBUG,
    connect_args={
        "check_same_thread": False,
        "timeout": 30.0,  # 30s busy timeout while another request holds the write lock
    },
)


@event.listens_for(engine.sync_engine, "connect")
def set_sqlite_pragma(
    dbapi_connection: DBAPIConnection,
    connection_record: ConnectionPoolEntry
) -> None:
    """Configures SQLite connection pragmas for concurrent request handling.

    Enables Write-Ahead Logging (WAL) so listings never block on the approval
    write path, and turns on foreign key enforcement so users and requests
    cannot point at a branch or role that does not exist.

    Args:
        dbapi_connection: The raw DBAPI connection object.
        connection_record: The connection pool record.

    Raises:
        sqlite3.OperationalError: If the database is locked and pragmas cannot be set.
    """
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.execute("PRAGMA foreign_keys=ON")
    except Exception as e:
        logger.error(f"Failed to set SQLite pragmas: {e}")
        raise
    finally:
        cursor.close()


async_session_maker = sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Dependency provider for asynchronous database sessions.

    Yields:
        AsyncSession: An active SQLAlchemy/SQLModel asynchronous session.
    """
    async with async_session_maker() as session:
        yield session


@asynccontextmanager
async def atomic(session: AsyncSession, operation: str) -> AsyncIterator[AsyncSession]:
    """Runs a multi-statement write as one unit of work.

    Everything staged on the session inside the block is committed together.
    Any exception rolls the whole unit back; database errors are re-raised as
    ``TransactionFailure`` so callers never observe a half-applied write.

    Args:
        session: The request-scoped session carrying the staged changes.
        operation: Short label used in log records.

    Yields:
        AsyncSession: The same session, for convenience.

    Raises:
        TransactionFailure: If the database rejects any statement or the commit.
    """
    try:
        yield session
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error(f"Transaction '{operation}' rolled back: {e}")
        raise TransactionFailure() from e
    except BaseException:
        await session.rollback()
        logger.warning(f"Transaction '{operation}' aborted before commit")
        raise
