"""Database configuration and session management."""

from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from surfacescan.config import settings


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


def create_engine(database_url: str, echo: bool = False, **kwargs) -> AsyncEngine:
    """Create an async engine, enabling WAL mode and foreign keys on SQLite."""
    new_engine = create_async_engine(database_url, echo=echo, future=True, **kwargs)

    if database_url.startswith("sqlite"):

        @event.listens_for(new_engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):  # type: ignore
            """Enable WAL mode and foreign keys for SQLite."""
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return new_engine


engine = create_engine(settings.database_url, echo=settings.debug)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting async database sessions."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db(target: AsyncEngine | None = None) -> None:
    """Initialize database by creating all tables."""
    # Models must be imported so their tables are registered on Base.metadata
    import surfacescan.models  # noqa: F401

    async with (target or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
