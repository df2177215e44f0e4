"""Database connection and session management"""

from typing import AsyncIterator

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool, NullPool

from app.db.models import Base


def create_engine_for_url(database_url: str, echo: bool = False) -> AsyncEngine:
    """Build the async engine for a database URL."""
    if database_url.startswith("sqlite"):
        if ":memory:" in database_url or database_url.rstrip("/").endswith("sqlite+aiosqlite:"):
            # In-memory SQLite only exists on a single connection
            return create_async_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=echo,
            )
        # File-backed SQLite: a fresh connection per session so concurrent
        # sessions contend on the database file lock, not a shared connection
        return create_async_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
            poolclass=NullPool,
            echo=echo,
        )

    # PostgreSQL (long-running process, direct connection)
    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
    )


class Database:
    """Engine + session factory, created once per process and passed around explicitly."""

    def __init__(self, database_url: str, echo: bool = False):
        self.url = database_url
        self.engine = create_engine_for_url(database_url, echo=echo)
        self.session_maker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield a session (FastAPI dependency style)."""
        async with self.session_maker() as session:
            try:
                yield session
            finally:
                await session.close()

    async def init(self):
        """Create tables. Production schemas are managed by Alembic."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop(self):
        """Drop all database tables (for testing)"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self):
        await self.engine.dispose()
