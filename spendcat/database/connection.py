"""
Database connection and session management for the spending classifier.

Provides an async SQLAlchemy engine over aiosqlite, a session factory,
and a transactional scope helper.
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from .models import Base


# Default database path (relative to project root)
DEFAULT_DB_PATH = "data/spendcat.db"


class DatabaseManager:
    """
    Manages database connections and sessions.

    File databases get WAL journaling; ``:memory:`` databases share a single
    connection so every session sees the same data.
    """

    def __init__(self, db_path: Optional[str] = None, echo: bool = False):
        """
        Initialize database manager.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
            echo: If True, SQL statements will be logged
        """
        self.db_path = db_path or DEFAULT_DB_PATH
        self.echo = echo
        self.in_memory = ":memory:" in self.db_path

        engine_kwargs = dict(echo=self.echo)
        if self.in_memory:
            self.database_url = "sqlite+aiosqlite:///:memory:"
            engine_kwargs.update(
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        else:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self.database_url = f"sqlite+aiosqlite:///{self.db_path}"

        self.engine = create_async_engine(self.database_url, **engine_kwargs)
        self._configure_sqlite()

        self.SessionLocal = async_sessionmaker(
            bind=self.engine,
            autoflush=False,
            expire_on_commit=False,
        )

    def _configure_sqlite(self) -> None:
        """Configure SQLite-specific settings."""
        in_memory = self.in_memory

        @event.listens_for(self.engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            if not in_memory:
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA temp_store=MEMORY")
            cursor.close()

    async def create_all_tables(self) -> None:
        """Create all tables defined in models."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_all_tables(self) -> None:
        """Drop all tables (use with caution!)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    @asynccontextmanager
    async def session_scope(self) -> AsyncIterator[AsyncSession]:
        """
        Provide a transactional scope with automatic commit/rollback.

        Usage:
            async with db_manager.session_scope() as session:
                session.add(record)
                # Commits on success, rolls back on exception

        Yields:
            AsyncSession within a transaction context
        """
        session = self.SessionLocal()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def close(self) -> None:
        """Dispose of the engine and its connections."""
        await self.engine.dispose()

