"""Database engine and session management for the relational backends."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from spotify_assistant.config import PostgresSettings, SqliteSettings, redact_url
from spotify_assistant.infrastructure.persistence.models import Base

logger = logging.getLogger(__name__)


def normalize_postgres_url(url: str) -> str:
    """Force the asyncpg driver onto a postgres URL."""
    for prefix in ("postgres://", "postgresql://", "postgresql+psycopg2://", "postgresql+psycopg://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix) :]
    return url


class Database:
    """Async engine plus transactional session factory."""

    def __init__(self, url: str, engine_kwargs: dict[str, Any] | None = None) -> None:
        """Create the engine (no connection is opened until first use)."""
        self.url = url
        self.is_sqlite = url.startswith("sqlite")
        self._engine = create_async_engine(url, **(engine_kwargs or {}))

        if self.is_sqlite:
            self._enable_sqlite_foreign_keys()

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @classmethod
    def for_sqlite(cls, path: str, settings: SqliteSettings) -> "Database":
        """Engine for a SQLite file."""
        return cls(
            f"sqlite+aiosqlite:///{path}",
            {
                "echo": settings.echo,
                "connect_args": {
                    "check_same_thread": False,
                    "timeout": settings.busy_timeout,
                },
            },
        )

    @classmethod
    def for_postgres(cls, settings: PostgresSettings) -> "Database":
        """Pooled engine for Postgres."""
        if settings.url is None:
            raise ValueError("Postgres URL is not configured")
        return cls(
            normalize_postgres_url(settings.url.get_secret_value()),
            {
                "echo": settings.echo,
                "pool_pre_ping": settings.pool_pre_ping,
                "pool_size": settings.pool_size,
                "max_overflow": settings.max_overflow,
                "pool_timeout": settings.pool_timeout,
                "pool_recycle": settings.pool_recycle,
            },
        )

    @property
    def safe_url(self) -> str:
        """Connection URL with the password masked."""
        return redact_url(self.url)

    # SQLite ships with foreign keys OFF. Without this the RESTRICT/CASCADE on
    # playlist_tracks would be silently ignored.
    def _enable_sqlite_foreign_keys(self) -> None:
        """Enable foreign key constraints on every SQLite connection."""

        @event.listens_for(self._engine.sync_engine, "connect")
        def _foreign_keys_on(dbapi_connection: Any, _record: Any) -> None:
            pragma = dbapi_connection.cursor()
            try:
                pragma.execute("PRAGMA foreign_keys=ON")
            finally:
                pragma.close()

    @asynccontextmanager
    async def session_scope(self) -> AsyncGenerator[AsyncSession, None]:
        """One session, one transaction: commit on clean exit, rollback on any error."""
        async with self._session_factory() as session, session.begin():
            yield session

    async def ping(self) -> None:
        """Run SELECT 1; raises the driver error if the database is unreachable."""
        async with self._engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def close(self) -> None:
        """Dispose the engine and its pool."""
        await self._engine.dispose()

    async def create_tables(self) -> None:
        """Create all tables that don't exist yet."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.debug("Storage tables ensured on %s", self.safe_url)

    async def drop_tables(self) -> None:
        """Drop every storage table. Test suites only."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    def get_pool_stats(self) -> dict[str, Any]:
        """Pool counters for the health report."""
        pool = self._engine.pool
        stats: dict[str, Any] = {"pool_type": type(pool).__name__}
        # NullPool and StaticPool (SQLite) have no counters
        for key, method in (
            ("pool_size", "size"),
            ("checked_out", "checkedout"),
            ("checked_in", "checkedin"),
            ("overflow", "overflow"),
        ):
            counter = getattr(pool, method, None)
            stats[key] = counter() if callable(counter) else 0
        return stats
