"""Database engine and session management."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from listenlog.config import Settings
from listenlog.domain.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Backends with an INSERT ... ON CONFLICT construct the repositories can use.
SUPPORTED_BACKENDS = ("sqlite", "postgresql")


class Database:
    """Async engine plus a session factory handing out transactional scopes."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        url = settings.database.url
        _check_backend(url)

        engine_kwargs: dict[str, Any] = {
            "echo": settings.database.echo,
            "pool_pre_ping": settings.database.pool_pre_ping,
        }

        if url.startswith("postgresql"):
            engine_kwargs.update(
                {
                    "pool_size": settings.database.pool_size,
                    "max_overflow": settings.database.max_overflow,
                    "pool_timeout": settings.database.pool_timeout,
                    "pool_recycle": settings.database.pool_recycle,
                }
            )
        elif url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {
                "check_same_thread": False,
                "timeout": 30,  # seconds to wait on a locked database
            }
            # Hey future me - an in-memory database lives and dies with ONE connection.
            # StaticPool makes every session share it, otherwise each session would see
            # its own empty database (bites in tests).
            if ":memory:" in url:
                engine_kwargs["poolclass"] = StaticPool

        self._engine = create_async_engine(url, **engine_kwargs)

        if url.startswith("sqlite"):
            self._enable_sqlite_foreign_keys()

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @property
    def dialect_name(self) -> str:
        return self._engine.dialect.name

    def _enable_sqlite_foreign_keys(self) -> None:
        """SQLite ships with foreign keys OFF; turn them on for every new connection."""

        @event.listens_for(self._engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_conn: Any, _connection_record: Any) -> None:
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    @asynccontextmanager
    async def session_scope(self) -> AsyncGenerator[AsyncSession, None]:
        """Provide a transactional scope: commit on success, rollback and re-raise on error."""
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def close(self) -> None:
        """Dispose the engine and its pooled connections."""
        await self._engine.dispose()

    async def create_tables(self) -> None:
        """Create any missing tables (idempotent; runs on startup and in tests)."""
        from listenlog.infrastructure.persistence.models import Base

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    def get_pool_stats(self) -> dict[str, Any]:
        """Connection pool statistics for the health endpoint."""
        if self.dialect_name == "sqlite":
            return {
                "pool_type": "sqlite",
                "note": "SQLite does not use connection pooling",
            }

        pool = self._engine.pool
        return {
            "pool_size": getattr(pool, "size", lambda: 0)(),
            "checked_out": getattr(pool, "checkedout", lambda: 0)(),
            "overflow": getattr(pool, "overflow", lambda: 0)(),
            "checked_in": getattr(pool, "checkedin", lambda: 0)(),
            "pool_timeout": self.settings.database.pool_timeout,
            "pool_recycle": self.settings.database.pool_recycle,
            "max_overflow": self.settings.database.max_overflow,
        }


def _check_backend(url: str) -> None:
    """Refuse database URLs whose backend the upsert layer cannot write to."""
    try:
        backend = make_url(url).get_backend_name()
    except ArgumentError as e:
        raise ConfigurationError(f"Invalid DATABASE_URL {url!r}: {e}") from e
    if backend not in SUPPORTED_BACKENDS:
        raise ConfigurationError(
            f"Unsupported database backend {backend!r}. "
            f"DATABASE_URL must point at one of: {', '.join(SUPPORTED_BACKENDS)}."
        )
