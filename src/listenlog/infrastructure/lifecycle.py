"""Application lifecycle management for startup and shutdown tasks.

Startup order:   logging -> database -> Spotify client -> auth/sync services
                 -> query cache sweep -> periodic sync worker
Shutdown order:  the reverse, then the HTTP client and the database engine.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator, Coroutine
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI

from listenlog.application.cache import QueryCache
from listenlog.application.services import (
    AuthManager,
    EntityUpsertPipeline,
    ListeningHistoryService,
    SpotifyConnectionProbe,
    SyncOrchestrator,
)
from listenlog.application.workers import SpotifySyncWorker
from listenlog.config import Settings, get_settings
from listenlog.domain.exceptions import ConfigurationError
from listenlog.infrastructure.integrations import SpotifyClient
from listenlog.infrastructure.observability import configure_logging
from listenlog.infrastructure.persistence import ConnectionRepository, Database

logger = logging.getLogger(__name__)


# Hey future me, this validates the SQLite path BEFORE the engine exists. SQLite needs to create
# -journal/-wal/-shm files next to the .db, so the parent directory must be writable. We don't
# pre-create the .db itself, SQLite initializes it on first connect. Returns early for
# PostgreSQL and in-memory URLs.
def _validate_sqlite_path(settings: Settings) -> None:
    """Ensure the SQLite database directory exists and is writable."""
    db_path = settings._get_sqlite_db_path()
    if db_path is None:
        return

    try:
        if db_path.parent and str(db_path.parent) != ".":
            db_path.parent.mkdir(parents=True, exist_ok=True)
            logger.debug("Ensured SQLite parent directory exists: %s", db_path.parent)
    except OSError as exc:
        raise ConfigurationError(
            f"Unable to create SQLite database directory '{db_path.parent}': {exc}. "
            "Update DATABASE_URL or adjust directory permissions."
        ) from exc

    try:
        test_file = db_path.parent / f".{db_path.stem}_write_test"
        test_file.write_bytes(b"test")
        test_file.unlink()
    except OSError as exc:
        raise ConfigurationError(
            f"Unable to write files in database directory '{db_path.parent}': {exc}. "
            "SQLite requires write permissions to create database and journal files."
        ) from exc


async def _stop_with_timeout(
    name: str, stop: Coroutine[Any, Any, None], timeout: float
) -> None:
    try:
        await asyncio.wait_for(stop, timeout=timeout)
    except TimeoutError:
        logger.warning("Timed out stopping %s after %ss", name, timeout)
    except Exception:
        logger.exception("Error stopping %s", name)


# Listen future me, everything before `yield` runs at STARTUP, everything after at SHUTDOWN.
# Resources live on app.state so api/dependencies.py can hand them to routes. The finally
# block runs even when startup blew up halfway, so every resource is checked for None.
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    settings: Settings = getattr(app.state, "settings", None) or get_settings()
    app.state.settings = settings

    configure_logging(
        log_level=settings.log_level,
        json_format=settings.observability.log_json_format,
        app_name=settings.app_name,
    )
    logger.info("Starting application: %s", settings.app_name)

    db: Database | None = None
    client: SpotifyClient | None = None
    query_cache: QueryCache | None = None
    sync_worker: SpotifySyncWorker | None = None
    timeout = settings.observability.shutdown_timeout
    try:
        _validate_sqlite_path(settings)

        db = Database(settings)
        app.state.db = db
        if settings.database.create_tables_on_startup:
            await db.create_tables()
        logger.info("Database initialized (%s)", db.dialect_name)

        client = SpotifyClient(settings.spotify)
        app.state.spotify_client = client

        # ONE AuthManager per process, its per-user refresh locks depend on it
        token_store = ConnectionRepository(db)
        auth_manager = AuthManager(client, token_store, settings.spotify)
        app.state.token_store = token_store
        app.state.auth_manager = auth_manager
        app.state.connection_probe = SpotifyConnectionProbe(auth_manager, client)

        query_cache = QueryCache(
            cleanup_interval_seconds=settings.cache.cleanup_interval_seconds
        )
        await query_cache.start()
        app.state.query_cache = query_cache

        orchestrator = SyncOrchestrator(
            auth_manager=auth_manager,
            client=client,
            pipeline=EntityUpsertPipeline(db),
            token_store=token_store,
            settings=settings.sync,
            query_cache=query_cache,
        )
        app.state.sync_orchestrator = orchestrator
        app.state.listening_history = ListeningHistoryService(
            db, query_cache, settings.cache
        )

        if settings.sync.worker_enabled:
            sync_worker = SpotifySyncWorker(orchestrator, token_store, settings.sync)
            await sync_worker.start()
            app.state.sync_worker = sync_worker
        else:
            app.state.sync_worker = None
            logger.info("Periodic Spotify sync worker disabled")

        yield

    finally:
        logger.info("Shutting down application")
        if sync_worker is not None:
            await _stop_with_timeout("sync worker", sync_worker.stop(), timeout)
        if query_cache is not None:
            await _stop_with_timeout("query cache", query_cache.shutdown(), timeout)
        if client is not None:
            await client.close()
        if db is not None:
            await db.close()
        logger.info("Application shutdown complete")
