"""Shared fixtures: settings, a throwaway SQLite database and a connected user."""

from collections.abc import AsyncIterator
from datetime import timedelta
from pathlib import Path

import pytest

from listenlog.config import DatabaseSettings, Settings, SpotifySettings
from listenlog.domain.entities import Connection
from listenlog.infrastructure.persistence import ConnectionRepository, Database
from tests.payloads import NOW


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing at a throwaway SQLite file.

    A file rather than :memory:, so concurrent sessions in a test get their own
    connections instead of sharing one StaticPool connection.
    """
    return Settings(
        database=DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'listenlog.db'}"),
        spotify=SpotifySettings(
            client_id="test-client-id",
            client_secret="test-client-secret",
            redirect_uri="http://localhost:8000/api/spotify/callback",
        ),
    )


@pytest.fixture
async def db(settings: Settings) -> AsyncIterator[Database]:
    """Fresh database with all tables created."""
    database = Database(settings)
    await database.create_tables()
    yield database
    await database.close()


@pytest.fixture
def token_store(db: Database) -> ConnectionRepository:
    return ConnectionRepository(db)


@pytest.fixture
async def connected_user(token_store: ConnectionRepository) -> Connection:
    """user-1 with a token that stays valid for an hour past NOW."""
    return await token_store.create_or_reactivate(
        user_id="user-1",
        external_user_id="spotify-user-1",
        access_token="access-1",
        refresh_token="refresh-1",
        token_expires_at=NOW + timedelta(hours=1),
    )
