"""Repository tests against an in-memory SQLite database."""

from datetime import timedelta

import pytest

from listenlog.config import DatabaseSettings, Settings
from listenlog.domain.entities import Connection
from listenlog.domain.exceptions import ConfigurationError
from listenlog.infrastructure.persistence import (
    ArtistModel,
    CatalogRepository,
    ConnectionRepository,
    Database,
    PlayEventRepository,
    TrackModel,
)
from tests.payloads import NOW


class TestConnectionRepository:
    """Token store behaviour."""

    async def test_find_missing_user(self, token_store: ConnectionRepository) -> None:
        assert await token_store.find_by_user_id("nobody") is None

    async def test_create_and_find(
        self, token_store: ConnectionRepository, connected_user: Connection
    ) -> None:
        found = await token_store.find_by_user_id("user-1")
        assert found is not None
        assert found.external_user_id == "spotify-user-1"
        assert found.is_active
        assert found.last_sync_at is None
        assert found.total_syncs == 0
        assert found.token_expires_at == NOW + timedelta(hours=1)

    async def test_deactivated_rows_are_still_returned(
        self, token_store: ConnectionRepository, connected_user: Connection
    ) -> None:
        await token_store.deactivate("user-1")
        found = await token_store.find_by_user_id("user-1")
        assert found is not None
        assert not found.is_active

    async def test_reconnect_reactivates_same_row(
        self, token_store: ConnectionRepository, connected_user: Connection
    ) -> None:
        await token_store.deactivate("user-1")
        again = await token_store.create_or_reactivate(
            user_id="user-1",
            external_user_id="spotify-user-1",
            access_token="access-2",
            refresh_token="refresh-2",
            token_expires_at=NOW + timedelta(hours=2),
        )
        assert again.id == connected_user.id
        assert again.is_active
        assert again.access_token == "access-2"

    async def test_update_tokens(
        self, token_store: ConnectionRepository, connected_user: Connection
    ) -> None:
        await token_store.update_tokens(
            user_id="user-1",
            access_token="access-2",
            refresh_token="refresh-1",
            token_expires_at=NOW + timedelta(hours=3),
        )
        found = await token_store.find_by_user_id("user-1")
        assert found is not None
        assert found.access_token == "access-2"
        assert found.token_expires_at == NOW + timedelta(hours=3)

    async def test_mark_last_sync_counts_syncs(
        self, token_store: ConnectionRepository, connected_user: Connection
    ) -> None:
        await token_store.mark_last_sync("user-1", NOW)
        await token_store.mark_last_sync("user-1", NOW + timedelta(hours=6))
        found = await token_store.find_by_user_id("user-1")
        assert found is not None
        assert found.last_sync_at == NOW + timedelta(hours=6)
        assert found.total_syncs == 2

    async def test_list_due_for_sync(self, token_store: ConnectionRepository) -> None:
        for user_id in ("never-synced", "stale", "fresh", "inactive"):
            await token_store.create_or_reactivate(
                user_id=user_id,
                external_user_id=f"spotify-{user_id}",
                access_token="a",
                refresh_token="r",
                token_expires_at=NOW + timedelta(hours=1),
            )
        await token_store.mark_last_sync("stale", NOW - timedelta(hours=7))
        await token_store.mark_last_sync("fresh", NOW - timedelta(hours=1))
        await token_store.deactivate("inactive")

        due = await token_store.list_due_for_sync(NOW - timedelta(hours=6))

        assert [c.user_id for c in due] == ["never-synced", "stale"]


class TestCatalogRepository:
    """Atomic upserts keyed on external_id."""

    async def test_upsert_keeps_id_and_updates_values(self, db: Database) -> None:
        async with db.session_scope() as session:
            repo = CatalogRepository(session)
            first = await repo.upsert_by_external_id(
                ArtistModel, "artistX", {"name": "Beatles", "genres": ["rock"]}
            )
            first_id, first_created = first.id, first.created_at
        async with db.session_scope() as session:
            repo = CatalogRepository(session)
            second = await repo.upsert_by_external_id(
                ArtistModel, "artistX", {"name": "The Beatles"}
            )
            assert second.id == first_id
            assert second.created_at == first_created
            assert second.name == "The Beatles"
            # Columns not in values are left alone on the update path
            assert second.genres == ["rock"]
            assert await repo.count(ArtistModel) == 1

    async def test_track_artist_links_keep_order_and_ignore_duplicates(
        self, db: Database
    ) -> None:
        async with db.session_scope() as session:
            repo = CatalogRepository(session)
            a = await repo.upsert_by_external_id(ArtistModel, "a", {"name": "A"})
            b = await repo.upsert_by_external_id(ArtistModel, "b", {"name": "B"})
            track = await repo.upsert_by_external_id(
                TrackModel, "t", {"name": "T", "duration_ms": 1000}
            )
            await repo.link_track_artists(track.id, [b.id, a.id])
            await repo.link_track_artists(track.id, [b.id, a.id])
            track_id = track.id

        async with db.session_scope() as session:
            loaded = await CatalogRepository(session).get_track(track_id)
            assert loaded is not None
            assert [artist.name for artist in loaded.artists] == ["B", "A"]


class TestPlayEventRepository:
    """Append-only play events."""

    async def _track_id(self, db: Database) -> str:
        async with db.session_scope() as session:
            track = await CatalogRepository(session).upsert_by_external_id(
                TrackModel, "trackY", {"name": "Yesterday", "duration_ms": 125_000}
            )
            return str(track.id)

    async def test_duplicate_play_is_ignored(self, db: Database) -> None:
        track_id = await self._track_id(db)
        async with db.session_scope() as session:
            repo = PlayEventRepository(session)
            first = await repo.insert_if_absent("user-1", track_id, NOW, None)
            second = await repo.insert_if_absent("user-1", track_id, NOW, None)
            assert first is not None
            assert second is None
            assert await repo.count_for_user("user-1") == 1

    async def test_same_instant_for_other_user_is_a_new_play(self, db: Database) -> None:
        track_id = await self._track_id(db)
        async with db.session_scope() as session:
            repo = PlayEventRepository(session)
            assert await repo.insert_if_absent("user-1", track_id, NOW, None)
            assert await repo.insert_if_absent("user-2", track_id, NOW, None)

    async def test_stats_between_is_half_open(self, db: Database) -> None:
        track_id = await self._track_id(db)
        async with db.session_scope() as session:
            repo = PlayEventRepository(session)
            await repo.insert_if_absent("user-1", track_id, NOW - timedelta(hours=2), None)
            await repo.insert_if_absent("user-1", track_id, NOW - timedelta(hours=1), None)
            await repo.insert_if_absent("user-1", track_id, NOW, None)

            plays, duration_ms = await repo.stats_between(
                "user-1", NOW - timedelta(hours=2), NOW
            )

        assert plays == 2
        assert duration_ms == 250_000



class TestDatabaseBackend:
    """Only backends with an ON CONFLICT insert are accepted."""

    def test_unsupported_backend_fails_at_construction(self) -> None:
        settings = Settings(
            database=DatabaseSettings(url="mysql+aiomysql://user:pw@localhost/listenlog")
        )

        with pytest.raises(ConfigurationError, match="Unsupported database backend 'mysql'"):
            Database(settings)

    def test_malformed_url_is_a_configuration_error(self) -> None:
        settings = Settings(database=DatabaseSettings(url="not a database url"))

        with pytest.raises(ConfigurationError, match="Invalid DATABASE_URL"):
            Database(settings)

    async def test_sqlite_is_accepted(self, db: Database) -> None:
        assert db.dialect_name == "sqlite"
