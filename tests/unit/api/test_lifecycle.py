"""Startup/shutdown wiring, exercised through the real lifespan."""

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from listenlog.api.app import create_app
from listenlog.config import DatabaseSettings, Settings, SyncSettings
from listenlog.domain.exceptions import ConfigurationError
from listenlog.infrastructure.lifecycle import _validate_sqlite_path

USER = {"X-User-Id": "user-1"}


class TestValidateSqlitePath:
    def test_creates_missing_parent_directory(self, tmp_path: Path) -> None:
        db_file = tmp_path / "nested" / "dir" / "listenlog.db"
        settings = Settings(
            database=DatabaseSettings(url=f"sqlite+aiosqlite:///{db_file}")
        )

        _validate_sqlite_path(settings)

        assert db_file.parent.is_dir()
        assert not db_file.exists()

    def test_unusable_directory_is_configuration_error(self, tmp_path: Path) -> None:
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        settings = Settings(
            database=DatabaseSettings(
                url=f"sqlite+aiosqlite:///{blocker / 'listenlog.db'}"
            )
        )

        with pytest.raises(ConfigurationError):
            _validate_sqlite_path(settings)

    def test_memory_database_is_skipped(self) -> None:
        settings = Settings(
            database=DatabaseSettings(url="sqlite+aiosqlite:///:memory:")
        )
        _validate_sqlite_path(settings)


class TestLifespan:
    @pytest.fixture
    def app_settings(self, settings: Settings) -> Settings:
        return settings.model_copy(update={"sync": SyncSettings(worker_enabled=False)})

    def test_health_without_worker(self, app_settings: Settings) -> None:
        with TestClient(create_app(app_settings)) as client:
            response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["sync_worker"] is None
        assert body["query_cache"] is not None
        assert body["database"] is not None

    def test_unconnected_user_end_to_end(self, app_settings: Settings) -> None:
        with TestClient(create_app(app_settings)) as client:
            status = client.get("/api/spotify/sync", headers=USER)
            recent = client.get("/api/dashboard/recent-tracks", headers=USER)
            sync = client.post("/api/spotify/sync", headers=USER)
            disconnect = client.post("/api/spotify/disconnect", headers=USER)

        assert status.json() == {
            "isConnected": False,
            "isActive": False,
            "lastSyncAt": None,
            "nextSyncAt": None,
            "totalSyncs": 0,
        }
        assert recent.json() == {"tracks": []}
        assert sync.status_code == 200
        assert sync.json()["synced"]["errors"] == ["No active Spotify connection found"]
        assert disconnect.status_code == 409

    def test_worker_starts_and_stops(self, settings: Settings) -> None:
        with TestClient(create_app(settings)) as client:
            body = client.get("/health").json()

        assert body["sync_worker"]["running"] is True
