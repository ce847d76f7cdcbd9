"""Tests for the Spotify connect / callback / disconnect endpoints."""

from collections.abc import Iterator
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from listenlog.api.app import create_app
from listenlog.api.dependencies import get_auth_manager, get_connection_probe
from listenlog.application.services import AuthManager, SpotifyConnectionProbe
from listenlog.config import Settings
from listenlog.domain.exceptions import (
    AuthExchangeError,
    ConfigurationError,
    NoConnectionError,
)

USER = {"X-User-Id": "user-1"}
AUTHORIZE = "https://accounts.spotify.com/authorize?client_id=test-client-id"


@pytest.fixture
def auth_manager(settings: Settings) -> MagicMock:
    mock = MagicMock(spec=AuthManager)
    mock.settings = settings.spotify
    mock.build_authorization_url = MagicMock(return_value=AUTHORIZE)
    mock.connect = AsyncMock()
    mock.revoke = AsyncMock()
    return mock


@pytest.fixture
def probe() -> MagicMock:
    mock = MagicMock(spec=SpotifyConnectionProbe)
    mock.test_connection = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def client(
    settings: Settings, auth_manager: MagicMock, probe: MagicMock
) -> Iterator[TestClient]:
    app = create_app(settings)
    app.dependency_overrides[get_auth_manager] = lambda: auth_manager
    app.dependency_overrides[get_connection_probe] = lambda: probe
    yield TestClient(app, follow_redirects=False)


class TestConnect:
    """GET /api/spotify/connect"""

    def test_redirects_and_sets_state_cookie(
        self, client: TestClient, auth_manager: MagicMock
    ) -> None:
        response = client.get("/api/spotify/connect", headers=USER)

        assert response.status_code == 307
        assert response.headers["location"] == AUTHORIZE
        state = response.cookies.get("spotify_auth_state")
        assert state
        auth_manager.build_authorization_url.assert_called_once_with(state)
        cookie_header = response.headers["set-cookie"].lower()
        assert "httponly" in cookie_header
        assert "max-age=600" in cookie_header

    def test_missing_configuration_is_503(
        self, client: TestClient, auth_manager: MagicMock
    ) -> None:
        auth_manager.build_authorization_url.side_effect = ConfigurationError(
            "SPOTIFY_CLIENT_ID is not configured"
        )

        response = client.get("/api/spotify/connect", headers=USER)

        assert response.status_code == 503
        assert "SPOTIFY_CLIENT_ID" not in response.text


class TestCallback:
    """GET /api/spotify/callback"""

    def test_success_connects_and_clears_cookie(
        self, client: TestClient, auth_manager: MagicMock
    ) -> None:
        client.cookies.set("spotify_auth_state", "abc")

        response = client.get(
            "/api/spotify/callback?code=the-code&state=abc", headers=USER
        )

        assert response.status_code == 307
        assert response.headers["location"] == "/dashboard?spotify_connected=true"
        auth_manager.connect.assert_awaited_once_with("user-1", "the-code")
        assert 'spotify_auth_state=""' in response.headers["set-cookie"]

    def test_provider_error_is_forwarded(
        self, client: TestClient, auth_manager: MagicMock
    ) -> None:
        response = client.get("/api/spotify/callback?error=access_denied", headers=USER)

        assert response.headers["location"] == "/dashboard?spotify_error=access_denied"
        auth_manager.connect.assert_not_awaited()

    def test_missing_params(self, client: TestClient) -> None:
        response = client.get("/api/spotify/callback?code=only-code", headers=USER)
        assert response.headers["location"] == "/dashboard?spotify_error=missing_params"

    def test_state_mismatch(self, client: TestClient, auth_manager: MagicMock) -> None:
        client.cookies.set("spotify_auth_state", "abc")

        response = client.get(
            "/api/spotify/callback?code=the-code&state=forged", headers=USER
        )

        assert response.headers["location"] == "/dashboard?spotify_error=invalid_state"
        auth_manager.connect.assert_not_awaited()

    def test_missing_state_cookie(self, client: TestClient) -> None:
        response = client.get(
            "/api/spotify/callback?code=the-code&state=abc", headers=USER
        )
        assert response.headers["location"] == "/dashboard?spotify_error=invalid_state"

    def test_exchange_failure(self, client: TestClient, auth_manager: MagicMock) -> None:
        client.cookies.set("spotify_auth_state", "abc")
        auth_manager.connect.side_effect = AuthExchangeError("bad code")

        response = client.get(
            "/api/spotify/callback?code=the-code&state=abc", headers=USER
        )

        assert response.headers["location"] == "/dashboard?spotify_error=connection_failed"


class TestDisconnect:
    """POST /api/spotify/disconnect"""

    def test_disconnect(self, client: TestClient, auth_manager: MagicMock) -> None:
        response = client.post("/api/spotify/disconnect", headers=USER)

        assert response.status_code == 200
        assert response.json() == {
            "message": "Spotify account disconnected successfully"
        }
        auth_manager.revoke.assert_awaited_once_with("user-1")

    def test_no_connection_is_409(
        self, client: TestClient, auth_manager: MagicMock
    ) -> None:
        auth_manager.revoke.side_effect = NoConnectionError("user-1")

        response = client.post("/api/spotify/disconnect", headers=USER)

        assert response.status_code == 409
        assert response.json() == {"error": "No Spotify connection found"}

    def test_unexpected_failure_is_500(
        self, client: TestClient, auth_manager: MagicMock
    ) -> None:
        auth_manager.revoke.side_effect = RuntimeError("db down")

        response = client.post("/api/spotify/disconnect", headers=USER)

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to disconnect Spotify account"}


def test_connection_probe(client: TestClient, probe: MagicMock) -> None:
    probe.test_connection.return_value = False

    response = client.get("/api/spotify/connection", headers=USER)

    assert response.json() == {"connected": False}
    probe.test_connection.assert_awaited_once_with("user-1")
