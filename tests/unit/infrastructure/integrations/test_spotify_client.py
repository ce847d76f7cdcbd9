"""Tests for the Spotify HTTP client: token endpoint and error classification."""

import base64
import re
from collections.abc import AsyncIterator
from urllib.parse import parse_qs

import httpx
import pytest
from pytest_httpx import HTTPXMock

from listenlog.config import SpotifySettings
from listenlog.domain.exceptions import (
    APIError,
    AuthExchangeError,
    AuthRefreshError,
    RateLimitedError,
    ScopeOrAuthError,
)
from listenlog.domain.value_objects import TimeRange
from listenlog.infrastructure.integrations.spotify_client import (
    SpotifyClient,
    parse_retry_after,
)
from tests.payloads import (
    album_payload,
    artist_payload,
    played_item_payload,
    track_payload,
)

API = re.compile(r"https://api\.spotify\.com/v1/.*")


@pytest.fixture
def spotify_settings() -> SpotifySettings:
    return SpotifySettings(
        client_id="cid",
        client_secret="secret",
        redirect_uri="http://localhost:8000/api/spotify/callback",
    )


@pytest.fixture
async def client(spotify_settings: SpotifySettings) -> AsyncIterator[SpotifyClient]:
    spotify = SpotifyClient(spotify_settings)
    yield spotify
    await spotify.close()


class TestParseRetryAfter:
    def test_seconds(self) -> None:
        assert parse_retry_after("30") == 30

    def test_missing_or_garbage(self) -> None:
        assert parse_retry_after(None) is None
        assert parse_retry_after("soon") is None


class TestTokenEndpoint:
    """Authorization-code and refresh-token exchanges."""

    async def test_exchange_code_uses_basic_auth_and_form_body(
        self, client: SpotifyClient, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(
            method="POST",
            url=SpotifyClient.TOKEN_URL,
            json={
                "access_token": "access",
                "refresh_token": "refresh",
                "expires_in": 3600,
                "token_type": "Bearer",
                "scope": "user-read-recently-played",
            },
        )

        bundle = await client.exchange_code("the-code")

        assert bundle.access_token == "access"
        assert bundle.refresh_token == "refresh"
        request = httpx_mock.get_request()
        assert request is not None
        expected = base64.b64encode(b"cid:secret").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"
        form = parse_qs(request.content.decode())
        assert form["grant_type"] == ["authorization_code"]
        assert form["code"] == ["the-code"]
        assert form["redirect_uri"] == ["http://localhost:8000/api/spotify/callback"]

    async def test_exchange_code_failure_keeps_provider_body(
        self, client: SpotifyClient, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(
            method="POST",
            url=SpotifyClient.TOKEN_URL,
            status_code=400,
            json={"error": "invalid_grant", "error_description": "Invalid authorization code"},
        )

        with pytest.raises(AuthExchangeError) as exc_info:
            await client.exchange_code("stale-code")

        assert exc_info.value.http_status == 400
        assert "invalid_grant" in (exc_info.value.provider_error or "")

    async def test_refresh_without_rotation(
        self, client: SpotifyClient, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(
            method="POST",
            url=SpotifyClient.TOKEN_URL,
            json={"access_token": "fresh", "expires_in": 3600},
        )

        bundle = await client.refresh_access_token("refresh")

        assert bundle.access_token == "fresh"
        assert bundle.refresh_token is None
        request = httpx_mock.get_request()
        assert request is not None
        assert parse_qs(request.content.decode())["grant_type"] == ["refresh_token"]

    async def test_refresh_invalid_grant(
        self, client: SpotifyClient, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(
            method="POST",
            url=SpotifyClient.TOKEN_URL,
            status_code=400,
            json={"error": "invalid_grant", "error_description": "Refresh token revoked"},
        )

        with pytest.raises(AuthRefreshError) as exc_info:
            await client.refresh_access_token("revoked")

        assert exc_info.value.error_code == "invalid_grant"
        assert exc_info.value.http_status == 400
        assert exc_info.value.requires_reauth


class TestErrorClassification:
    """Non-2xx Web API responses become typed errors."""

    async def test_429_carries_retry_after_and_drains_bucket(
        self, client: SpotifyClient, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(
            url=API,
            status_code=429,
            headers={"Retry-After": "30"},
            json={"error": {"status": 429, "message": "API rate limit exceeded"}},
        )

        with pytest.raises(RateLimitedError) as exc_info:
            await client.get_current_user("token")

        assert exc_info.value.retry_after_seconds == 30
        assert client.rate_limiter.rate_limited_count == 1

    async def test_429_without_header(
        self, client: SpotifyClient, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(url=API, status_code=429)

        with pytest.raises(RateLimitedError) as exc_info:
            await client.get_current_user("token")

        assert exc_info.value.retry_after_seconds is None

    async def test_403_carries_reason(
        self, client: SpotifyClient, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(
            url=API,
            status_code=403,
            json={
                "error": {
                    "status": 403,
                    "message": "Insufficient client scope",
                    "reason": "INSUFFICIENT_SCOPE",
                }
            },
        )

        with pytest.raises(ScopeOrAuthError) as exc_info:
            await client.get_top_artists("token", TimeRange.SHORT_TERM)

        assert exc_info.value.status == 403
        assert exc_info.value.reason == "INSUFFICIENT_SCOPE"

    async def test_401_without_reason_uses_message(
        self, client: SpotifyClient, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(
            url=API,
            status_code=401,
            json={"error": {"status": 401, "message": "The access token expired"}},
        )

        with pytest.raises(ScopeOrAuthError) as exc_info:
            await client.get_current_user("token")

        assert exc_info.value.status == 401
        assert exc_info.value.reason == "The access token expired"

    async def test_500_is_generic_api_error(
        self, client: SpotifyClient, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(
            url=API,
            status_code=500,
            json={"error": {"status": 500, "message": "Server error"}},
        )

        with pytest.raises(APIError) as exc_info:
            await client.get_recently_played("token")

        assert exc_info.value.status == 500
        assert exc_info.value.api_message == "Server error"

    async def test_transport_failure_is_status_zero(
        self, client: SpotifyClient, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_exception(httpx.ConnectError("All connection attempts failed"))

        with pytest.raises(APIError) as exc_info:
            await client.get_current_user("token")

        assert exc_info.value.status == 0


class TestWebApiCalls:
    """Successful calls: headers, query parameters and parsing."""

    async def test_recently_played_sends_bearer_and_limit(
        self, client: SpotifyClient, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(
            url=API,
            json={"items": [played_item_payload()], "limit": 50, "cursors": None},
        )

        page = await client.get_recently_played("token", limit=50, after=1737459000000)

        assert page.items[0].track.external_id == "trackY"
        request = httpx_mock.get_request()
        assert request is not None
        assert request.headers["Authorization"] == "Bearer token"
        assert request.url.path == "/v1/me/player/recently-played"
        assert request.url.params["limit"] == "50"
        assert request.url.params["after"] == "1737459000000"

    async def test_top_tracks_passes_time_range(
        self, client: SpotifyClient, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(
            url=API,
            json={"items": [track_payload()], "total": 1, "limit": 50, "offset": 0},
        )

        page = await client.get_top_tracks("token", TimeRange.LONG_TERM)

        assert page.total == 1
        request = httpx_mock.get_request()
        assert request is not None
        assert request.url.path == "/v1/me/top/tracks"
        assert request.url.params["time_range"] == "long_term"

    async def test_get_artist(
        self, client: SpotifyClient, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(url=API, json=artist_payload(genres=["rock"]))

        artist = await client.get_artist("artistX", "token")

        assert artist.genres == ["rock"]
        request = httpx_mock.get_request()
        assert request is not None
        assert request.url.path == "/v1/artists/artistX"

    async def test_get_album(
        self, client: SpotifyClient, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(url=API, json=album_payload())

        album = await client.get_album("albumZ", "token")

        assert album.name == "Help!"
        assert album.image_url == "https://i.scdn.co/image/albumZ"
        assert [a.external_id for a in album.artists] == ["artistX"]
        request = httpx_mock.get_request()
        assert request is not None
        assert request.url.path == "/v1/albums/albumZ"

    async def test_get_audio_features_keeps_unknown_fields(
        self, client: SpotifyClient, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(
            url=API,
            json={
                "id": "trackY",
                "type": "audio_features",
                "danceability": 0.33,
                "tempo": 97.0,
                "duration_ms": 125000,
            },
        )

        features = await client.get_audio_features("trackY", "token")

        assert features.danceability == 0.33
        assert features.tempo == 97.0
        assert features.extra == {"duration_ms": 125000}
        request = httpx_mock.get_request()
        assert request is not None
        assert request.url.path == "/v1/audio-features/trackY"
