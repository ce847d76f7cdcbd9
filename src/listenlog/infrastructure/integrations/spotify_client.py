"""Spotify HTTP client: token endpoint calls plus the read-only Web API endpoints we sync."""

import logging
from typing import Any

import httpx

from listenlog.config.settings import SpotifySettings
from listenlog.domain.dtos import (
    AlbumDTO,
    ArtistDTO,
    RecentlyPlayedPage,
    SpotifyUserProfile,
    TokenBundle,
    TopArtistsPage,
    TopTracksPage,
    TrackDTO,
)
from listenlog.domain.exceptions import (
    APIError,
    AuthExchangeError,
    AuthRefreshError,
    RateLimitedError,
    ScopeOrAuthError,
)
from listenlog.domain.value_objects import AudioFeatures, TimeRange
from listenlog.infrastructure.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


def parse_retry_after(value: str | None) -> int | None:
    """Parse a Retry-After header given in seconds. None when missing or unparseable."""
    if value is None:
        return None
    try:
        seconds = int(float(value.strip()))
    except ValueError:
        return None
    return max(seconds, 0)


def _spotify_error_fields(response: httpx.Response) -> tuple[str | None, str | None]:
    """Pull (message, reason) out of Spotify's {"error": {...}} body, if it has one."""
    try:
        body = response.json()
    except ValueError:
        return None, None
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("message"), error.get("reason")
    # Accounts service uses the OAuth shape: {"error": "invalid_grant", "error_description": ...}
    if isinstance(error, str):
        return body.get("error_description") or error, error
    return None, None


class SpotifyClient:
    """HTTP client for the Spotify Accounts service and Web API.

    Hey future me - this client never retries. Every non-2xx becomes a typed exception:
    429 -> RateLimitedError, 401/403 -> ScopeOrAuthError, everything else -> APIError
    (status 0 for transport failures). The sync orchestrator decides what to do with them.
    """

    AUTHORIZE_URL = "https://accounts.spotify.com/authorize"
    TOKEN_URL = "https://accounts.spotify.com/api/token"  # nosec B105 - public endpoint URL, not a password
    API_BASE_URL = "https://api.spotify.com/v1"

    def __init__(
        self,
        settings: SpotifySettings,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.settings = settings
        self.rate_limiter = rate_limiter or RateLimiter.for_spotify(
            max_tokens=settings.rate_limit_tokens,
            refill_rate=settings.rate_limit_refill_per_second,
        )
        self._client: httpx.AsyncClient | None = None

    # Lazy so the AsyncClient is created inside the running event loop
    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.request_timeout)
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # =========================================================================
    # Accounts service (token endpoint)
    # =========================================================================

    async def _post_token_form(self, data: dict[str, str]) -> httpx.Response:
        client = await self._get_client()
        # Spotify wants HTTP Basic with client_id:client_secret AND a form-encoded body
        return await client.post(
            self.TOKEN_URL,
            data=data,
            auth=(self.settings.client_id, self.settings.client_secret),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

    async def exchange_code(self, code: str) -> TokenBundle:
        """Exchange an authorization code for a token bundle.

        Raises:
            AuthExchangeError: On any non-2xx or transport failure. The raw provider
                body is kept on the exception for diagnostics.
        """
        try:
            response = await self._post_token_form(
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.settings.redirect_uri,
                }
            )
        except httpx.TransportError as e:
            raise AuthExchangeError(
                f"Token exchange request failed: {e}", provider_error=str(e)
            ) from e

        if response.is_success:
            return TokenBundle.from_spotify(response.json())

        logger.warning(
            "Spotify rejected authorization code (HTTP %d): %s",
            response.status_code,
            response.text,
        )
        raise AuthExchangeError(
            f"Failed to exchange authorization code (HTTP {response.status_code})",
            provider_error=response.text,
            http_status=response.status_code,
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenBundle:
        """Trade a refresh token for a new access token.

        The returned bundle's refresh_token is None when Spotify didn't rotate it.

        Raises:
            AuthRefreshError: On any non-2xx or transport failure.
        """
        try:
            response = await self._post_token_form(
                {"grant_type": "refresh_token", "refresh_token": refresh_token}
            )
        except httpx.TransportError as e:
            raise AuthRefreshError(
                f"Token refresh request failed: {e}", provider_error=str(e)
            ) from e

        if response.is_success:
            return TokenBundle.from_spotify(response.json())

        # 400 {"error": "invalid_grant"} means the user revoked us; requires_reauth picks it up
        _, error_code = _spotify_error_fields(response)
        raise AuthRefreshError(
            f"Failed to refresh Spotify token (HTTP {response.status_code})",
            provider_error=response.text,
            error_code=error_code,
            http_status=response.status_code,
        )

    # =========================================================================
    # Web API
    # =========================================================================

    async def _api_request(
        self,
        path: str,
        access_token: str,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Rate-limited GET against the Web API, with error classification."""
        client = await self._get_client()
        url = f"{self.API_BASE_URL}{path}"
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

        try:
            async with self.rate_limiter:
                response = await client.get(url, params=params, headers=headers)
        except httpx.TransportError as e:
            logger.warning("Spotify request to %s failed: %s", path, e)
            raise APIError(0, str(e) or e.__class__.__name__) from e

        if response.is_success:
            if response.status_code == 204 or not response.content:
                return {}
            data = response.json()
            return data if isinstance(data, dict) else {"items": data}

        message, reason = _spotify_error_fields(response)

        if response.status_code == 429:
            self.rate_limiter.drain()
            raise RateLimitedError(
                parse_retry_after(response.headers.get("Retry-After")), url=url
            )

        if response.status_code in (401, 403):
            raise ScopeOrAuthError(
                reason or message or response.reason_phrase, response.status_code
            )

        raise APIError(response.status_code, message or response.reason_phrase)

    async def get_current_user(self, access_token: str) -> SpotifyUserProfile:
        """Fetch the current user's profile (/me)."""
        data = await self._api_request("/me", access_token)
        return SpotifyUserProfile.from_spotify(data)

    async def get_recently_played(
        self,
        access_token: str,
        limit: int = 50,
        after: int | None = None,
        before: int | None = None,
    ) -> RecentlyPlayedPage:
        """Fetch one page of the user's recently-played tracks.

        Args:
            access_token: Valid bearer token
            limit: Page size (Spotify max 50)
            after: Unix ms cursor, only plays after this instant
            before: Unix ms cursor, only plays before this instant

        Returns:
            Parsed page (cursor pagination, not followed automatically)
        """
        params: dict[str, Any] = {"limit": limit}
        if after is not None:
            params["after"] = after
        if before is not None:
            params["before"] = before
        data = await self._api_request(
            "/me/player/recently-played", access_token, params
        )
        return RecentlyPlayedPage.from_spotify(data)

    async def get_top_artists(
        self,
        access_token: str,
        time_range: TimeRange = TimeRange.MEDIUM_TERM,
        limit: int = 50,
        offset: int = 0,
    ) -> TopArtistsPage:
        """Fetch one page of the user's top artists for a time range."""
        data = await self._api_request(
            "/me/top/artists",
            access_token,
            {"time_range": TimeRange(time_range).value, "limit": limit, "offset": offset},
        )
        return TopArtistsPage.from_spotify(data)

    async def get_top_tracks(
        self,
        access_token: str,
        time_range: TimeRange = TimeRange.MEDIUM_TERM,
        limit: int = 50,
        offset: int = 0,
    ) -> TopTracksPage:
        """Fetch one page of the user's top tracks for a time range."""
        data = await self._api_request(
            "/me/top/tracks",
            access_token,
            {"time_range": TimeRange(time_range).value, "limit": limit, "offset": offset},
        )
        return TopTracksPage.from_spotify(data)

    async def get_track(self, track_id: str, access_token: str) -> TrackDTO:
        """Fetch a single track."""
        data = await self._api_request(f"/tracks/{track_id}", access_token)
        return TrackDTO.from_spotify(data)

    async def get_artist(self, artist_id: str, access_token: str) -> ArtistDTO:
        """Fetch a single (full) artist."""
        data = await self._api_request(f"/artists/{artist_id}", access_token)
        return ArtistDTO.from_spotify(data)

    async def get_album(self, album_id: str, access_token: str) -> AlbumDTO:
        """Fetch a single album."""
        data = await self._api_request(f"/albums/{album_id}", access_token)
        return AlbumDTO.from_spotify(data)

    async def get_audio_features(
        self, track_id: str, access_token: str
    ) -> AudioFeatures:
        """Fetch the audio-features summary for a track."""
        data = await self._api_request(f"/audio-features/{track_id}", access_token)
        return AudioFeatures.from_spotify(data)

    async def __aenter__(self) -> "SpotifyClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
