"""OAuth token lifecycle: authorization URL, code exchange, refresh rotation."""

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from urllib.parse import urlencode

from listenlog.config.settings import SpotifySettings
from listenlog.domain.dtos import TokenBundle
from listenlog.domain.entities import Connection
from listenlog.domain.exceptions import (
    AuthExchangeError,
    AuthRefreshError,
    ConfigurationError,
    InactiveConnectionError,
    NoConnectionError,
)
from listenlog.domain.ports import ITokenStore
from listenlog.infrastructure.integrations.spotify_client import SpotifyClient

logger = logging.getLogger(__name__)

# Read-only scopes; everything the sync and the dashboard need, nothing that can write
SPOTIFY_SCOPES: tuple[str, ...] = (
    "user-read-email",
    "user-read-private",
    "user-read-recently-played",
    "user-top-read",
    "user-read-playback-state",
    "user-read-currently-playing",
    "playlist-read-private",
    "playlist-read-collaborative",
)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class AuthManager:
    """The only place that hands out Spotify bearer tokens.

    Hey future me - two rules hold everything together here:
    1. Tokens are refreshed when they expire within 5 minutes (Connection.needs_refresh),
       never "just in time", so a token can't die halfway through a sync request.
    2. A failed refresh DEACTIVATES the connection. A revoked grant stays revoked; retrying it
       every sync tick would only spam Spotify's token endpoint.

    Refreshes are single-flight per user: one asyncio.Lock per user_id, and whoever gets
    the lock second re-reads the connection and reuses the token the first caller stored.
    Keep ONE AuthManager per process (app.state) or the locks stop meaning anything.
    """

    def __init__(
        self,
        client: SpotifyClient,
        token_store: ITokenStore,
        settings: SpotifySettings,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.client = client
        self.token_store = token_store
        self.settings = settings
        self._clock = clock
        self._refresh_locks: dict[str, asyncio.Lock] = {}
        # Callers holding or waiting on each lock; the lock is dropped when this hits 0
        self._refresh_users: dict[str, int] = {}

    # =========================================================================
    # Authorization-code flow
    # =========================================================================

    def build_authorization_url(self, state: str) -> str:
        """Build the Spotify consent URL.

        Args:
            state: Anti-CSRF value, echoed back on the callback

        Raises:
            ConfigurationError: If client id or redirect URI is not configured
        """
        if not self.settings.client_id.strip():
            raise ConfigurationError(
                "SPOTIFY_CLIENT_ID is not configured. "
                "Get credentials at https://developer.spotify.com/dashboard"
            )
        if not self.settings.redirect_uri.strip():
            raise ConfigurationError(
                "SPOTIFY_REDIRECT_URI is not configured. "
                "Set it to the callback URL registered for your Spotify app"
            )

        params = {
            "response_type": "code",
            "client_id": self.settings.client_id,
            "scope": " ".join(SPOTIFY_SCOPES),
            "redirect_uri": self.settings.redirect_uri,
            "state": state,
            # Always show the consent dialog, so switching Spotify accounts is possible
            "show_dialog": "true",
        }
        return f"{SpotifyClient.AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenBundle:
        """Exchange an authorization code (raises AuthExchangeError)."""
        return await self.client.exchange_code(code)

    async def refresh(self, refresh_token: str) -> TokenBundle:
        """Exchange a refresh token (raises AuthRefreshError)."""
        return await self.client.refresh_access_token(refresh_token)

    async def connect(self, user_id: str, code: str) -> Connection:
        """Finish the OAuth callback: exchange the code and store the connection."""
        bundle = await self.exchange_code(code)
        if not bundle.refresh_token:
            raise AuthExchangeError(
                "Spotify did not return a refresh token for the authorization code"
            )

        profile = await self.client.get_current_user(bundle.access_token)
        connection = await self.token_store.create_or_reactivate(
            user_id=user_id,
            external_user_id=profile.id,
            access_token=bundle.access_token,
            refresh_token=bundle.refresh_token,
            token_expires_at=bundle.expires_at(self._clock()),
        )
        logger.info(
            "Connected Spotify account %s for user %s", profile.id, user_id
        )
        return connection

    async def revoke(self, user_id: str) -> None:
        """Explicit disconnect: deactivate the user's connection."""
        connection = await self.token_store.find_by_user_id(user_id)
        if connection is None:
            raise NoConnectionError(user_id)
        await self.token_store.deactivate(user_id)
        logger.info("User %s disconnected their Spotify account", user_id)

    # =========================================================================
    # Token liveness
    # =========================================================================

    def is_refreshing(self, user_id: str) -> bool:
        """True while a refresh for user_id holds the lock."""
        lock = self._refresh_locks.get(user_id)
        return lock is not None and lock.locked()

    async def _load_usable_connection(self, user_id: str) -> Connection:
        connection = await self.token_store.find_by_user_id(user_id)
        if connection is None:
            raise NoConnectionError(user_id)
        if not connection.is_active:
            raise InactiveConnectionError(user_id)
        return connection

    async def get_valid_access_token(self, user_id: str) -> str:
        """Return a bearer token valid for at least the next 5 minutes.

        Raises:
            NoConnectionError: User never connected
            InactiveConnectionError: Connection was deactivated
            AuthRefreshError: Refresh failed (connection is now deactivated)
        """
        connection = await self._load_usable_connection(user_id)
        if not connection.needs_refresh(self._clock()):
            return connection.access_token

        lock = self._refresh_locks.setdefault(user_id, asyncio.Lock())
        self._refresh_users[user_id] = self._refresh_users.get(user_id, 0) + 1
        try:
            async with lock:
                return await self._refresh_under_lock(user_id)
        finally:
            self._release_refresh_lock(user_id)

    def _release_refresh_lock(self, user_id: str) -> None:
        remaining = self._refresh_users[user_id] - 1
        if remaining:
            self._refresh_users[user_id] = remaining
            return
        del self._refresh_users[user_id]
        del self._refresh_locks[user_id]

    async def _refresh_under_lock(self, user_id: str) -> str:
        """Refresh unless a caller ahead of us in the lock queue already did."""
        connection = await self._load_usable_connection(user_id)
        if not connection.needs_refresh(self._clock()):
            return connection.access_token

        logger.info("Refreshing Spotify token for user %s", user_id)
        try:
            bundle = await self.refresh(connection.refresh_token)
        except AuthRefreshError as e:
            logger.warning(
                "Token refresh failed for user %s (HTTP %s, %s); deactivating connection",
                user_id,
                e.http_status,
                e.error_code,
            )
            await self.token_store.deactivate(user_id)
            raise

        # Spotify only sometimes rotates the refresh token; keep the old one otherwise
        await self.token_store.update_tokens(
            user_id=user_id,
            access_token=bundle.access_token,
            refresh_token=bundle.refresh_token or connection.refresh_token,
            token_expires_at=bundle.expires_at(self._clock()),
        )
        return bundle.access_token
