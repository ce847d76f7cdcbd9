"""Best-effort Spotify connection health probe."""

import logging

from listenlog.application.services.auth_manager import AuthManager
from listenlog.infrastructure.integrations.spotify_client import SpotifyClient

logger = logging.getLogger(__name__)


class SpotifyConnectionProbe:
    """Answers "does this user's Spotify connection work right now?" for the UI.

    Never used for sync decisions, the orchestrator does its own validation.
    """

    def __init__(self, auth_manager: AuthManager, client: SpotifyClient) -> None:
        self.auth_manager = auth_manager
        self.client = client

    async def test_connection(self, user_id: str) -> bool:
        """Fetch the profile with a valid token. False on ANY failure, never raises."""
        try:
            access_token = await self.auth_manager.get_valid_access_token(user_id)
            await self.client.get_current_user(access_token)
        except Exception as e:
            logger.info(
                "Spotify connection probe failed for user %s: %s: %s",
                user_id,
                type(e).__name__,
                e,
            )
            return False
        return True
