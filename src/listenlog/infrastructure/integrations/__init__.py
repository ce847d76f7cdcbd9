"""External integration client implementations."""

from listenlog.infrastructure.integrations.spotify_client import SpotifyClient

__all__ = ["SpotifyClient"]
