"""ListenLog - Spotify listening history sync and analytics backend."""

__version__ = "0.1.0"
