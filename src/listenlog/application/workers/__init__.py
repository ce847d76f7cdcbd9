"""Background workers."""

from listenlog.application.workers.spotify_sync_worker import SpotifySyncWorker

__all__ = ["SpotifySyncWorker"]
