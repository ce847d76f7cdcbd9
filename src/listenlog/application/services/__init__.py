"""Application services."""

from listenlog.application.services.auth_manager import SPOTIFY_SCOPES, AuthManager
from listenlog.application.services.connection_probe import SpotifyConnectionProbe
from listenlog.application.services.entity_upsert_pipeline import EntityUpsertPipeline
from listenlog.application.services.listening_history_service import (
    GenreShare,
    ListeningHistoryService,
    ListeningStats,
    ListeningTrend,
    RecentPlay,
    TopArtist,
    TopTrack,
)
from listenlog.application.services.sync_orchestrator import (
    SyncOrchestrator,
    SyncResult,
    SyncStage,
    SyncStatus,
)

__all__ = [
    "SPOTIFY_SCOPES",
    "AuthManager",
    "EntityUpsertPipeline",
    "GenreShare",
    "ListeningHistoryService",
    "ListeningStats",
    "ListeningTrend",
    "RecentPlay",
    "SpotifyConnectionProbe",
    "SyncOrchestrator",
    "SyncResult",
    "SyncStage",
    "SyncStatus",
    "TopArtist",
    "TopTrack",
]
