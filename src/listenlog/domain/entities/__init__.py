"""Domain entities for the listening-history store.

Plain dataclasses returned by repositories. The ORM models live in
infrastructure/persistence/models.py and never leak past the repository layer.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from listenlog.domain.value_objects import AudioFeatures, ContextValue

# Hey future me - the 5 minute buffer is LOAD-BEARING. Without it a token can expire while
# a request is in flight to Spotify and we get a random 401 halfway through a sync.
TOKEN_EXPIRY_BUFFER = timedelta(minutes=5)


@dataclass
class Connection:
    """Stored OAuth credentials binding one local user to one Spotify account."""

    user_id: str
    external_user_id: str
    access_token: str
    refresh_token: str
    token_expires_at: datetime
    is_active: bool = True
    last_sync_at: datetime | None = None
    total_syncs: int = 0
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def needs_refresh(self, now: datetime | None = None) -> bool:
        """True unless the token is valid for longer than the safety buffer."""
        current = now or datetime.now(UTC)
        return not self.token_expires_at > current + TOKEN_EXPIRY_BUFFER


@dataclass
class Artist:
    """Artist upserted from Spotify, keyed on external_id."""

    id: str
    external_id: str
    name: str
    genres: list[str] = field(default_factory=list)
    popularity: int | None = None
    image_url: str | None = None
    follower_count: int | None = None
    external_urls: dict[str, str] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Album:
    """Album upserted from Spotify, keyed on external_id."""

    id: str
    external_id: str
    name: str
    album_type: str | None = None
    release_date: str | None = None
    total_tracks: int | None = None
    image_url: str | None = None
    external_urls: dict[str, str] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Track:
    """Track upserted from Spotify, keyed on external_id."""

    id: str
    external_id: str
    name: str
    duration_ms: int
    album_id: str | None = None
    popularity: int | None = None
    explicit: bool = False
    preview_url: str | None = None
    track_number: int | None = None
    external_urls: dict[str, str] = field(default_factory=dict)
    audio_features: AudioFeatures | None = None
    artist_ids: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class PlayEvent:
    """One play of one track by one user (append-only)."""

    id: str
    user_id: str
    track_id: str
    played_at: datetime
    context: ContextValue | None = None
    created_at: datetime | None = None


__all__ = [
    "TOKEN_EXPIRY_BUFFER",
    "Album",
    "Artist",
    "Connection",
    "PlayEvent",
    "Track",
]
