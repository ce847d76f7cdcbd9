"""
Data Transfer Objects for Spotify payloads.

Hey future me - these DTOs are the boundary between Spotify's JSON and our entities.
The API client parses every response into one of these, so the upsert pipeline never
touches raw dicts. Validation happens in __post_init__ (fail fast on garbage payloads,
the caller records a per-item error and moves on).

Flow: Spotify JSON -> DTO (SpotifyClient) -> EntityUpsertPipeline -> Repository -> Entity
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from listenlog.domain.exceptions import ValidationError
from listenlog.domain.value_objects import (
    AudioFeatures,
    ContextValue,
    parse_play_context,
)


def _first_image_url(images: Any) -> str | None:
    if isinstance(images, list) and images:
        first = images[0]
        if isinstance(first, dict):
            return first.get("url")
    return None


def _external_urls(data: dict[str, Any]) -> dict[str, str]:
    urls = data.get("external_urls") or {}
    if not isinstance(urls, dict):
        return {}
    return {str(k): str(v) for k, v in urls.items() if isinstance(v, str)}


def _require_id(data: dict[str, Any], kind: str) -> str:
    value = data.get("id")
    if not value or not isinstance(value, str):
        raise ValidationError(f"{kind} payload missing id")
    return value


def parse_spotify_timestamp(value: str) -> datetime:
    """Parse Spotify ISO-8601 timestamps ("2025-01-21T12:00:00.123Z") as aware UTC."""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError) as e:
        raise ValidationError(f"Invalid Spotify timestamp: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


# =============================================================================
# OAuth
# =============================================================================


@dataclass
class TokenBundle:
    """Token endpoint response.

    Hey future me - refresh_token might be None on refresh! Spotify doesn't always
    rotate it. Callers MUST keep the previous refresh token in that case.
    """

    access_token: str
    expires_in: int
    refresh_token: str | None = None
    token_type: str = "Bearer"
    scope: str | None = None

    @classmethod
    def from_spotify(cls, data: dict[str, Any]) -> "TokenBundle":
        access_token = data.get("access_token")
        if not access_token:
            raise ValidationError("Token response missing access_token")
        return cls(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            expires_in=int(data.get("expires_in", 3600)),
            token_type=data.get("token_type", "Bearer"),
            scope=data.get("scope"),
        )

    def expires_at(self, now: datetime | None = None) -> datetime:
        return (now or datetime.now(UTC)) + timedelta(seconds=self.expires_in)


@dataclass
class SpotifyUserProfile:
    """Current user's Spotify profile (/v1/me)."""

    id: str
    display_name: str | None = None
    email: str | None = None
    country: str | None = None
    image_url: str | None = None
    follower_count: int | None = None

    @classmethod
    def from_spotify(cls, data: dict[str, Any]) -> "SpotifyUserProfile":
        return cls(
            id=_require_id(data, "Profile"),
            display_name=data.get("display_name"),
            email=data.get("email"),
            country=data.get("country"),
            image_url=_first_image_url(data.get("images")),
            follower_count=(data.get("followers") or {}).get("total"),
        )


# =============================================================================
# Catalog entities
# =============================================================================


@dataclass
class ArtistDTO:
    """Artist payload.

    is_summary=True marks the simplified artist objects embedded in tracks/albums
    (id + name only). The pipeline won't let those blank out genres/popularity that a
    full artist payload wrote earlier.
    """

    external_id: str
    name: str
    genres: list[str] = field(default_factory=list)
    popularity: int | None = None
    image_url: str | None = None
    follower_count: int | None = None
    external_urls: dict[str, str] = field(default_factory=dict)
    is_summary: bool = False

    def __post_init__(self) -> None:
        if not self.external_id:
            raise ValidationError("Artist external_id cannot be empty")
        if not self.name or not self.name.strip():
            raise ValidationError("Artist name cannot be empty")

    @classmethod
    def from_spotify(cls, data: dict[str, Any]) -> "ArtistDTO":
        """Build from a FULL artist object (top artists, /artists/{id})."""
        return cls(
            external_id=_require_id(data, "Artist"),
            name=data.get("name", ""),
            genres=list(data.get("genres") or []),
            popularity=data.get("popularity"),
            image_url=_first_image_url(data.get("images")),
            follower_count=(data.get("followers") or {}).get("total"),
            external_urls=_external_urls(data),
        )

    @classmethod
    def from_spotify_summary(cls, data: dict[str, Any]) -> "ArtistDTO":
        """Build from a simplified artist object embedded in a track or album."""
        return cls(
            external_id=_require_id(data, "Artist"),
            name=data.get("name", ""),
            external_urls=_external_urls(data),
            is_summary=True,
        )


@dataclass
class AlbumDTO:
    """Album payload (full or embedded in a track)."""

    external_id: str
    name: str
    album_type: str | None = None
    release_date: str | None = None
    total_tracks: int | None = None
    image_url: str | None = None
    external_urls: dict[str, str] = field(default_factory=dict)
    artists: list[ArtistDTO] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.external_id:
            raise ValidationError("Album external_id cannot be empty")
        if not self.name or not self.name.strip():
            raise ValidationError("Album name cannot be empty")

    @classmethod
    def from_spotify(cls, data: dict[str, Any]) -> "AlbumDTO":
        return cls(
            external_id=_require_id(data, "Album"),
            name=data.get("name", ""),
            album_type=data.get("album_type"),
            release_date=data.get("release_date"),
            total_tracks=data.get("total_tracks"),
            image_url=_first_image_url(data.get("images")),
            external_urls=_external_urls(data),
            artists=[
                ArtistDTO.from_spotify_summary(a)
                for a in data.get("artists") or []
                if a.get("id")
            ],
        )


@dataclass
class TrackDTO:
    """Track payload with its embedded artist and album summaries."""

    external_id: str
    name: str
    duration_ms: int
    artists: list[ArtistDTO] = field(default_factory=list)
    album: AlbumDTO | None = None
    popularity: int | None = None
    explicit: bool = False
    preview_url: str | None = None
    track_number: int | None = None
    external_urls: dict[str, str] = field(default_factory=dict)
    audio_features: AudioFeatures | None = None

    def __post_init__(self) -> None:
        if not self.external_id:
            raise ValidationError("Track external_id cannot be empty")
        if not self.name or not self.name.strip():
            raise ValidationError("Track name cannot be empty")
        if self.duration_ms < 0:
            raise ValidationError("Track duration_ms cannot be negative")

    @classmethod
    def from_spotify(cls, data: dict[str, Any]) -> "TrackDTO":
        album_data = data.get("album")
        return cls(
            external_id=_require_id(data, "Track"),
            name=data.get("name", ""),
            duration_ms=int(data.get("duration_ms") or 0),
            # Local files in playlists come back with id=None artists, skip those
            artists=[
                ArtistDTO.from_spotify_summary(a)
                for a in data.get("artists") or []
                if a.get("id")
            ],
            album=(
                AlbumDTO.from_spotify(album_data)
                if album_data and album_data.get("id")
                else None
            ),
            popularity=data.get("popularity"),
            explicit=bool(data.get("explicit", False)),
            preview_url=data.get("preview_url"),
            track_number=data.get("track_number"),
            external_urls=_external_urls(data),
        )


# =============================================================================
# Listening history pages
# =============================================================================


@dataclass
class PlayedItemDTO:
    """One recently-played entry."""

    track: TrackDTO
    played_at: datetime
    context: ContextValue | None = None

    @classmethod
    def from_spotify(cls, data: dict[str, Any]) -> "PlayedItemDTO":
        track_data = data.get("track")
        if not isinstance(track_data, dict):
            raise ValidationError("Recently-played item missing track")
        return cls(
            track=TrackDTO.from_spotify(track_data),
            played_at=parse_spotify_timestamp(data.get("played_at", "")),
            context=parse_play_context(data.get("context")),
        )


@dataclass
class RecentlyPlayedPage:
    """Cursor-paginated recently-played page.

    Hey future me - items that fail to parse are NOT dropped silently! They land in
    `invalid_items` with the reason, so the orchestrator can report them as per-item
    errors without losing the rest of the page.
    """

    items: list[PlayedItemDTO]
    limit: int
    next_url: str | None = None
    cursor_after: str | None = None
    cursor_before: str | None = None
    # (track name, reason) for entries that failed to parse
    invalid_items: list[tuple[str, str]] = field(default_factory=list)

    @classmethod
    def from_spotify(cls, data: dict[str, Any]) -> "RecentlyPlayedPage":
        items: list[PlayedItemDTO] = []
        invalid: list[tuple[str, str]] = []
        for raw in data.get("items") or []:
            try:
                items.append(PlayedItemDTO.from_spotify(raw))
            except ValidationError as e:
                name = (raw.get("track") or {}).get("name", "unknown")
                invalid.append((str(name), e.message))
        cursors = data.get("cursors") or {}
        return cls(
            items=items,
            limit=int(data.get("limit") or len(items)),
            next_url=data.get("next"),
            cursor_after=cursors.get("after"),
            cursor_before=cursors.get("before"),
            invalid_items=invalid,
        )

    @property
    def total_reported(self) -> int:
        return len(self.items) + len(self.invalid_items)


def _item_name(raw: Any) -> str:
    if isinstance(raw, dict) and raw.get("name"):
        return str(raw["name"])
    return "unknown"


@dataclass
class TopArtistsPage:
    """Offset-paginated top-artists page. Unparseable entries go to `invalid_items`."""

    items: list[ArtistDTO]
    total: int
    limit: int
    offset: int
    next_url: str | None = None
    # (artist name, reason)
    invalid_items: list[tuple[str, str]] = field(default_factory=list)

    @classmethod
    def from_spotify(cls, data: dict[str, Any]) -> "TopArtistsPage":
        items: list[ArtistDTO] = []
        invalid: list[tuple[str, str]] = []
        for raw in data.get("items") or []:
            try:
                items.append(ArtistDTO.from_spotify(raw))
            except ValidationError as e:
                invalid.append((_item_name(raw), e.message))
        return cls(
            items=items,
            total=int(data.get("total") or 0),
            limit=int(data.get("limit") or 0),
            offset=int(data.get("offset") or 0),
            next_url=data.get("next"),
            invalid_items=invalid,
        )


@dataclass
class TopTracksPage:
    """Offset-paginated top-tracks page. Unparseable entries go to `invalid_items`."""

    items: list[TrackDTO]
    total: int
    limit: int
    offset: int
    next_url: str | None = None
    # (track name, reason)
    invalid_items: list[tuple[str, str]] = field(default_factory=list)

    @classmethod
    def from_spotify(cls, data: dict[str, Any]) -> "TopTracksPage":
        items: list[TrackDTO] = []
        invalid: list[tuple[str, str]] = []
        for raw in data.get("items") or []:
            try:
                items.append(TrackDTO.from_spotify(raw))
            except ValidationError as e:
                invalid.append((_item_name(raw), e.message))
        return cls(
            items=items,
            total=int(data.get("total") or 0),
            limit=int(data.get("limit") or 0),
            offset=int(data.get("offset") or 0),
            next_url=data.get("next"),
            invalid_items=invalid,
        )



__all__ = [
    "AlbumDTO",
    "ArtistDTO",
    "PlayedItemDTO",
    "RecentlyPlayedPage",
    "SpotifyUserProfile",
    "TokenBundle",
    "TopArtistsPage",
    "TopTracksPage",
    "TrackDTO",
    "parse_spotify_timestamp",
]
