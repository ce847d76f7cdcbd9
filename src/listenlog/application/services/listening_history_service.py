"""Cached read queries over the listening history (dashboard data)."""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from listenlog.application.cache import QueryCache, user_key
from listenlog.config.settings import CacheSettings
from listenlog.domain.value_objects import ContextValue, context_from_json
from listenlog.infrastructure.persistence import Database, PlayEventRepository
from listenlog.infrastructure.persistence.models import ensure_utc_aware

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecentPlay:
    """One row of the "recently played" list."""

    played_at: datetime
    track_id: str
    track_external_id: str
    track_name: str
    duration_ms: int
    artist_names: list[str] = field(default_factory=list)
    album_name: str | None = None
    album_image_url: str | None = None
    context: ContextValue | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "playedAt": self.played_at.isoformat(),
            "trackId": self.track_id,
            "spotifyId": self.track_external_id,
            "name": self.track_name,
            "durationMs": self.duration_ms,
            "artists": list(self.artist_names),
            "album": self.album_name,
            "imageUrl": self.album_image_url,
            "context": self.context.to_json() if self.context else None,
        }


@dataclass(frozen=True)
class ListeningStats:
    """Aggregate listening numbers for a time window."""

    start: datetime
    end: datetime
    total_plays: int
    total_listening_time_seconds: int
    total_tracks: int = 0
    total_artists: int = 0
    total_albums: int = 0
    average_track_length_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "totalPlays": self.total_plays,
            "totalListeningTimeSeconds": self.total_listening_time_seconds,
            "totalTracks": self.total_tracks,
            "totalArtists": self.total_artists,
            "totalAlbums": self.total_albums,
            "averageTrackLength": self.average_track_length_ms,
        }


@dataclass(frozen=True)
class TopArtist:
    artist_id: str
    external_id: str
    name: str
    image_url: str | None
    genres: list[str]
    play_count: int
    total_listening_time_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "artist": {
                "id": self.artist_id,
                "name": self.name,
                "imageUrl": self.image_url,
                "genres": list(self.genres),
                "spotifyId": self.external_id,
            },
            "playCount": self.play_count,
            "totalListeningTime": self.total_listening_time_ms,
        }


@dataclass(frozen=True)
class TopTrack:
    """A track with its play count; artist is the first-credited one."""

    track_id: str
    external_id: str
    name: str
    duration_ms: int
    popularity: int | None
    preview_url: str | None
    play_count: int
    last_played: datetime
    artist_id: str | None = None
    artist_name: str | None = None
    artist_image_url: str | None = None
    album_id: str | None = None
    album_name: str | None = None
    album_image_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "track": {
                "id": self.track_id,
                "name": self.name,
                "spotifyId": self.external_id,
                "durationMs": self.duration_ms,
                "popularity": self.popularity,
                "previewUrl": self.preview_url,
            },
            "artist": {
                "id": self.artist_id,
                "name": self.artist_name,
                "imageUrl": self.artist_image_url,
            },
            "album": {
                "id": self.album_id,
                "name": self.album_name,
                "imageUrl": self.album_image_url,
            },
            "playCount": self.play_count,
            "lastPlayed": self.last_played.isoformat(),
        }


@dataclass(frozen=True)
class ListeningTrend:
    """Plays on one UTC day."""

    date: str
    total_tracks: int
    total_minutes: int
    unique_artists: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "totalTracks": self.total_tracks,
            "totalMinutes": self.total_minutes,
            "uniqueArtists": self.unique_artists,
        }


@dataclass(frozen=True)
class GenreShare:
    genre: str
    track_count: int
    percentage: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "genre": self.genre,
            "trackCount": self.track_count,
            "percentage": self.percentage,
        }


class ListeningHistoryService:
    """Read-through cached queries. Cache keys are user-scoped, so a finished sync
    (which calls QueryCache.invalidate_user) makes the next read hit the database."""

    def __init__(
        self,
        db: Database,
        query_cache: QueryCache,
        settings: CacheSettings | None = None,
    ) -> None:
        self.db = db
        self.query_cache = query_cache
        self.settings = settings or CacheSettings()

    async def get_recent_plays(self, user_id: str, limit: int = 50) -> list[RecentPlay]:
        async def load() -> list[RecentPlay]:
            async with self.db.session_scope() as session:
                events = await PlayEventRepository(session).list_recent(user_id, limit)
                return [
                    RecentPlay(
                        played_at=ensure_utc_aware(event.played_at),
                        track_id=event.track.id,
                        track_external_id=event.track.external_id,
                        track_name=event.track.name,
                        duration_ms=event.track.duration_ms,
                        artist_names=[a.name for a in event.track.artists],
                        album_name=event.track.album.name if event.track.album else None,
                        album_image_url=(
                            event.track.album.image_url if event.track.album else None
                        ),
                        context=context_from_json(event.context),
                    )
                    for event in events
                ]

        result: list[RecentPlay] = await self.query_cache.get_or_load(
            user_key(user_id, "recent_plays", limit),
            load,
            ttl_seconds=self.settings.recent_plays_ttl_seconds,
        )
        return result

    async def get_listening_stats(
        self, user_id: str, start: datetime, end: datetime
    ) -> ListeningStats:
        """Play count, listening time and catalog breadth for plays in [start, end)."""

        async def load() -> ListeningStats:
            async with self.db.session_scope() as session:
                repo = PlayEventRepository(session)
                plays, duration_ms = await repo.stats_between(user_id, start, end)
                totals = await repo.catalog_totals_between(user_id, start, end)
            return ListeningStats(
                start=start,
                end=end,
                total_plays=plays,
                total_listening_time_seconds=duration_ms // 1000,
                total_tracks=totals.tracks,
                total_artists=totals.artists,
                total_albums=totals.albums,
                average_track_length_ms=round(totals.average_duration_ms),
            )

        result: ListeningStats = await self.query_cache.get_or_load(
            user_key(user_id, "listening_stats", start.isoformat(), end.isoformat()),
            load,
            ttl_seconds=self.settings.listening_stats_ttl_seconds,
        )
        return result

    # =========================================================================
    # Analytics
    # =========================================================================

    async def get_top_artists(
        self,
        user_id: str,
        limit: int = 10,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[TopArtist]:
        """Most played artists in [start, end), or over all history when no window is given.

        A play of a track with several artists counts once for each of them.
        """

        async def load() -> list[TopArtist]:
            async with self.db.session_scope() as session:
                rows = await PlayEventRepository(session).top_artists(
                    user_id, limit, start, end
                )
                return [
                    TopArtist(
                        artist_id=artist.id,
                        external_id=artist.external_id,
                        name=artist.name,
                        image_url=artist.image_url,
                        genres=list(artist.genres or []),
                        play_count=plays,
                        total_listening_time_ms=duration_ms,
                    )
                    for artist, plays, duration_ms in rows
                ]

        result: list[TopArtist] = await self.query_cache.get_or_load(
            user_key(user_id, "top_artists", limit, _window_part(start, end)),
            load,
            ttl_seconds=self.settings.top_items_ttl_seconds,
        )
        return result

    async def get_top_tracks(
        self,
        user_id: str,
        limit: int = 10,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[TopTrack]:
        """Most played tracks in [start, end), or over all history when no window is given."""

        async def load() -> list[TopTrack]:
            async with self.db.session_scope() as session:
                rows = await PlayEventRepository(session).top_tracks(
                    user_id, limit, start, end
                )
                tops = []
                for track, plays, last_played in rows:
                    artist = track.artists[0] if track.artists else None
                    tops.append(
                        TopTrack(
                            track_id=track.id,
                            external_id=track.external_id,
                            name=track.name,
                            duration_ms=track.duration_ms,
                            popularity=track.popularity,
                            preview_url=track.preview_url,
                            play_count=plays,
                            last_played=last_played,
                            artist_id=artist.id if artist else None,
                            artist_name=artist.name if artist else None,
                            artist_image_url=artist.image_url if artist else None,
                            album_id=track.album.id if track.album else None,
                            album_name=track.album.name if track.album else None,
                            album_image_url=(
                                track.album.image_url if track.album else None
                            ),
                        )
                    )
                return tops

        result: list[TopTrack] = await self.query_cache.get_or_load(
            user_key(user_id, "top_tracks", limit, _window_part(start, end)),
            load,
            ttl_seconds=self.settings.top_items_ttl_seconds,
        )
        return result

    async def get_listening_trends(
        self, user_id: str, start: datetime, end: datetime | None = None
    ) -> list[ListeningTrend]:
        """One entry per UTC day with plays since start. Days without plays are absent."""

        async def load() -> list[ListeningTrend]:
            async with self.db.session_scope() as session:
                days = await PlayEventRepository(session).daily_plays(user_id, start, end)
            return [
                ListeningTrend(
                    date=day.day,
                    total_tracks=day.plays,
                    total_minutes=round(day.duration_ms / 60_000),
                    unique_artists=day.unique_artists,
                )
                for day in days
            ]

        result: list[ListeningTrend] = await self.query_cache.get_or_load(
            user_key(user_id, "listening_trends", _window_part(start, end)),
            load,
            ttl_seconds=self.settings.listening_trends_ttl_seconds,
        )
        return result

    async def get_genre_distribution(
        self, user_id: str, limit: int = 10
    ) -> list[GenreShare]:
        """Plays per genre over all history, top `limit` genres.

        Every genre of every credited artist gets the play, and percentages are
        relative to the genres returned, so they add up to 100.
        """

        async def load() -> list[GenreShare]:
            async with self.db.session_scope() as session:
                rows = await PlayEventRepository(session).artist_genre_plays(user_id)

            per_genre: Counter[str] = Counter()
            for genres, plays in rows:
                for genre in genres:
                    per_genre[genre] += plays
            top = sorted(per_genre.items(), key=lambda item: (-item[1], item[0]))[:limit]
            total = sum(plays for _, plays in top)
            return [
                GenreShare(
                    genre=genre,
                    track_count=plays,
                    percentage=round(plays / total * 100, 2) if total else 0.0,
                )
                for genre, plays in top
            ]

        result: list[GenreShare] = await self.query_cache.get_or_load(
            user_key(user_id, "genres", limit),
            load,
            ttl_seconds=self.settings.genre_distribution_ttl_seconds,
        )
        return result


def _window_part(start: datetime | None, end: datetime | None) -> str:
    if start is None and end is None:
        return "all"
    return f"{start.isoformat() if start else ''}..{end.isoformat() if end else ''}"
