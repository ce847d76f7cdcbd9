"""Normalize Spotify DTOs into catalog rows and play events."""

import logging
from datetime import datetime
from typing import Any

from listenlog.domain.dtos import AlbumDTO, ArtistDTO, TrackDTO
from listenlog.domain.entities import Album, Artist, PlayEvent, Track
from listenlog.domain.value_objects import ContextValue
from listenlog.infrastructure.persistence import (
    AlbumModel,
    ArtistModel,
    CatalogRepository,
    Database,
    PlayEventRepository,
    TrackModel,
)
from listenlog.infrastructure.persistence.repositories import (
    album_to_entity,
    artist_to_entity,
    track_to_entity,
)

logger = logging.getLogger(__name__)


def _artist_values(dto: ArtistDTO) -> dict[str, Any]:
    # Hey future me - the artist summaries embedded in tracks carry only id + name. If we
    # wrote genres=[] / popularity=None for those, syncing a track would wipe the rich data
    # a top-artists sync stored earlier. So summaries only write what they actually know.
    if dto.is_summary:
        values: dict[str, Any] = {"name": dto.name}
        if dto.external_urls:
            values["external_urls"] = dto.external_urls
        return values
    return {
        "name": dto.name,
        "genres": list(dto.genres),
        "popularity": dto.popularity,
        "image_url": dto.image_url,
        "follower_count": dto.follower_count,
        "external_urls": dto.external_urls,
    }


def _album_values(dto: AlbumDTO) -> dict[str, Any]:
    return {
        "name": dto.name,
        "album_type": dto.album_type,
        "release_date": dto.release_date,
        "total_tracks": dto.total_tracks,
        "image_url": dto.image_url,
        "external_urls": dto.external_urls,
    }


def _track_values(dto: TrackDTO, album_id: str | None) -> dict[str, Any]:
    values: dict[str, Any] = {
        "name": dto.name,
        "duration_ms": dto.duration_ms,
        "album_id": album_id,
        "popularity": dto.popularity,
        "explicit": dto.explicit,
        "preview_url": dto.preview_url,
        "track_number": dto.track_number,
        "external_urls": dto.external_urls,
    }
    # Audio features come from a separate endpoint; absent here means "not fetched"
    if dto.audio_features is not None:
        values["audio_features"] = dto.audio_features.to_json()
    return values


class EntityUpsertPipeline:
    """Idempotent writes for artists, albums, tracks and play events.

    Every public method runs in its own transaction (Database.session_scope), so one
    bad item rolls back alone and never poisons the rest of a sync batch. Callers catch
    per item and keep going.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    async def _write_artist(self, repo: CatalogRepository, dto: ArtistDTO) -> ArtistModel:
        model: ArtistModel = await repo.upsert_by_external_id(
            ArtistModel, dto.external_id, _artist_values(dto)
        )
        return model

    async def _write_album(self, repo: CatalogRepository, dto: AlbumDTO) -> AlbumModel:
        artist_ids = [(await self._write_artist(repo, a)).id for a in dto.artists]
        model: AlbumModel = await repo.upsert_by_external_id(
            AlbumModel, dto.external_id, _album_values(dto)
        )
        await repo.link_album_artists(model.id, artist_ids)
        return model

    async def upsert_artist(self, dto: ArtistDTO) -> Artist:
        """Insert or update an artist keyed on its Spotify id."""
        async with self.db.session_scope() as session:
            model = await self._write_artist(CatalogRepository(session), dto)
            return artist_to_entity(model)

    async def upsert_album(self, dto: AlbumDTO) -> Album:
        """Insert or update an album (and its embedded artists)."""
        async with self.db.session_scope() as session:
            model = await self._write_album(CatalogRepository(session), dto)
            return album_to_entity(model)

    async def upsert_track(self, dto: TrackDTO) -> Track:
        """Insert or update a track, its embedded artists/album, and the join rows.

        Order matters for the foreign keys: artists, then album, then the track row,
        then the links.
        """
        async with self.db.session_scope() as session:
            repo = CatalogRepository(session)

            artist_ids: list[str] = []
            for artist_dto in dto.artists:
                artist = await self._write_artist(repo, artist_dto)
                if artist.id not in artist_ids:
                    artist_ids.append(artist.id)

            album_id: str | None = None
            if dto.album is not None:
                album_id = (await self._write_album(repo, dto.album)).id

            model: TrackModel = await repo.upsert_by_external_id(
                TrackModel, dto.external_id, _track_values(dto, album_id)
            )
            await repo.link_track_artists(model.id, artist_ids)

            logger.debug(
                "Upserted track %s (%s) with %d artists",
                dto.external_id,
                dto.name,
                len(artist_ids),
            )
            return track_to_entity(model, artist_ids=artist_ids)

    async def record_play_event(
        self,
        user_id: str,
        track_id: str,
        played_at: datetime,
        context: ContextValue | None = None,
    ) -> PlayEvent | None:
        """Append a play event.

        Returns:
            The new PlayEvent, or None when this (user, track, played_at) was already
            recorded by an earlier sync over an overlapping window
        """
        async with self.db.session_scope() as session:
            return await PlayEventRepository(session).insert_if_absent(
                user_id=user_id,
                track_id=track_id,
                played_at=played_at,
                context=context.to_json() if context is not None else None,
            )
