"""Repository implementations for the listening-history store."""

import logging
import uuid
from datetime import UTC, datetime
from typing import Any, NamedTuple

from sqlalchemy import ColumnElement, distinct, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from listenlog.domain.entities import Album, Artist, Connection, PlayEvent, Track
from listenlog.domain.exceptions import UpsertConflictError
from listenlog.domain.ports import ITokenStore
from listenlog.domain.value_objects import AudioFeatures, context_from_json

from .database import Database
from .models import (
    AlbumModel,
    ArtistModel,
    ConnectionModel,
    PlayEventModel,
    TrackModel,
    album_artists,
    ensure_utc_aware,
    track_artists,
    utc_now,
)

logger = logging.getLogger(__name__)

CatalogModel = type[ArtistModel] | type[AlbumModel] | type[TrackModel]


class CatalogTotals(NamedTuple):
    """Distinct catalog entries behind a set of plays."""

    tracks: int
    artists: int
    albums: int
    average_duration_ms: float


class DailyPlays(NamedTuple):
    day: str  # YYYY-MM-DD (UTC)
    plays: int
    duration_ms: int
    unique_artists: int


# Hey future me - ON CONFLICT lives in the dialect modules, not in plain sqlalchemy.insert.
# Both SQLite and PostgreSQL constructs share the same on_conflict_do_update/do_nothing API,
# so everything below is dialect-agnostic once we picked the right insert().
# Database refuses any other backend at construction time.
def _dialect_insert(session: AsyncSession, target: Any) -> Any:
    if session.get_bind().dialect.name == "postgresql":
        return postgresql.insert(target)
    return sqlite.insert(target)


def _connection_to_entity(model: ConnectionModel) -> Connection:
    return Connection(
        id=model.id,
        user_id=model.user_id,
        external_user_id=model.external_user_id,
        access_token=model.access_token,
        refresh_token=model.refresh_token,
        token_expires_at=ensure_utc_aware(model.token_expires_at),
        is_active=model.is_active,
        last_sync_at=(
            ensure_utc_aware(model.last_sync_at) if model.last_sync_at else None
        ),
        total_syncs=model.sync_count,
        created_at=ensure_utc_aware(model.created_at),
        updated_at=ensure_utc_aware(model.updated_at),
    )


def artist_to_entity(model: ArtistModel) -> Artist:
    return Artist(
        id=model.id,
        external_id=model.external_id,
        name=model.name,
        genres=list(model.genres or []),
        popularity=model.popularity,
        image_url=model.image_url,
        follower_count=model.follower_count,
        external_urls=dict(model.external_urls or {}),
        created_at=ensure_utc_aware(model.created_at),
        updated_at=ensure_utc_aware(model.updated_at),
    )


def album_to_entity(model: AlbumModel) -> Album:
    return Album(
        id=model.id,
        external_id=model.external_id,
        name=model.name,
        album_type=model.album_type,
        release_date=model.release_date,
        total_tracks=model.total_tracks,
        image_url=model.image_url,
        external_urls=dict(model.external_urls or {}),
        created_at=ensure_utc_aware(model.created_at),
        updated_at=ensure_utc_aware(model.updated_at),
    )


def track_to_entity(model: TrackModel, artist_ids: list[str] | None = None) -> Track:
    # artist_ids lets the pipeline pass the ids it just linked, the relationship
    # collection was loaded before the link rows existed
    if artist_ids is None:
        artist_ids = [artist.id for artist in model.artists]
    return Track(
        id=model.id,
        external_id=model.external_id,
        name=model.name,
        duration_ms=model.duration_ms,
        album_id=model.album_id,
        popularity=model.popularity,
        explicit=model.explicit,
        preview_url=model.preview_url,
        track_number=model.track_number,
        external_urls=dict(model.external_urls or {}),
        audio_features=AudioFeatures.from_json(model.audio_features),
        artist_ids=artist_ids,
        created_at=ensure_utc_aware(model.created_at),
        updated_at=ensure_utc_aware(model.updated_at),
    )


# =============================================================================
# CONNECTIONS
# =============================================================================


class ConnectionRepository(ITokenStore):
    """SQLAlchemy token store.

    Hey future me - unlike the catalog repositories this one takes the Database, not a
    session: every call runs in its OWN short transaction. A refreshed token must hit the
    database right away, even if the sync that triggered the refresh later blows up and
    rolls back its own work.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    async def find_by_user_id(self, user_id: str) -> Connection | None:
        # Inactive rows included on purpose: callers tell "absent" from "deactivated"
        async with self.db.session_scope() as session:
            result = await session.execute(
                select(ConnectionModel).where(ConnectionModel.user_id == user_id)
            )
            model = result.scalar_one_or_none()
            return _connection_to_entity(model) if model else None

    async def create_or_reactivate(
        self,
        user_id: str,
        external_user_id: str,
        access_token: str,
        refresh_token: str,
        token_expires_at: datetime,
    ) -> Connection:
        async with self.db.session_scope() as session:
            result = await session.execute(
                select(ConnectionModel).where(ConnectionModel.user_id == user_id)
            )
            model = result.scalar_one_or_none()
            if model is None:
                model = ConnectionModel(user_id=user_id)
                session.add(model)
                logger.info("Creating Spotify connection for user %s", user_id)
            else:
                logger.info(
                    "Re-activating Spotify connection for user %s (was active=%s)",
                    user_id,
                    model.is_active,
                )
            model.external_user_id = external_user_id
            model.access_token = access_token
            model.refresh_token = refresh_token
            model.token_expires_at = token_expires_at
            model.is_active = True
            await session.flush()
            await session.refresh(model)
            return _connection_to_entity(model)

    async def update_tokens(
        self,
        user_id: str,
        access_token: str,
        refresh_token: str,
        token_expires_at: datetime,
    ) -> None:
        async with self.db.session_scope() as session:
            await session.execute(
                update(ConnectionModel)
                .where(ConnectionModel.user_id == user_id)
                .values(
                    access_token=access_token,
                    refresh_token=refresh_token,
                    token_expires_at=token_expires_at,
                    updated_at=utc_now(),
                )
            )

    async def deactivate(self, user_id: str) -> None:
        async with self.db.session_scope() as session:
            await session.execute(
                update(ConnectionModel)
                .where(ConnectionModel.user_id == user_id)
                .values(is_active=False, updated_at=utc_now())
            )
        logger.warning("Deactivated Spotify connection for user %s", user_id)

    async def mark_last_sync(self, user_id: str, at: datetime | None = None) -> None:
        async with self.db.session_scope() as session:
            await session.execute(
                update(ConnectionModel)
                .where(ConnectionModel.user_id == user_id)
                .values(
                    last_sync_at=at or datetime.now(UTC),
                    sync_count=ConnectionModel.sync_count + 1,
                    updated_at=utc_now(),
                )
            )

    async def list_due_for_sync(self, older_than: datetime) -> list[Connection]:
        async with self.db.session_scope() as session:
            result = await session.execute(
                select(ConnectionModel)
                .where(
                    ConnectionModel.is_active == True,  # noqa: E712
                    (ConnectionModel.last_sync_at.is_(None))
                    | (ConnectionModel.last_sync_at < older_than),
                )
                .order_by(ConnectionModel.last_sync_at.asc().nulls_first())
            )
            return [_connection_to_entity(m) for m in result.scalars().all()]


# =============================================================================
# CATALOG (artists, albums, tracks)
# =============================================================================


class CatalogRepository:
    """Upserts for the three catalog tables plus their join tables."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # Hey future me - this is THE write path for artists/albums/tracks. One atomic
    # INSERT ... ON CONFLICT (external_id) DO UPDATE, so two users syncing the same artist
    # at the same moment can never produce two rows. id and created_at are only in the
    # INSERT half and never in SET, which is what keeps them stable across re-syncs.
    # ON CONFLICT DO UPDATE skips Python-side onupdate hooks, hence the explicit updated_at.
    async def upsert_by_external_id(
        self,
        model: CatalogModel,
        external_id: str,
        values: dict[str, Any],
    ) -> Any:
        """Insert or update one catalog row keyed on external_id.

        Args:
            model: ArtistModel, AlbumModel or TrackModel
            external_id: Spotify id (the unique key)
            values: Mutable columns to write. Keys absent here are left untouched on
                the update path.

        Returns:
            The persisted ORM row (fresh from the database)

        Raises:
            UpsertConflictError: If the write still violates a constraint
        """
        now = utc_now()
        stmt = _dialect_insert(self.session, model).values(
            id=str(uuid.uuid4()),
            external_id=external_id,
            created_at=now,
            updated_at=now,
            **values,
        )
        set_ = {key: stmt.excluded[key] for key in values}
        set_["updated_at"] = now
        stmt = stmt.on_conflict_do_update(
            index_elements=[model.external_id], set_=set_
        )

        try:
            await self.session.execute(stmt)
        except IntegrityError as e:
            raise UpsertConflictError(
                model.__tablename__, external_id, str(e.orig)
            ) from e

        result = await self.session.execute(
            select(model)
            .where(model.external_id == external_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def link_track_artists(self, track_id: str, artist_ids: list[str]) -> None:
        if not artist_ids:
            return
        stmt = _dialect_insert(self.session, track_artists).values(
            [
                {"track_id": track_id, "artist_id": artist_id, "position": position}
                for position, artist_id in enumerate(artist_ids)
            ]
        )
        await self.session.execute(stmt.on_conflict_do_nothing())

    async def link_album_artists(self, album_id: str, artist_ids: list[str]) -> None:
        if not artist_ids:
            return
        stmt = _dialect_insert(self.session, album_artists).values(
            [{"album_id": album_id, "artist_id": artist_id} for artist_id in artist_ids]
        )
        await self.session.execute(stmt.on_conflict_do_nothing())

    async def get_track(self, track_id: str) -> TrackModel | None:
        result = await self.session.execute(
            select(TrackModel)
            .where(TrackModel.id == track_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def count(self, model: CatalogModel) -> int:
        result = await self.session.execute(select(func.count()).select_from(model))
        return int(result.scalar_one())


# =============================================================================
# LISTENING HISTORY
# =============================================================================


class PlayEventRepository:
    """Append-only play events plus the read queries behind the dashboard."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_if_absent(
        self,
        user_id: str,
        track_id: str,
        played_at: datetime,
        context: dict[str, Any] | None,
    ) -> PlayEvent | None:
        """Insert a play event; returns None when (user, track, played_at) already exists."""
        event_id = str(uuid.uuid4())
        created_at = utc_now()
        stmt = (
            _dialect_insert(self.session, PlayEventModel)
            .values(
                id=event_id,
                user_id=user_id,
                track_id=track_id,
                played_at=played_at,
                context=context,
                created_at=created_at,
            )
            .on_conflict_do_nothing(index_elements=["user_id", "track_id", "played_at"])
        )
        try:
            result = await self.session.execute(stmt)
        except IntegrityError as e:
            raise UpsertConflictError("listening_history", track_id, str(e.orig)) from e

        if result.rowcount == 0:
            return None
        return PlayEvent(
            id=event_id,
            user_id=user_id,
            track_id=track_id,
            played_at=played_at,
            context=context_from_json(context),
            created_at=created_at,
        )

    async def list_recent(self, user_id: str, limit: int = 50) -> list[PlayEventModel]:
        """Most recent plays first, with track/album/artists eagerly loaded."""
        result = await self.session.execute(
            select(PlayEventModel)
            .where(PlayEventModel.user_id == user_id)
            .order_by(PlayEventModel.played_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_for_user(self, user_id: str) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(PlayEventModel)
            .where(PlayEventModel.user_id == user_id)
        )
        return int(result.scalar_one())

    async def stats_between(
        self, user_id: str, start: datetime, end: datetime
    ) -> tuple[int, int]:
        """(play count, summed track duration in ms) for plays in [start, end)."""
        result = await self.session.execute(
            select(
                func.count(PlayEventModel.id),
                func.coalesce(func.sum(TrackModel.duration_ms), 0),
            )
            .select_from(PlayEventModel)
            .join(TrackModel, TrackModel.id == PlayEventModel.track_id)
            .where(
                PlayEventModel.user_id == user_id,
                PlayEventModel.played_at >= start,
                PlayEventModel.played_at < end,
            )
        )
        plays, duration_ms = result.one()
        return int(plays), int(duration_ms)

    # =========================================================================
    # Dashboard analytics
    # =========================================================================

    # Hey future me - every query below that needs artists goes through track_artists, and a
    # play of a two-artist track becomes TWO joined rows. Anything counting plays or summing
    # durations must stay off that join (or count per artist on purpose, like top_artists).

    async def catalog_totals_between(
        self, user_id: str, start: datetime, end: datetime
    ) -> CatalogTotals:
        """Distinct tracks, artists and albums played in [start, end), plus mean track length."""
        window = _play_window(user_id, start, end)
        tracks, albums, average = (
            await self.session.execute(
                select(
                    func.count(distinct(PlayEventModel.track_id)),
                    func.count(distinct(TrackModel.album_id)),
                    func.avg(TrackModel.duration_ms),
                )
                .select_from(PlayEventModel)
                .join(TrackModel, TrackModel.id == PlayEventModel.track_id)
                .where(*window)
            )
        ).one()
        artists = await self.session.execute(
            select(func.count(distinct(track_artists.c.artist_id)))
            .select_from(PlayEventModel)
            .join(track_artists, track_artists.c.track_id == PlayEventModel.track_id)
            .where(*window)
        )
        return CatalogTotals(
            tracks=int(tracks),
            artists=int(artists.scalar_one()),
            albums=int(albums),
            average_duration_ms=float(average or 0),
        )

    async def top_artists(
        self,
        user_id: str,
        limit: int = 10,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[tuple[ArtistModel, int, int]]:
        """(artist, play count, summed ms) by play count, ties broken by name."""
        plays = func.count(PlayEventModel.id)
        result = await self.session.execute(
            select(ArtistModel, plays, func.coalesce(func.sum(TrackModel.duration_ms), 0))
            .select_from(PlayEventModel)
            .join(TrackModel, TrackModel.id == PlayEventModel.track_id)
            .join(track_artists, track_artists.c.track_id == TrackModel.id)
            .join(ArtistModel, ArtistModel.id == track_artists.c.artist_id)
            .where(*_play_window(user_id, start, end))
            .group_by(ArtistModel.id)
            .order_by(plays.desc(), ArtistModel.name)
            .limit(limit)
        )
        return [(artist, int(count), int(ms)) for artist, count, ms in result.all()]

    async def top_tracks(
        self,
        user_id: str,
        limit: int = 10,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[tuple[TrackModel, int, datetime]]:
        """(track, play count, last played) by play count, most recently played first on ties."""
        plays = func.count(PlayEventModel.id)
        last_played = func.max(PlayEventModel.played_at)
        result = await self.session.execute(
            select(TrackModel, plays, last_played)
            .select_from(PlayEventModel)
            .join(TrackModel, TrackModel.id == PlayEventModel.track_id)
            .where(*_play_window(user_id, start, end))
            .group_by(TrackModel.id)
            .order_by(plays.desc(), last_played.desc())
            .limit(limit)
        )
        return [
            (track, int(count), ensure_utc_aware(last))
            for track, count, last in result.all()
        ]

    async def daily_plays(
        self, user_id: str, start: datetime, end: datetime | None = None
    ) -> list[DailyPlays]:
        """Per-UTC-day play counts, minutes and distinct artists, oldest day first."""
        window = _play_window(user_id, start, end)
        day = func.date(PlayEventModel.played_at)

        totals = await self.session.execute(
            select(
                day,
                func.count(PlayEventModel.id),
                func.coalesce(func.sum(TrackModel.duration_ms), 0),
            )
            .select_from(PlayEventModel)
            .join(TrackModel, TrackModel.id == PlayEventModel.track_id)
            .where(*window)
            .group_by(day)
            .order_by(day)
        )
        artists = await self.session.execute(
            select(day, func.count(distinct(track_artists.c.artist_id)))
            .select_from(PlayEventModel)
            .join(track_artists, track_artists.c.track_id == PlayEventModel.track_id)
            .where(*window)
            .group_by(day)
        )
        # PostgreSQL hands back date objects, SQLite "YYYY-MM-DD" strings
        artists_per_day = {str(d): int(n) for d, n in artists.all()}
        return [
            DailyPlays(
                day=str(d),
                plays=int(plays),
                duration_ms=int(ms),
                unique_artists=artists_per_day.get(str(d), 0),
            )
            for d, plays, ms in totals.all()
        ]

    async def artist_genre_plays(
        self,
        user_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[tuple[list[str], int]]:
        """(genres, play count) per played artist. Genres are a JSON list, so the
        per-genre rollup happens in Python."""
        result = await self.session.execute(
            select(ArtistModel.genres, func.count(PlayEventModel.id))
            .select_from(PlayEventModel)
            .join(track_artists, track_artists.c.track_id == PlayEventModel.track_id)
            .join(ArtistModel, ArtistModel.id == track_artists.c.artist_id)
            .where(*_play_window(user_id, start, end))
            .group_by(ArtistModel.id)
        )
        return [(list(genres or []), int(count)) for genres, count in result.all()]


def _play_window(
    user_id: str, start: datetime | None, end: datetime | None
) -> list[ColumnElement[bool]]:
    clauses = [PlayEventModel.user_id == user_id]
    if start is not None:
        clauses.append(PlayEventModel.played_at >= start)
    if end is not None:
        clauses.append(PlayEventModel.played_at < end)
    return clauses
