"""SQLAlchemy ORM models for the listening-history store."""

import uuid
from datetime import UTC, datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(UTC)


# Hey future me - SQLite drops tzinfo on the way back out. Run every datetime read from a
# model through this before comparing it with datetime.now(UTC), or you get the
# "can't compare offset-naive and offset-aware datetimes" TypeError.
def ensure_utc_aware(dt: datetime) -> datetime:
    """Ensure datetime is UTC-aware, assuming naive datetimes are UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Shared declarative base; every model registers on its metadata."""

    pass


# =============================================================================
# JOIN TABLES
# =============================================================================
# Plain Table objects: they carry no data besides the composite key, and the upsert
# pipeline writes them with INSERT ... ON CONFLICT DO NOTHING.

track_artists = Table(
    "track_artists",
    Base.metadata,
    Column(
        "track_id",
        String(36),
        ForeignKey("tracks.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "artist_id",
        String(36),
        ForeignKey("artists.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("position", Integer, nullable=False, default=0),
)

album_artists = Table(
    "album_artists",
    Base.metadata,
    Column(
        "album_id",
        String(36),
        ForeignKey("albums.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "artist_id",
        String(36),
        ForeignKey("artists.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


# =============================================================================
# CONNECTION (OAuth credentials)
# =============================================================================


class ConnectionModel(Base):
    """Stored Spotify OAuth credentials for one local user.

    Hey future me - there's exactly ONE row per user_id. Reconnecting (even with another
    Spotify account) re-activates and overwrites that row instead of adding a second one,
    so "the user's connection" is always unambiguous.
    """

    __tablename__ = "spotify_connections"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    external_user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    token_expires_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_sync_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    # Completed sync attempts, bumped by mark_last_sync
    sync_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id", "external_user_id", name="uq_spotify_connections_user_external"
        ),
        Index("ix_spotify_connections_active_sync", "is_active", "last_sync_at"),
    )


# =============================================================================
# CATALOG (keyed on Spotify ids, upsert-only)
# =============================================================================


class ArtistModel(Base):
    """Artist row, unique on external_id."""

    __tablename__ = "artists"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    external_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    genres: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    popularity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    follower_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    external_urls: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )


class AlbumModel(Base):
    """Album row, unique on external_id."""

    __tablename__ = "albums"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    external_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    album_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    # Spotify gives "1965", "1965-12" or "1965-12-03" depending on precision; kept verbatim
    release_date: Mapped[str | None] = mapped_column(String(10), nullable=True)
    total_tracks: Mapped[int | None] = mapped_column(Integer, nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    external_urls: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    artists: Mapped[list["ArtistModel"]] = relationship(
        "ArtistModel", secondary=album_artists, lazy="selectin"
    )


class TrackModel(Base):
    """Track row, unique on external_id."""

    __tablename__ = "tracks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    external_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    album_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("albums.id", ondelete="SET NULL"), nullable=True
    )
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    popularity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    explicit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    preview_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    track_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    external_urls: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict
    )
    # Tagged {"kind": "audio_features", ...}, see AudioFeatures.to_json()
    audio_features: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    album: Mapped[AlbumModel | None] = relationship("AlbumModel", lazy="selectin")
    artists: Mapped[list["ArtistModel"]] = relationship(
        "ArtistModel",
        secondary=track_artists,
        order_by=track_artists.c.position,
        lazy="selectin",
    )

    __table_args__ = (Index("ix_tracks_album_id", "album_id"),)


# =============================================================================
# LISTENING HISTORY (append-only)
# =============================================================================


class PlayEventModel(Base):
    """One play of one track by one user.

    Hey future me - the (user_id, track_id, played_at) unique constraint is what makes
    overlapping recently-played windows safe to re-sync. Spotify reports every play with
    a millisecond timestamp, so that triple is a real natural key.
    """

    __tablename__ = "listening_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    track_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tracks.id", ondelete="CASCADE"), nullable=False
    )
    played_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False
    )
    # Tagged {"kind": "context" | "raw", ...}, see value_objects.PlayContext/RawContext
    context: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utc_now, nullable=False
    )

    track: Mapped[TrackModel] = relationship("TrackModel", lazy="selectin")

    __table_args__ = (
        UniqueConstraint(
            "user_id", "track_id", "played_at", name="uq_listening_history_play"
        ),
        Index("ix_listening_history_user_played", "user_id", "played_at"),
    )
