"""Infrastructure persistence layer."""

from .database import Database
from .models import (
    AlbumModel,
    ArtistModel,
    Base,
    ConnectionModel,
    PlayEventModel,
    TrackModel,
    album_artists,
    track_artists,
)
from .repositories import (
    CatalogRepository,
    ConnectionRepository,
    PlayEventRepository,
)

__all__ = [
    "AlbumModel",
    "ArtistModel",
    "Base",
    "CatalogRepository",
    "ConnectionModel",
    "ConnectionRepository",
    "Database",
    "PlayEventModel",
    "PlayEventRepository",
    "TrackModel",
    "album_artists",
    "track_artists",
]
