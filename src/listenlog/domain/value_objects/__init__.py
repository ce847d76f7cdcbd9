"""Value objects for the listening-history domain.

Hey future me - Spotify hands us a few "anything goes" JSON blobs (play context, audio
features, external URLs). Instead of storing them as opaque dicts we parse the shapes we
KNOW into frozen dataclasses and keep everything else in a raw fallback. That way the
upsert pipeline can validate what it understands without breaking when Spotify adds a
new context type tomorrow.

Persisted form is always a tagged dict: {"kind": "...", ...}. Use to_json()/from_json()
and never write the dataclasses to the DB directly.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from listenlog.domain.exceptions import ValidationError


class TimeRange(str, Enum):
    """Lookback windows for Spotify's top-items endpoints."""

    SHORT_TERM = "short_term"  # ~4 weeks
    MEDIUM_TERM = "medium_term"  # ~6 months
    LONG_TERM = "long_term"  # several years


class ContextType(str, Enum):
    """Known play-context types reported by recently-played."""

    PLAYLIST = "playlist"
    ALBUM = "album"
    ARTIST = "artist"
    SHOW = "show"
    COLLECTION = "collection"


@dataclass(frozen=True)
class PlayContext:
    """Structured play context (where a track was played from)."""

    type: ContextType
    uri: str | None = None
    href: str | None = None
    external_urls: dict[str, str] = field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        return {
            "kind": "context",
            "type": self.type.value,
            "uri": self.uri,
            "href": self.href,
            "external_urls": dict(self.external_urls),
        }


@dataclass(frozen=True)
class RawContext:
    """Context payload with a shape we don't recognise (kept verbatim)."""

    payload: dict[str, Any]

    def to_json(self) -> dict[str, Any]:
        return {"kind": "raw", "payload": self.payload}


ContextValue = PlayContext | RawContext


def _string_map(value: Any) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(k): str(v) for k, v in value.items() if isinstance(v, str)}


def parse_play_context(data: Any) -> ContextValue | None:
    """Parse a Spotify context object into a PlayContext or RawContext.

    Args:
        data: ``context`` field of a recently-played item (may be None)

    Returns:
        PlayContext for known types, RawContext for anything else, None if absent
    """
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ValidationError(f"Play context must be an object, got {type(data).__name__}")

    try:
        context_type = ContextType(data.get("type"))
    except ValueError:
        return RawContext(payload=dict(data))

    return PlayContext(
        type=context_type,
        uri=data.get("uri"),
        href=data.get("href"),
        external_urls=_string_map(data.get("external_urls")),
    )


def context_from_json(data: dict[str, Any] | None) -> ContextValue | None:
    """Rebuild a context value from its persisted tagged form."""
    if not data:
        return None
    kind = data.get("kind")
    if kind == "context":
        return PlayContext(
            type=ContextType(data["type"]),
            uri=data.get("uri"),
            href=data.get("href"),
            external_urls=_string_map(data.get("external_urls")),
        )
    if kind == "raw":
        return RawContext(payload=dict(data.get("payload") or {}))
    raise ValidationError(f"Unknown persisted context kind: {kind!r}")


# Hey future me - the Spotify audio-features endpoint returns a flat object of floats/ints.
# We keep the documented fields typed and stash anything new in `extra` so a schema change
# on Spotify's side never makes us drop data.
_AUDIO_FEATURE_FIELDS = (
    "acousticness",
    "danceability",
    "energy",
    "instrumentalness",
    "key",
    "liveness",
    "loudness",
    "mode",
    "speechiness",
    "tempo",
    "time_signature",
    "valence",
)


@dataclass(frozen=True)
class AudioFeatures:
    """Audio analysis summary for one track."""

    acousticness: float | None = None
    danceability: float | None = None
    energy: float | None = None
    instrumentalness: float | None = None
    key: int | None = None
    liveness: float | None = None
    loudness: float | None = None
    mode: int | None = None
    speechiness: float | None = None
    tempo: float | None = None
    time_signature: int | None = None
    valence: float | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_spotify(cls, data: dict[str, Any]) -> "AudioFeatures":
        known = {name: data.get(name) for name in _AUDIO_FEATURE_FIELDS}
        for name, value in known.items():
            if value is not None and not isinstance(value, int | float):
                raise ValidationError(f"Audio feature {name!r} must be numeric")
        ignored = {"id", "uri", "track_href", "analysis_url", "type"}
        extra = {
            k: v
            for k, v in data.items()
            if k not in _AUDIO_FEATURE_FIELDS and k not in ignored
        }
        return cls(**known, extra=extra)

    def to_json(self) -> dict[str, Any]:
        return {"kind": "audio_features", **asdict(self)}

    @classmethod
    def from_json(cls, data: dict[str, Any] | None) -> "AudioFeatures | None":
        if not data:
            return None
        payload = {k: v for k, v in data.items() if k != "kind"}
        return cls(**payload)


__all__ = [
    "AudioFeatures",
    "ContextType",
    "ContextValue",
    "PlayContext",
    "RawContext",
    "TimeRange",
    "context_from_json",
    "parse_play_context",
]
