"""Application settings loaded from environment variables and .env files."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from listenlog.domain.value_objects import TimeRange

_ENV_FILE = ".env"


# Hey future me - every settings group reads its OWN env prefix (SPOTIFY_, DATABASE_, ...)
# so ops can configure docker-compose with flat variables like SPOTIFY_CLIENT_ID instead of
# nested JSON. The root Settings just composes the groups via default_factory.
class SpotifySettings(BaseSettings):
    """Spotify OAuth app credentials and API client tuning."""

    model_config = SettingsConfigDict(
        env_prefix="SPOTIFY_", env_file=_ENV_FILE, extra="ignore"
    )

    client_id: str = Field(default="", description="Spotify app client id")
    client_secret: str = Field(default="", description="Spotify app client secret")
    redirect_uri: str = Field(
        default="http://localhost:8000/api/spotify/callback",
        description="OAuth callback URL registered in the Spotify dashboard",
    )
    request_timeout: float = Field(default=30.0, gt=0)
    # Outbound pacing - Spotify allows roughly 180 req/min per app
    rate_limit_tokens: int = Field(default=10, ge=1)
    rate_limit_refill_per_second: float = Field(default=2.0, gt=0)


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_", env_file=_ENV_FILE, extra="ignore"
    )

    url: str = Field(default="sqlite+aiosqlite:///./listenlog.db")
    echo: bool = False
    pool_pre_ping: bool = True
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 3600
    # No migration tooling ships with the service; create the schema on startup
    create_tables_on_startup: bool = True


class SyncSettings(BaseSettings):
    """Sync cadence and page sizes."""

    model_config = SettingsConfigDict(
        env_prefix="SYNC_", env_file=_ENV_FILE, extra="ignore"
    )

    interval_hours: int = Field(default=6, ge=1)
    recent_page_size: int = Field(default=50, ge=1, le=50)
    top_items_page_size: int = Field(default=50, ge=1, le=50)
    time_ranges: list[TimeRange] = Field(
        default_factory=lambda: [
            TimeRange.SHORT_TERM,
            TimeRange.MEDIUM_TERM,
            TimeRange.LONG_TERM,
        ]
    )
    # Wall-clock limit for one user's sync run
    user_timeout_seconds: float = Field(default=120.0, gt=0)
    worker_enabled: bool = True
    worker_check_interval_seconds: int = Field(default=300, ge=1)
    worker_max_concurrent_users: int = Field(default=4, ge=1)


class CacheSettings(BaseSettings):
    """Query cache TTLs and sweep cadence."""

    model_config = SettingsConfigDict(
        env_prefix="CACHE_", env_file=_ENV_FILE, extra="ignore"
    )

    cleanup_interval_seconds: int = Field(default=300, ge=1)
    recent_plays_ttl_seconds: int = 120
    listening_stats_ttl_seconds: int = 300
    top_items_ttl_seconds: int = 600
    listening_trends_ttl_seconds: int = 600
    genre_distribution_ttl_seconds: int = 900


class ObservabilitySettings(BaseSettings):
    """Logging settings."""

    model_config = SettingsConfigDict(
        env_prefix="OBSERVABILITY_", env_file=_ENV_FILE, extra="ignore"
    )

    log_json_format: bool = False
    shutdown_timeout: float = 10.0


class Settings(BaseSettings):
    """Root settings object composed of the groups above."""

    model_config = SettingsConfigDict(env_file=_ENV_FILE, extra="ignore")

    app_name: str = "listenlog"
    log_level: str = "INFO"

    spotify: SpotifySettings = Field(default_factory=SpotifySettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {value}")
        return level

    # Hey future me - returns None for non-SQLite URLs (PostgreSQL etc.), so lifecycle code
    # can skip the directory checks. Handles the "sqlite+aiosqlite:///./x.db" form only;
    # in-memory URLs (":memory:") also return None.
    def _get_sqlite_db_path(self) -> Path | None:
        url = self.database.url
        if not url.startswith("sqlite"):
            return None
        _, _, path = url.partition(":///")
        if not path or path == ":memory:":
            return None
        return Path(path)


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
