"""Sync engine: pull a user's Spotify listening data into the local store."""

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from listenlog.application.cache import QueryCache
from listenlog.application.services.auth_manager import AuthManager
from listenlog.application.services.entity_upsert_pipeline import EntityUpsertPipeline
from listenlog.config.settings import SyncSettings
from listenlog.domain.dtos import PlayedItemDTO, TrackDTO
from listenlog.domain.exceptions import RateLimitedError
from listenlog.domain.ports import ITokenStore
from listenlog.domain.value_objects import TimeRange
from listenlog.infrastructure.integrations.spotify_client import SpotifyClient
from listenlog.infrastructure.observability import correlation_scope

logger = logging.getLogger(__name__)

NO_CONNECTION_ERROR = "No active Spotify connection found"
RECENT_SYNC_ERROR = "Failed to sync recently played tracks"


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class SyncStage(str, Enum):
    """Where a sync run currently is (or where it stopped)."""

    IDLE = "idle"
    VALIDATING_CONNECTION = "validating_connection"
    SYNCING_RECENT = "syncing_recent"
    SYNCING_TOP_ITEMS = "syncing_top_items"
    FINALIZING = "finalizing"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class SyncResult:
    """Outcome of one sync run. Not persisted.

    Hey future me - a sync run NEVER raises past the orchestrator. Partial failures show
    up as strings in `errors`; check that list, not exceptions.
    """

    recent_tracks: int = 0
    new_artists: int = 0
    new_albums: int = 0
    new_tracks: int = 0
    listening_events: int = 0
    errors: list[str] = field(default_factory=list)
    stage: SyncStage = SyncStage.IDLE
    # Largest Retry-After seen in this run; read by the worker, not sent to clients
    retry_after_seconds: int | None = None

    def note_rate_limit(self, error: RateLimitedError) -> None:
        if error.retry_after_seconds is None:
            return
        if (
            self.retry_after_seconds is None
            or error.retry_after_seconds > self.retry_after_seconds
        ):
            self.retry_after_seconds = error.retry_after_seconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "recentTracks": self.recent_tracks,
            "newArtists": self.new_artists,
            "newAlbums": self.new_albums,
            "newTracks": self.new_tracks,
            "listeningEvents": self.listening_events,
            "errors": list(self.errors),
        }


@dataclass
class SyncStatus:
    """Read-only view of a user's sync schedule."""

    is_connected: bool
    is_active: bool
    last_sync_at: datetime | None
    next_sync_at: datetime | None
    total_syncs: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "isConnected": self.is_connected,
            "isActive": self.is_active,
            "lastSyncAt": _iso(self.last_sync_at),
            "nextSyncAt": _iso(self.next_sync_at),
            "totalSyncs": self.total_syncs,
        }


class SyncOrchestrator:
    """Runs the sync state machine for one user at a time.

    IDLE -> VALIDATING_CONNECTION -> SYNCING_RECENT -> SYNCING_TOP_ITEMS -> FINALIZING -> DONE

    ABORTED is only reachable from VALIDATING_CONNECTION (no connection, or inactive).
    Every later stage degrades: errors are recorded and the next stage still runs.
    Stages run strictly one after another since Spotify's rate limit is shared per user.
    """

    def __init__(
        self,
        auth_manager: AuthManager,
        client: SpotifyClient,
        pipeline: EntityUpsertPipeline,
        token_store: ITokenStore,
        settings: SyncSettings | None = None,
        query_cache: QueryCache | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.auth_manager = auth_manager
        self.client = client
        self.pipeline = pipeline
        self.token_store = token_store
        self.settings = settings or SyncSettings()
        self.query_cache = query_cache
        self._clock = clock
        self._in_flight: dict[str, asyncio.Task[SyncResult]] = {}
        # user_id -> instant before which Spotify asked us not to come back (Retry-After)
        self._deferred_until: dict[str, datetime] = {}

    @property
    def sync_interval(self) -> timedelta:
        return timedelta(hours=self.settings.interval_hours)

    # =========================================================================
    # Entry points
    # =========================================================================

    # Hey future me - ONE run per user at a time, whoever asks. The worker, an on-demand
    # POST and a second POST all land here; whoever comes second joins the in-flight run
    # and gets the same SyncResult. Spotify's rate limit is per user token, so two
    # parallel runs would just burn it twice (and bump total_syncs twice).
    async def sync_user_data(self, user_id: str) -> SyncResult:
        """Run one full sync for user_id (or join the one already running)."""
        return await self._run_once(user_id, None)

    async def run_with_timeout(self, user_id: str, timeout: float) -> SyncResult:
        """Run a sync under a wall-clock limit (or join the one already running).

        On timeout the run is cancelled and the partial result is returned with a
        "Sync timed out after <n>s" error. lastSyncAt is still recorded, unless the
        run was cut off in the middle of a token refresh (then the next scheduled run
        starts clean instead).
        """
        return await self._run_once(user_id, timeout)

    def is_syncing(self, user_id: str) -> bool:
        return user_id in self._in_flight

    def deferred_until(self, user_id: str) -> datetime | None:
        """End of the user's Retry-After window, or None once it has passed."""
        until = self._deferred_until.get(user_id)
        if until is None:
            return None
        if self._clock() >= until:
            del self._deferred_until[user_id]
            return None
        return until

    def deferrals(self) -> dict[str, datetime]:
        return dict(self._deferred_until)

    def _note_retry_after(self, user_id: str, result: SyncResult) -> None:
        if not result.retry_after_seconds:
            return
        until = self._clock() + timedelta(seconds=result.retry_after_seconds)
        self._deferred_until[user_id] = until
        logger.warning(
            "Spotify rate limited user %s; deferring scheduled syncs until %s",
            user_id,
            until.isoformat(),
        )

    async def _run_once(self, user_id: str, timeout: float | None) -> SyncResult:
        task = self._in_flight.get(user_id)
        if task is not None:
            logger.info("Sync already running for user %s, joining it", user_id)
            # Shielded: a joiner giving up must not cancel the owner's run
            return await asyncio.shield(task)

        task = asyncio.create_task(self._execute(user_id, timeout))
        self._in_flight[user_id] = task

        def _settle(done: asyncio.Task[SyncResult]) -> None:
            if self._in_flight.get(user_id) is done:
                del self._in_flight[user_id]
            if not done.cancelled() and done.exception() is None:
                self._note_retry_after(user_id, done.result())

        task.add_done_callback(_settle)
        return await task

    async def _execute(self, user_id: str, timeout: float | None) -> SyncResult:
        result = SyncResult()
        if timeout is None:
            await self._run(user_id, result)
            return result

        task = asyncio.create_task(self._run(user_id, result))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task in done:
            task.result()
            return result

        refresh_in_flight = self.auth_manager.is_refreshing(user_id)
        stage_at_timeout = result.stage
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

        result.errors.append(f"Sync timed out after {timeout:g}s")
        logger.warning(
            "Sync for user %s timed out after %ss during %s",
            user_id,
            timeout,
            stage_at_timeout.value,
        )

        if stage_at_timeout in (SyncStage.IDLE, SyncStage.VALIDATING_CONNECTION):
            result.stage = SyncStage.ABORTED
            return result
        if refresh_in_flight:
            logger.warning(
                "Token refresh was in flight for user %s; skipping finalization", user_id
            )
            return result

        await self._finalize(user_id, result)
        return result

    async def get_sync_status(self, user_id: str) -> SyncStatus:
        """Pure read of the user's sync schedule."""
        connection = await self.token_store.find_by_user_id(user_id)
        if connection is None:
            return SyncStatus(
                is_connected=False,
                is_active=False,
                last_sync_at=None,
                next_sync_at=None,
                total_syncs=0,
            )

        if connection.last_sync_at is not None:
            next_sync_at = connection.last_sync_at + self.sync_interval
        else:
            next_sync_at = self._clock()

        return SyncStatus(
            is_connected=True,
            is_active=connection.is_active,
            last_sync_at=connection.last_sync_at,
            next_sync_at=next_sync_at,
            total_syncs=connection.total_syncs,
        )

    # =========================================================================
    # State machine
    # =========================================================================

    async def _run(self, user_id: str, result: SyncResult) -> None:
        with correlation_scope("sync"):
            logger.info("Starting Spotify sync for user %s", user_id)

            result.stage = SyncStage.VALIDATING_CONNECTION
            connection = await self.token_store.find_by_user_id(user_id)
            if connection is None or not connection.is_active:
                logger.info(
                    "Sync aborted for user %s: %s",
                    user_id,
                    "no connection" if connection is None else "connection inactive",
                )
                result.errors.append(NO_CONNECTION_ERROR)
                result.stage = SyncStage.ABORTED
                return

            result.stage = SyncStage.SYNCING_RECENT
            await self._sync_recently_played(user_id, result)

            result.stage = SyncStage.SYNCING_TOP_ITEMS
            for time_range in self.settings.time_ranges:
                await self._sync_top_items(user_id, TimeRange(time_range), result)

            await self._finalize(user_id, result)

            logger.info(
                "Finished Spotify sync for user %s: %d recent, %d tracks, %d artists, "
                "%d albums, %d events, %d errors",
                user_id,
                result.recent_tracks,
                result.new_tracks,
                result.new_artists,
                result.new_albums,
                result.listening_events,
                len(result.errors),
            )

    async def _sync_recently_played(self, user_id: str, result: SyncResult) -> None:
        try:
            # Token fetched per stage: a long run keeps getting fresh tokens, and a
            # refresh failure only costs the stage it happened in
            access_token = await self.auth_manager.get_valid_access_token(user_id)
            page = await self.client.get_recently_played(
                access_token, limit=self.settings.recent_page_size
            )
        except RateLimitedError as e:
            result.note_rate_limit(e)
            logger.warning("Recently-played fetch rate limited for user %s", user_id)
            result.errors.append(RECENT_SYNC_ERROR)
            result.recent_tracks = 0
            return
        except Exception:
            logger.exception("Recently-played fetch failed for user %s", user_id)
            result.errors.append(RECENT_SYNC_ERROR)
            result.recent_tracks = 0
            return

        for name, reason in page.invalid_items:
            logger.warning("Skipping unparseable recently-played item %s: %s", name, reason)
            result.errors.append(f"Failed to process track: {name}")

        for item in page.items:
            await self._process_played_item(user_id, item, result)

        result.recent_tracks = page.total_reported

    async def _process_played_item(
        self, user_id: str, item: PlayedItemDTO, result: SyncResult
    ) -> None:
        try:
            track = await self.pipeline.upsert_track(item.track)
            result.new_tracks += 1
            event = await self.pipeline.record_play_event(
                user_id, track.id, item.played_at, item.context
            )
            if event is not None:
                result.listening_events += 1
        except Exception:
            logger.exception(
                "Failed to process recently-played track %s (%s)",
                item.track.external_id,
                item.track.name,
            )
            result.errors.append(f"Failed to process track: {item.track.name}")

    async def _sync_top_items(
        self, user_id: str, time_range: TimeRange, result: SyncResult
    ) -> None:
        try:
            access_token = await self.auth_manager.get_valid_access_token(user_id)

            top_artists = await self.client.get_top_artists(
                access_token, time_range, limit=self.settings.top_items_page_size
            )
            for name, reason in top_artists.invalid_items:
                logger.warning("Skipping unparseable top artist %s: %s", name, reason)
                result.errors.append(f"Failed to process artist: {name}")
            for artist in top_artists.items:
                try:
                    await self.pipeline.upsert_artist(artist)
                    result.new_artists += 1
                except Exception:
                    logger.exception("Failed to upsert top artist %s", artist.external_id)
                    result.errors.append(f"Failed to process artist: {artist.name}")

            top_tracks = await self.client.get_top_tracks(
                access_token, time_range, limit=self.settings.top_items_page_size
            )
            for name, reason in top_tracks.invalid_items:
                logger.warning("Skipping unparseable top track %s: %s", name, reason)
                result.errors.append(f"Failed to process track: {name}")
            for track in top_tracks.items:
                await self._process_top_track(track, result)

        except RateLimitedError as e:
            result.note_rate_limit(e)
            logger.warning(
                "Top items (%s) rate limited for user %s", time_range.value, user_id
            )
            result.errors.append(f"Failed to sync top items for {time_range.value}")
        except Exception:
            logger.exception(
                "Top items sync (%s) failed for user %s", time_range.value, user_id
            )
            result.errors.append(f"Failed to sync top items for {time_range.value}")

    async def _process_top_track(self, track: TrackDTO, result: SyncResult) -> None:
        try:
            await self.pipeline.upsert_track(track)
        except Exception:
            logger.exception("Failed to upsert top track %s", track.external_id)
            result.errors.append(f"Failed to process track: {track.name}")
            return
        result.new_tracks += 1
        if track.album is not None:
            result.new_albums += 1

    async def _finalize(self, user_id: str, result: SyncResult) -> None:
        result.stage = SyncStage.FINALIZING
        # Partial failures still count as a completed attempt, so the next run
        # follows the normal cadence instead of retrying in a tight loop
        try:
            await self.token_store.mark_last_sync(user_id, self._clock())
        except Exception:
            logger.exception("Failed to record sync completion for user %s", user_id)
            result.errors.append("Failed to record sync completion")

        if self.query_cache is not None:
            await self.query_cache.invalidate_user(user_id)

        result.stage = SyncStage.DONE
