# Hey future me - this worker is the "periodic" half of the sync engine.
#
# Every check_interval_seconds it asks the token store for active connections whose
# last_sync_at is empty or older than the sync interval (6h), and starts one asyncio.Task
# per due user. Each task runs SyncOrchestrator.run_with_timeout, so a hanging Spotify
# request can't pin a user forever.
#
# Rate limits: when any run (scheduled or on-demand) reports retry_after_seconds, the
# orchestrator remembers a per-user deferral and this loop won't start that user before it
# elapses. Finalization still stamps last_sync_at, so the deferral only changes anything
# when the user would otherwise be due first: a Retry-After longer than the interval, or
# a timed-out run that skipped finalization. Other users keep syncing; the limit is per
# user token, not global.
#
# Failures never crash the loop. A user whose sync blew up just gets picked up again on a
# later cycle (or after the normal interval, since finalization still marks last_sync_at).
"""Background worker that periodically syncs every due Spotify connection."""

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from listenlog.application.services.sync_orchestrator import SyncOrchestrator
from listenlog.config.settings import SyncSettings
from listenlog.domain.ports import ITokenStore

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class SpotifySyncWorker:
    """Pull-based scheduler for per-user sync runs."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        token_store: ITokenStore,
        settings: SyncSettings,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.orchestrator = orchestrator
        self.token_store = token_store
        self.settings = settings
        self.check_interval_seconds = settings.worker_check_interval_seconds
        self._clock = clock

        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._user_tasks: dict[str, asyncio.Task[None]] = {}
        self._semaphore = asyncio.Semaphore(settings.worker_max_concurrent_users)

        self._stats: dict[str, Any] = {
            "runs_started": 0,
            "runs_completed": 0,
            "runs_failed": 0,
            "runs_with_errors": 0,
            "last_cycle_at": None,
            "last_error": None,
        }
        self._cycles_completed = 0
        self._errors_total = 0
        self._start_time = time.time()

    async def start(self) -> None:
        """Start the periodic loop. Idempotent."""
        if self._running:
            logger.warning("spotify_sync.already_running")
            return

        self._running = True
        self._start_time = time.time()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "worker.started",
            extra={
                "worker": "spotify_sync",
                "check_interval_seconds": self.check_interval_seconds,
            },
        )

    async def stop(self) -> None:
        """Stop the loop and cancel in-flight user runs. Idempotent."""
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

        user_tasks = list(self._user_tasks.values())
        for task in user_tasks:
            task.cancel()
        for task in user_tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._user_tasks.clear()

        logger.info(
            "worker.stopped",
            extra={
                "worker": "spotify_sync",
                "cycles_completed": self._cycles_completed,
                "errors_total": self._errors_total,
                "uptime_seconds": int(time.time() - self._start_time),
            },
        )

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self._check_and_run_syncs()
                self._cycles_completed += 1
            except Exception as e:
                self._errors_total += 1
                self._stats["last_error"] = f"{type(e).__name__}: {e}"
                logger.error(
                    "spotify_sync.cycle.failed",
                    extra={"error_type": type(e).__name__},
                    exc_info=True,
                )

            try:
                await asyncio.sleep(self.check_interval_seconds)
            except asyncio.CancelledError:
                break

    async def _check_and_run_syncs(self) -> list[str]:
        """Start runs for every due user. Returns the user ids started this cycle."""
        now = self._clock()
        self._stats["last_cycle_at"] = now.isoformat()
        cutoff = now - timedelta(hours=self.settings.interval_hours)

        due = await self.token_store.list_due_for_sync(cutoff)
        started: list[str] = []
        for connection in due:
            user_id = connection.user_id
            if user_id in self._user_tasks:
                continue
            if self.orchestrator.is_syncing(user_id):
                logger.debug("Skipping user %s, a sync is already running", user_id)
                continue
            deferred_until = self.orchestrator.deferred_until(user_id)
            if deferred_until is not None:
                logger.debug(
                    "Skipping user %s, rate-limit deferral until %s",
                    user_id,
                    deferred_until.isoformat(),
                )
                continue
            task = asyncio.create_task(self._sync_user(user_id))
            self._user_tasks[user_id] = task
            task.add_done_callback(lambda _t, uid=user_id: self._user_tasks.pop(uid, None))
            started.append(user_id)

        if started:
            logger.info("Started Spotify sync for %d due user(s)", len(started))
        return started

    async def _sync_user(self, user_id: str) -> None:
        async with self._semaphore:
            self._stats["runs_started"] += 1
            try:
                result = await self.orchestrator.run_with_timeout(
                    user_id, self.settings.user_timeout_seconds
                )
            except Exception as e:
                self._stats["runs_failed"] += 1
                self._stats["last_error"] = f"{type(e).__name__}: {e}"
                logger.exception("Sync run crashed for user %s", user_id)
                return

        self._stats["runs_completed"] += 1
        if result.errors:
            self._stats["runs_with_errors"] += 1

    async def wait_for_running_syncs(self) -> None:
        """Block until every in-flight user run has finished."""
        tasks = list(self._user_tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def is_running(self) -> bool:
        return self._running

    def get_status(self) -> dict[str, Any]:
        """Worker state for the health endpoint."""
        return {
            "running": self._running,
            "check_interval_seconds": self.check_interval_seconds,
            "active_user_syncs": sorted(self._user_tasks),
            "deferred_users": {
                user_id: until.isoformat()
                for user_id, until in self.orchestrator.deferrals().items()
            },
            "cycles_completed": self._cycles_completed,
            "errors_total": self._errors_total,
            "stats": dict(self._stats),
        }
