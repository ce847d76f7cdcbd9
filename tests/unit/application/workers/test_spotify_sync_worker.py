"""Tests for SpotifySyncWorker scheduling and rate-limit deferral."""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from listenlog.application.services.sync_orchestrator import SyncOrchestrator, SyncResult
from listenlog.application.workers.spotify_sync_worker import SpotifySyncWorker
from listenlog.config import SyncSettings
from listenlog.domain.entities import Connection
from listenlog.domain.ports import ITokenStore
from tests.payloads import NOW

# Hey future me - these tests drive _check_and_run_syncs() directly with a fixed clock,
# the real loop is only started in the lifecycle test.


def _due(user_id: str) -> Connection:
    return Connection(
        user_id=user_id,
        external_user_id=f"spotify-{user_id}",
        access_token="a",
        refresh_token="r",
        token_expires_at=NOW + timedelta(hours=1),
    )


class FakeClock:
    def __init__(self) -> None:
        self.now = NOW

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def orchestrator() -> MagicMock:
    mock = MagicMock(spec=SyncOrchestrator)
    mock.run_with_timeout = AsyncMock(return_value=SyncResult())
    mock.is_syncing = MagicMock(return_value=False)
    mock.deferred_until = MagicMock(return_value=None)
    mock.deferrals = MagicMock(return_value={})
    return mock


@pytest.fixture
def store() -> AsyncMock:
    token_store = AsyncMock(spec=ITokenStore)
    token_store.list_due_for_sync.return_value = [_due("u1"), _due("u2")]
    return token_store


@pytest.fixture
def worker(orchestrator: MagicMock, store: AsyncMock, clock: FakeClock) -> SpotifySyncWorker:
    return SpotifySyncWorker(
        orchestrator,
        store,
        SyncSettings(user_timeout_seconds=30, worker_check_interval_seconds=60),
        clock=clock,
    )


class TestCheckAndRunSyncs:
    """One cycle of the scheduler."""

    async def test_starts_one_run_per_due_user(
        self, worker: SpotifySyncWorker, orchestrator: MagicMock, store: AsyncMock
    ) -> None:
        started = await worker._check_and_run_syncs()
        await worker.wait_for_running_syncs()

        assert started == ["u1", "u2"]
        store.list_due_for_sync.assert_awaited_once_with(NOW - timedelta(hours=6))
        orchestrator.run_with_timeout.assert_any_await("u1", 30)
        orchestrator.run_with_timeout.assert_any_await("u2", 30)
        assert worker.get_status()["stats"]["runs_completed"] == 2

    async def test_user_already_running_is_skipped(
        self, worker: SpotifySyncWorker, orchestrator: MagicMock
    ) -> None:
        release = asyncio.Event()

        async def slow(user_id: str, timeout: float) -> SyncResult:
            await release.wait()
            return SyncResult()

        orchestrator.run_with_timeout.side_effect = slow

        first = await worker._check_and_run_syncs()
        second = await worker._check_and_run_syncs()
        release.set()
        await worker.wait_for_running_syncs()

        assert first == ["u1", "u2"]
        assert second == []

    async def test_user_with_on_demand_sync_is_skipped(
        self, worker: SpotifySyncWorker, orchestrator: MagicMock
    ) -> None:
        orchestrator.is_syncing.side_effect = lambda user_id: user_id == "u1"

        started = await worker._check_and_run_syncs()
        await worker.wait_for_running_syncs()

        assert started == ["u2"]
        orchestrator.run_with_timeout.assert_awaited_once_with("u2", 30)

    async def test_rate_limited_user_is_deferred(
        self, worker: SpotifySyncWorker, orchestrator: MagicMock
    ) -> None:
        until = NOW + timedelta(hours=8)
        orchestrator.deferred_until.side_effect = lambda user_id: (
            until if user_id == "u1" else None
        )
        orchestrator.deferrals.return_value = {"u1": until}

        started = await worker._check_and_run_syncs()
        await worker.wait_for_running_syncs()

        assert started == ["u2"]
        orchestrator.run_with_timeout.assert_awaited_once_with("u2", 30)
        assert worker.get_status()["deferred_users"] == {"u1": until.isoformat()}

    async def test_crashing_run_is_counted_not_raised(
        self, worker: SpotifySyncWorker, orchestrator: MagicMock
    ) -> None:
        orchestrator.run_with_timeout.side_effect = RuntimeError("boom")

        await worker._check_and_run_syncs()
        await worker.wait_for_running_syncs()

        stats = worker.get_status()["stats"]
        assert stats["runs_failed"] == 2
        assert stats["last_error"] == "RuntimeError: boom"


class TestLifecycle:
    async def test_start_and_stop(self, worker: SpotifySyncWorker, store: AsyncMock) -> None:
        await worker.start()
        assert worker.is_running
        await asyncio.sleep(0.01)

        await worker.stop()

        assert not worker.is_running
        store.list_due_for_sync.assert_awaited()
        assert worker.get_status()["active_user_syncs"] == []
