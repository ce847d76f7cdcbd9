"""Liveness and background-component status."""

from typing import Any

from fastapi import APIRouter, Depends, Request

from listenlog.api.dependencies import get_sync_worker
from listenlog.application.workers import SpotifySyncWorker

router = APIRouter()


@router.get("/health")
async def health(
    request: Request,
    worker: SpotifySyncWorker | None = Depends(get_sync_worker),
) -> dict[str, Any]:
    """Report worker, cache and database pool state. Always 200 while the app serves."""
    query_cache = getattr(request.app.state, "query_cache", None)
    db = getattr(request.app.state, "db", None)
    return {
        "status": "ok",
        "sync_worker": worker.get_status() if worker is not None else None,
        "query_cache": query_cache.get_stats() if query_cache is not None else None,
        "database": db.get_pool_stats() if db is not None else None,
    }
