"""Sync trigger and sync status endpoints."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from listenlog.api.dependencies import get_current_user_id, get_sync_orchestrator
from listenlog.application.services import SyncOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


# Hey future me - a sync with partial failures is still a 200! The client has to look at
# synced.errors. Only an exception escaping the orchestrator (which it is built never to
# let happen) turns into the generic 500.
@router.post("/sync")
async def trigger_sync(
    user_id: str = Depends(get_current_user_id),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> JSONResponse:
    """Run an on-demand sync for the calling user and return the counters."""
    try:
        result = await orchestrator.run_with_timeout(
            user_id, orchestrator.settings.user_timeout_seconds
        )
    except Exception:
        logger.exception("On-demand Spotify sync failed for user %s", user_id)
        return JSONResponse(
            status_code=500, content={"error": "Failed to sync Spotify data"}
        )

    return JSONResponse(
        content={
            "message": "Sync completed successfully",
            "synced": result.to_dict(),
        }
    )


@router.get("/sync")
async def get_sync_status(
    user_id: str = Depends(get_current_user_id),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> JSONResponse:
    """Connection state, last/next sync time and sync count for the calling user."""
    try:
        sync_status = await orchestrator.get_sync_status(user_id)
    except Exception:
        logger.exception("Failed to read sync status for user %s", user_id)
        return JSONResponse(
            status_code=500, content={"error": "Failed to get sync status"}
        )
    return JSONResponse(content=sync_status.to_dict())
