"""Listening-history read endpoints backing the dashboard."""

import logging
from datetime import UTC, datetime, timedelta
from typing import Literal

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from listenlog.api.dependencies import (
    get_current_user_id,
    get_listening_history_service,
)
from listenlog.application.services import ListeningHistoryService

logger = logging.getLogger(__name__)

router = APIRouter()

TimeRangeName = Literal["week", "month", "year", "all"]

_TIME_RANGE_DAYS = {"week": 7, "month": 30, "year": 365}


# Hey future me - windows end on the next full hour so repeated dashboard polls share
# one cache key instead of minting a new one every request.
def _window_end() -> datetime:
    now = datetime.now(UTC).replace(minute=0, second=0, microsecond=0)
    return now + timedelta(hours=1)


def _time_range_window(
    time_range: TimeRangeName,
) -> tuple[datetime | None, datetime | None]:
    if time_range == "all":
        return None, None
    end = _window_end()
    return end - timedelta(days=_TIME_RANGE_DAYS[time_range]), end


@router.get("/recent-tracks")
async def get_recent_tracks(
    limit: int = Query(default=50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    history: ListeningHistoryService = Depends(get_listening_history_service),
) -> JSONResponse:
    """Most recent plays, newest first."""
    try:
        plays = await history.get_recent_plays(user_id, limit=limit)
    except Exception:
        logger.exception("Failed to load recent tracks for user %s", user_id)
        return JSONResponse(
            status_code=500, content={"error": "Failed to fetch recent tracks"}
        )
    return JSONResponse(content={"tracks": [play.to_dict() for play in plays]})


@router.get("/stats")
async def get_listening_stats(
    days: int = Query(default=30, ge=1, le=3650),
    user_id: str = Depends(get_current_user_id),
    history: ListeningHistoryService = Depends(get_listening_history_service),
) -> JSONResponse:
    """Play count and listening time over the last `days` days."""
    end = _window_end()
    start = end - timedelta(days=days)
    try:
        stats = await history.get_listening_stats(user_id, start, end)
    except Exception:
        logger.exception("Failed to load listening stats for user %s", user_id)
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to fetch listening statistics"},
        )
    return JSONResponse(content=stats.to_dict())


@router.get("/top-artists")
async def get_top_artists(
    time_range: TimeRangeName = Query(default="month", alias="timeRange"),
    limit: int = Query(default=10, ge=1, le=50),
    user_id: str = Depends(get_current_user_id),
    history: ListeningHistoryService = Depends(get_listening_history_service),
) -> JSONResponse:
    """Most played artists over the last week, month, year or all history."""
    start, end = _time_range_window(time_range)
    try:
        artists = await history.get_top_artists(user_id, limit=limit, start=start, end=end)
    except Exception:
        logger.exception("Failed to load top artists for user %s", user_id)
        return JSONResponse(
            status_code=500, content={"error": "Failed to fetch top artists"}
        )
    return JSONResponse(content=[artist.to_dict() for artist in artists])


@router.get("/top-tracks")
async def get_top_tracks(
    time_range: TimeRangeName = Query(default="month", alias="timeRange"),
    limit: int = Query(default=10, ge=1, le=50),
    user_id: str = Depends(get_current_user_id),
    history: ListeningHistoryService = Depends(get_listening_history_service),
) -> JSONResponse:
    start, end = _time_range_window(time_range)
    try:
        tracks = await history.get_top_tracks(user_id, limit=limit, start=start, end=end)
    except Exception:
        logger.exception("Failed to load top tracks for user %s", user_id)
        return JSONResponse(
            status_code=500, content={"error": "Failed to fetch top tracks"}
        )
    return JSONResponse(content=[track.to_dict() for track in tracks])


@router.get("/listening-trends")
async def get_listening_trends(
    days: int = Query(default=30, ge=1, le=3650),
    user_id: str = Depends(get_current_user_id),
    history: ListeningHistoryService = Depends(get_listening_history_service),
) -> JSONResponse:
    """Plays, minutes and distinct artists per day over the last `days` days."""
    start = _window_end() - timedelta(days=days)
    try:
        trends = await history.get_listening_trends(user_id, start)
    except Exception:
        logger.exception("Failed to load listening trends for user %s", user_id)
        return JSONResponse(
            status_code=500, content={"error": "Failed to fetch listening trends"}
        )
    return JSONResponse(content=[trend.to_dict() for trend in trends])


@router.get("/genres")
async def get_genre_distribution(
    user_id: str = Depends(get_current_user_id),
    history: ListeningHistoryService = Depends(get_listening_history_service),
) -> JSONResponse:
    try:
        genres = await history.get_genre_distribution(user_id)
    except Exception:
        logger.exception("Failed to load genre distribution for user %s", user_id)
        return JSONResponse(
            status_code=500, content={"error": "Failed to fetch genre distribution"}
        )
    return JSONResponse(content=[genre.to_dict() for genre in genres])
