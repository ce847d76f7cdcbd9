"""API router initialization."""

# Hey future me, this is the API router aggregator. It gets mounted under /api in
# api/app.py, so the sync endpoints end up at /api/spotify/sync and friends. The
# health router is mounted separately at the root (/health).

from fastapi import APIRouter

from listenlog.api.routers import dashboard, health, spotify_auth, sync

api_router = APIRouter()

api_router.include_router(spotify_auth.router, prefix="/spotify", tags=["Spotify"])
api_router.include_router(sync.router, prefix="/spotify", tags=["Sync"])
api_router.include_router(dashboard.router, prefix="/dashboard", tags=["Dashboard"])

__all__ = [
    "api_router",
    "dashboard",
    "health",
    "spotify_auth",
    "sync",
]
