"""FastAPI application factory."""

from fastapi import FastAPI

from listenlog.api.exception_handlers import register_exception_handlers
from listenlog.api.routers import api_router, health
from listenlog.config import Settings
from listenlog.infrastructure.lifecycle import lifespan


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the application.

    Args:
        settings: Explicit settings (tests). Defaults to get_settings() at startup.
    """
    app = FastAPI(
        title="ListenLog",
        description="Spotify listening-history sync service",
        lifespan=lifespan,
    )
    if settings is not None:
        app.state.settings = settings

    register_exception_handlers(app)
    app.include_router(health.router, tags=["Health"])
    app.include_router(api_router, prefix="/api")
    return app
