"""ASGI entry point: ``uvicorn listenlog.main:app``."""

from listenlog.api.app import create_app

app = create_app()
