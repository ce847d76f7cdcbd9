"""Spotify OAuth endpoints: connect, callback, disconnect, connection test."""

import logging
import secrets
from urllib.parse import quote

from fastapi import APIRouter, Cookie, Depends, Query
from fastapi.responses import JSONResponse, RedirectResponse, Response

from listenlog.api.dependencies import (
    get_auth_manager,
    get_connection_probe,
    get_current_user_id,
)
from listenlog.application.services import AuthManager, SpotifyConnectionProbe
from listenlog.domain.exceptions import ConfigurationError, NoConnectionError

logger = logging.getLogger(__name__)

router = APIRouter()

STATE_COOKIE = "spotify_auth_state"
STATE_COOKIE_MAX_AGE = 10 * 60
DASHBOARD_PATH = "/dashboard"


def _dashboard_redirect(query: str) -> RedirectResponse:
    return RedirectResponse(url=f"{DASHBOARD_PATH}?{query}", status_code=307)


def _error_redirect(code: str) -> RedirectResponse:
    return _dashboard_redirect(f"spotify_error={quote(code, safe='')}")


# Hey future me - the state value is our CSRF guard. We hand it to Spotify in the consent
# URL AND keep a copy in an httpOnly cookie; the callback only proceeds when both match.
@router.get("/connect")
async def connect_spotify(
    user_id: str = Depends(get_current_user_id),
    auth_manager: AuthManager = Depends(get_auth_manager),
) -> Response:
    """Redirect the caller to Spotify's consent screen."""
    state = secrets.token_hex(16)
    try:
        authorization_url = auth_manager.build_authorization_url(state)
    except ConfigurationError:
        raise
    except Exception:
        logger.exception("Failed to start Spotify authorization for user %s", user_id)
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to initiate Spotify connection"},
        )

    response = RedirectResponse(url=authorization_url, status_code=307)
    response.set_cookie(
        key=STATE_COOKIE,
        value=state,
        max_age=STATE_COOKIE_MAX_AGE,
        httponly=True,
        samesite="lax",
        secure=auth_manager.settings.redirect_uri.startswith("https://"),
    )
    return response


@router.get("/callback")
async def spotify_callback(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    stored_state: str | None = Cookie(default=None, alias=STATE_COOKIE),
    user_id: str = Depends(get_current_user_id),
    auth_manager: AuthManager = Depends(get_auth_manager),
) -> RedirectResponse:
    """Finish the authorization-code flow and store the connection."""
    if error:
        logger.warning("Spotify authorization denied for user %s: %s", user_id, error)
        return _error_redirect(error)

    if not code or not state:
        return _error_redirect("missing_params")

    if not stored_state or not secrets.compare_digest(stored_state, state):
        logger.warning("Spotify callback state mismatch for user %s", user_id)
        return _error_redirect("invalid_state")

    try:
        await auth_manager.connect(user_id, code)
    except Exception:
        logger.exception("Spotify callback failed for user %s", user_id)
        return _error_redirect("connection_failed")

    response = _dashboard_redirect("spotify_connected=true")
    response.delete_cookie(STATE_COOKIE)
    return response


@router.post("/disconnect")
async def disconnect_spotify(
    user_id: str = Depends(get_current_user_id),
    auth_manager: AuthManager = Depends(get_auth_manager),
) -> JSONResponse:
    """Deactivate the caller's Spotify connection."""
    try:
        await auth_manager.revoke(user_id)
    except NoConnectionError:
        raise
    except Exception:
        logger.exception("Spotify disconnect failed for user %s", user_id)
        return JSONResponse(
            status_code=500, content={"error": "Failed to disconnect Spotify account"}
        )
    return JSONResponse(
        content={"message": "Spotify account disconnected successfully"}
    )


@router.get("/connection")
async def test_spotify_connection(
    user_id: str = Depends(get_current_user_id),
    probe: SpotifyConnectionProbe = Depends(get_connection_probe),
) -> JSONResponse:
    """Live check that the stored connection can still talk to Spotify."""
    connected = await probe.test_connection(user_id)
    return JSONResponse(content={"connected": connected})
