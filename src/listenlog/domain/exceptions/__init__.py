"""Domain exceptions."""

from typing import Any


class DomainException(Exception):
    """Base exception for all domain exceptions."""

    # Hey future me, we store message as an attribute so code can inspect it without parsing
    # str(exception). DON'T raise this directly - always use a specific subclass so callers
    # (sync orchestrator, exception handlers) can catch precisely.
    def __init__(self, message: str, *args: Any) -> None:
        super().__init__(message, *args)
        self.message = message


class ValidationError(DomainException):
    """Input or provider payload failed validation.

    HTTP Status: 422

    Example:
        raise ValidationError("Track payload missing id")
    """

    pass


class ConfigurationError(DomainException):
    """Application misconfiguration (missing client id, redirect URI, ...).

    HTTP Status: 503
    """

    pass


# =============================================================================
# OAuth errors
# =============================================================================


class AuthExchangeError(DomainException):
    """Spotify rejected an authorization-code exchange.

    The raw provider response body is kept in `provider_error` for diagnostics.
    """

    def __init__(
        self,
        message: str,
        provider_error: str | None = None,
        http_status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.provider_error = provider_error
        self.http_status = http_status


class AuthRefreshError(DomainException):
    """Spotify rejected a refresh-token exchange.

    Hey future me - when AuthManager sees this during get_valid_access_token() it
    DEACTIVATES the connection before re-raising. A dead grant (user revoked access in
    their Spotify account settings) would otherwise be retried on every sync tick forever.
    """

    def __init__(
        self,
        message: str = "Failed to refresh Spotify token",
        provider_error: str | None = None,
        error_code: str | None = None,
        http_status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.provider_error = provider_error
        self.error_code = error_code  # e.g. "invalid_grant"
        self.http_status = http_status

    @property
    def requires_reauth(self) -> bool:
        """Check if error requires user re-authentication."""
        return self.error_code == "invalid_grant" or self.http_status in (400, 401, 403)


# =============================================================================
# Connection preconditions
# =============================================================================


class NoConnectionError(DomainException):
    """User has no stored Spotify connection."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"No Spotify connection found for user {user_id}")
        self.user_id = user_id


class InactiveConnectionError(DomainException):
    """User's Spotify connection has been deactivated (revoked or dead grant)."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"Spotify connection for user {user_id} is inactive")
        self.user_id = user_id


# =============================================================================
# External API errors
# =============================================================================


class ExternalServiceError(DomainException):
    """Spotify Web API returned an error.

    HTTP Status: 502
    """

    pass


class RateLimitedError(ExternalServiceError):
    """Spotify answered 429 Too Many Requests.

    Within one sync run this is a per-stage failure (recorded, NOT retried inline).
    The scheduler reads retry_after_seconds to defer the user's next run.
    """

    def __init__(self, retry_after_seconds: int | None, url: str | None = None) -> None:
        wait = (
            f"{retry_after_seconds}s" if retry_after_seconds is not None else "unknown"
        )
        super().__init__(f"Rate limited by Spotify. Retry after {wait}")
        self.retry_after_seconds = retry_after_seconds
        self.url = url


class ScopeOrAuthError(ExternalServiceError):
    """Spotify answered 401/403 - token invalid or missing a required scope."""

    def __init__(self, reason: str, status: int) -> None:
        super().__init__(f"Spotify denied access ({status}): {reason}")
        self.reason = reason
        self.status = status


class APIError(ExternalServiceError):
    """Any other non-2xx response (or transport failure, status=0)."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(f"Spotify API error {status}: {message}")
        self.status = status
        self.api_message = message


# =============================================================================
# Persistence
# =============================================================================


class UpsertConflictError(DomainException):
    """An upsert hit an integrity error it could not resolve.

    Should not surface with atomic ON CONFLICT upserts; if it does, the sync treats it
    as a per-item failure.
    """

    def __init__(self, entity_type: str, external_id: str, detail: str = "") -> None:
        message = f"Upsert conflict for {entity_type} {external_id}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.entity_type = entity_type
        self.external_id = external_id


__all__ = [
    "APIError",
    "AuthExchangeError",
    "AuthRefreshError",
    "ConfigurationError",
    "DomainException",
    "ExternalServiceError",
    "InactiveConnectionError",
    "NoConnectionError",
    "RateLimitedError",
    "ScopeOrAuthError",
    "UpsertConflictError",
    "ValidationError",
]
