from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    import httpx


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    - network_error (502)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """A non-auth endpoint rejected the access token (401)."""
    pass


class RefreshError(AuthenticationError):
    """Base for refresh failures.

    ``response`` is the original 401 that triggered the refresh, when there was
    one, so callers can still inspect what the backend said.
    """

    def __init__(
        self,
        message: str,
        *,
        response: Optional["httpx.Response"] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.response = response


class RefreshIrrecoverableError(RefreshError):
    """The refresh credential was rejected or the session is gone (401)."""
    pass


class RefreshRecoverableError(RefreshError):
    """Refresh timed out or the identity service failed; existing tokens kept (503)."""
    status_code = 503
    error_code = "service_unavailable"
    retryable = True


class NetworkError(ServiceError):
    """No HTTP response was received (502); never treated as an auth failure."""
    status_code = 502
    error_code = "network_error"
    retryable = True


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ConfigurationError(ServerError):
    """Required configuration (e.g. the backend base URL) is missing (500)."""
    pass


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "SessionExpiredError",
    "RefreshError",
    "RefreshIrrecoverableError",
    "RefreshRecoverableError",
    "NetworkError",
    "ServerError",
    "ConfigurationError",
]
