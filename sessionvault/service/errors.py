from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each exception class defines both an HTTP status_code and a stable
    error_code so the HTTP layer can map failures without inspecting messages:
    - unauthorized (401)
    - not_found (404)
    - server_error (500)
    - store_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """Session has expired (401)."""
    pass


class InvalidSignatureError(AuthenticationError):
    """Token is malformed, tampered with, or signed with another key."""

    def __init__(self, message: str = "invalid token") -> None:
        super().__init__(message)


class TokenExpiredError(SessionExpiredError):
    """Token signature is valid but its exp claim has passed."""

    def __init__(self, message: str = "token has expired") -> None:
        super().__init__(message)


REUSE_CLIENT_MESSAGE = "session expired, please log in again"


class TokenReuseDetectedError(SessionExpiredError):
    """A refresh token was presented after it had already been rotated.

    The message is deliberately indistinguishable from an ordinary expired
    session. Audit fields stay on the exception and out of ``detail`` so they are
    logged server-side but never rendered to the client.
    """

    def __init__(
        self,
        *,
        user_id: Optional[str] = None,
        family_id: Optional[str] = None,
        reason: str = "reuse",
    ) -> None:
        super().__init__(REUSE_CLIENT_MESSAGE)
        self.user_id = user_id
        self.family_id = family_id
        self.reason = reason


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class StoreUnavailableError(ServerError):
    """Key-value store could not be reached after bounded retries (503).

    Callers must treat this as "cannot confirm the operation succeeded" and
    reject the request rather than guess.
    """
    status_code = 503
    error_code = "store_unavailable"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "SessionExpiredError",
    "InvalidSignatureError",
    "TokenExpiredError",
    "TokenReuseDetectedError",
    "REUSE_CLIENT_MESSAGE",
    "NotFoundError",
    "ServerError",
    "StoreUnavailableError",
]
