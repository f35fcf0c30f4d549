from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for session-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can switch on:
    - invalid_credentials / missing_token / invalid_token (401)
    - validation_error (400)
    - not_found (404)
    - rate_limited (429)
    - server_error (500)
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


class InvalidCredentialsError(ServiceError):
    """Unknown identifier, wrong password or disabled principal (401)."""
    status_code = 401
    error_code = "invalid_credentials"


class TooManyAttemptsError(ServiceError):
    """Login failure budget for the client key is exhausted (429)."""
    status_code = 429
    error_code = "rate_limited"


class MissingTokenError(ServiceError):
    """A required token was not supplied (401)."""
    status_code = 401
    error_code = "missing_token"


class InvalidTokenError(ServiceError):
    """Token is malformed, tampered, revoked or expired (401)."""
    status_code = 401
    error_code = "invalid_token"


class ExpiredTokenError(InvalidTokenError):
    """Token was well formed but its expiry has passed (401)."""
    pass


class WeakPasswordError(ServiceError):
    """New password does not satisfy the password policy (400)."""
    status_code = 400
    error_code = "validation_error"


class NotFoundError(ServiceError):
    """Requested principal or record not found (404)."""
    status_code = 404
    error_code = "not_found"


__all__ = [
    "ServiceError",
    "InvalidCredentialsError",
    "TooManyAttemptsError",
    "MissingTokenError",
    "InvalidTokenError",
    "ExpiredTokenError",
    "WeakPasswordError",
    "NotFoundError",
]
