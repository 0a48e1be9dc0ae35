from __future__ import annotations

from enum import Enum
from typing import Optional


class AuthErrorCode(str, Enum):
    """Stable machine-readable codes returned to clients."""

    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    EMAIL_ALREADY_EXISTS = "EMAIL_ALREADY_EXISTS"
    USERNAME_ALREADY_EXISTS = "USERNAME_ALREADY_EXISTS"
    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    USER_BANNED = "USER_BANNED"
    USER_INACTIVE = "USER_INACTIVE"
    TOO_MANY_ATTEMPTS = "TOO_MANY_ATTEMPTS"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    OAUTH_FAILED = "OAUTH_FAILED"
    SERVER_ERROR = "SERVER_ERROR"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``;
    ``detail`` carries structured context such as field errors or ban expiry.
    """

    status_code: int = 400
    error_code: str = AuthErrorCode.VALIDATION_ERROR.value

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
    error_code = AuthErrorCode.VALIDATION_ERROR.value


class InvalidCredentialsError(ServiceError):
    """Email/password pair rejected (401). Also used for unknown emails."""
    status_code = 401
    error_code = AuthErrorCode.INVALID_CREDENTIALS.value


class UserNotFoundError(ServiceError):
    """Token subject no longer exists (404)."""
    status_code = 404
    error_code = AuthErrorCode.USER_NOT_FOUND.value


class EmailAlreadyExistsError(ServiceError):
    status_code = 409
    error_code = AuthErrorCode.EMAIL_ALREADY_EXISTS.value


class UsernameAlreadyExistsError(ServiceError):
    status_code = 409
    error_code = AuthErrorCode.USERNAME_ALREADY_EXISTS.value


class InvalidTokenError(ServiceError):
    """Token missing, malformed, tampered with or expired (401)."""
    status_code = 401
    error_code = AuthErrorCode.INVALID_TOKEN.value


class TokenExpiredError(InvalidTokenError):
    """Reserved code; verification reports expiry as InvalidTokenError."""
    error_code = AuthErrorCode.TOKEN_EXPIRED.value


class SessionNotFoundError(ServiceError):
    """Refresh token does not match an active session (401)."""
    status_code = 401
    error_code = AuthErrorCode.SESSION_NOT_FOUND.value


class UserBannedError(ServiceError):
    status_code = 403
    error_code = AuthErrorCode.USER_BANNED.value


class UserInactiveError(ServiceError):
    status_code = 403
    error_code = AuthErrorCode.USER_INACTIVE.value


class TooManyAttemptsError(ServiceError):
    status_code = 429
    error_code = AuthErrorCode.TOO_MANY_ATTEMPTS.value


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = AuthErrorCode.SERVER_ERROR.value


# Codes for HTTP errors raised outside the auth taxonomy (unknown routes, bad methods)
GENERIC_HTTP_CODES = {
    400: AuthErrorCode.VALIDATION_ERROR.value,
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    429: AuthErrorCode.TOO_MANY_ATTEMPTS.value,
    500: AuthErrorCode.SERVER_ERROR.value,
}


__all__ = [
    "AuthErrorCode",
    "ServiceError",
    "ValidationError",
    "InvalidCredentialsError",
    "UserNotFoundError",
    "EmailAlreadyExistsError",
    "UsernameAlreadyExistsError",
    "InvalidTokenError",
    "TokenExpiredError",
    "SessionNotFoundError",
    "UserBannedError",
    "UserInactiveError",
    "TooManyAttemptsError",
    "ServerError",
    "GENERIC_HTTP_CODES",
]
