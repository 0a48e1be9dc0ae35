from __future__ import annotations

from typing import Optional

from wordnest.service.errors import AuthErrorCode

_MESSAGES = {
    AuthErrorCode.INVALID_CREDENTIALS.value: "Incorrect email or password",
    AuthErrorCode.USER_NOT_FOUND.value: "User not found",
    AuthErrorCode.EMAIL_ALREADY_EXISTS.value: "This email is already registered",
    AuthErrorCode.USERNAME_ALREADY_EXISTS.value: "This username is already taken",
    AuthErrorCode.INVALID_TOKEN.value: "Your session is invalid or has expired",
    AuthErrorCode.TOKEN_EXPIRED.value: "Your session has expired",
    AuthErrorCode.SESSION_NOT_FOUND.value: "Session not found",
    AuthErrorCode.USER_BANNED.value: "This account has been suspended",
    AuthErrorCode.USER_INACTIVE.value: "This account is inactive",
    AuthErrorCode.TOO_MANY_ATTEMPTS.value: "Too many attempts. Please try again later",
    AuthErrorCode.VALIDATION_ERROR.value: "Please check the information you entered",
}
UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred"


def get_error_message(code: Optional[str]) -> str:
    """User-facing text for an auth error code."""
    return _MESSAGES.get(code or "", UNEXPECTED_ERROR_MESSAGE)


class AuthClientError(Exception):
    """An auth call failed; ``code`` is the server's error code."""

    def __init__(self, code: str, message: Optional[str] = None, *, status_code: Optional[int] = None):
        self.code = code
        self.message = message or get_error_message(code)
        self.status_code = status_code
        super().__init__(self.message)
