from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass pins an HTTP ``status_code`` and a stable ``error_code``.
    Clients branch on the code, never on the message text:
    - VALIDATION_ERROR (400)
    - DUPLICATE_EMAIL (400)
    - EMAIL_IN_USE (400)
    - INVALID_CREDENTIALS (401)
    - INCORRECT_PASSWORD (401)
    - AUTH_REQUIRED (401)
    - TOKEN_EXPIRED (401)
    - INVALID_TOKEN (401)
    - INVALID_REFRESH_TOKEN (401)
    - USER_NOT_FOUND (404)
    - INTERNAL_ERROR (500)
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"
    default_message: str = "Invalid request"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Missing or malformed input (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class DuplicateEmailError(ServiceError):
    """Registration with an email that already has an account (400)."""
    status_code = 400
    error_code = "DUPLICATE_EMAIL"
    default_message = "Email already registered"


class EmailInUseError(ServiceError):
    """Profile email change collides with another account (400)."""
    status_code = 400
    error_code = "EMAIL_IN_USE"
    default_message = "Email already in use"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"
    default_message = "Unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; deliberately indistinguishable."""
    error_code = "INVALID_CREDENTIALS"
    default_message = "Invalid credentials"


class IncorrectPasswordError(AuthenticationError):
    error_code = "INCORRECT_PASSWORD"
    default_message = "Current password is incorrect"


class AuthenticationRequiredError(AuthenticationError):
    error_code = "AUTH_REQUIRED"
    default_message = "Authentication required"


class TokenExpiredError(AuthenticationError):
    """Access token signature is valid but its expiry has passed."""
    error_code = "TOKEN_EXPIRED"
    default_message = "Token expired"


class InvalidTokenError(AuthenticationError):
    error_code = "INVALID_TOKEN"
    default_message = "Invalid token"


class RefreshTokenInvalidError(AuthenticationError):
    """Refresh token absent or expired; the two are not distinguished."""
    error_code = "INVALID_REFRESH_TOKEN"
    default_message = "Invalid or expired refresh token"


class UserNotFoundError(ServiceError):
    status_code = 404
    error_code = "USER_NOT_FOUND"
    default_message = "User not found"


class InternalError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "INTERNAL_ERROR"
    default_message = "Internal server error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "DuplicateEmailError",
    "EmailInUseError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "IncorrectPasswordError",
    "AuthenticationRequiredError",
    "TokenExpiredError",
    "InvalidTokenError",
    "RefreshTokenInvalidError",
    "UserNotFoundError",
    "InternalError",
]
