from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable upper-case
    ``error_code`` that clients branch on. The ``detail`` dict is returned
    verbatim as the envelope's ``details`` field, so it must never carry
    secrets.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

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
    error_code = "VALIDATION_ERROR"


class InvalidCurrentPasswordError(ValidationError):
    error_code = "INVALID_CURRENT_PASSWORD"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "AUTH_REQUIRED"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email and wrong password share this error on purpose."""
    error_code = "INVALID_CREDENTIALS"


class AccountDeactivatedError(AuthenticationError):
    error_code = "ACCOUNT_DEACTIVATED"


class AccountLockedError(AuthenticationError):
    status_code = 423
    error_code = "ACCOUNT_LOCKED"


class TokenMissingError(AuthenticationError):
    error_code = "TOKEN_MISSING"


class TokenExpiredError(AuthenticationError):
    error_code = "TOKEN_EXPIRED"


class TokenInvalidError(AuthenticationError):
    error_code = "TOKEN_INVALID"


class UserNotFoundError(AuthenticationError):
    error_code = "USER_NOT_FOUND"


class SessionInvalidError(AuthenticationError):
    """Session is unknown, inactive, expired, or no longer matches the token."""
    error_code = "SESSION_INVALID"


class PasswordChangedError(AuthenticationError):
    error_code = "PASSWORD_CHANGED"


class RefreshTokenMissingError(AuthenticationError):
    error_code = "REFRESH_TOKEN_MISSING"


class RefreshTokenInvalidError(AuthenticationError):
    error_code = "REFRESH_TOKEN_INVALID"


class TokenReuseDetectedError(AuthenticationError):
    """A superseded refresh token was replayed; its whole family is revoked."""
    error_code = "TOKEN_REUSE_DETECTED"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "INSUFFICIENT_PERMISSIONS"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class SessionNotFoundError(NotFoundError):
    error_code = "SESSION_NOT_FOUND"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "CONFLICT"


class UserExistsError(ConflictError):
    error_code = "USER_EXISTS"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, message: str, *, retry_after: int, **kwargs) -> None:
        detail = {**(kwargs.pop("detail", None) or {}), "retryAfter": retry_after}
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "SERVER_ERROR"


class StoreUnavailableError(ServerError):
    status_code = 503
    error_code = "STORE_UNAVAILABLE"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCurrentPasswordError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "AccountDeactivatedError",
    "AccountLockedError",
    "TokenMissingError",
    "TokenExpiredError",
    "TokenInvalidError",
    "UserNotFoundError",
    "SessionInvalidError",
    "PasswordChangedError",
    "RefreshTokenMissingError",
    "RefreshTokenInvalidError",
    "TokenReuseDetectedError",
    "ForbiddenError",
    "NotFoundError",
    "SessionNotFoundError",
    "ConflictError",
    "UserExistsError",
    "RateLimitedError",
    "ServerError",
    "StoreUnavailableError",
]
