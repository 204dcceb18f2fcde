from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries a stable ``error_code`` and the HTTP ``status_code``
    it translates to. Messages are safe to show to the client; collapsed
    failures (unknown account vs. wrong password, invalid vs. expired token)
    share one message so responses never reveal which check failed.
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"


class InvalidCredentialsError(AuthenticationError):
    """Email/password pair rejected; unknown accounts land here too (401)."""
    error_code = "INVALID_CREDENTIALS"

    def __init__(self, message: str = "Invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidPasswordError(AuthenticationError):
    """Re-confirmation password did not match (401)."""
    error_code = "INVALID_PASSWORD"

    def __init__(self, message: str = "Invalid password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(ServiceError):
    """Account is temporarily locked after repeated failures (423)."""
    status_code = 423
    error_code = "ACCOUNT_LOCKED"

    def __init__(self, minutes_remaining: int, **kwargs) -> None:
        super().__init__(
            f"Account locked. Try again in {minutes_remaining} minute"
            f"{'' if minutes_remaining == 1 else 's'}",
            detail={"minutes_remaining": minutes_remaining},
            **kwargs,
        )
        self.minutes_remaining = minutes_remaining


class AccountNotActiveError(ServiceError):
    """Account exists but is not ACTIVE (403)."""
    status_code = 403
    error_code = "ACCOUNT_NOT_ACTIVE"

    def __init__(self, status: str, **kwargs) -> None:
        super().__init__(f"Account is {status.lower()}", **kwargs)
        self.status = status


class InvalidCodeError(ServiceError):
    """TOTP or backup code rejected (400)."""
    status_code = 400
    error_code = "INVALID_CODE"

    def __init__(self, message: str = "Invalid verification code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredTokenError(ServiceError):
    """Reset or verification token unknown, consumed or expired (400)."""
    status_code = 400
    error_code = "INVALID_OR_EXPIRED_TOKEN"

    def __init__(self, message: str = "Invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class PasswordReusedError(ServiceError):
    """New password matches a recent one (400)."""
    status_code = 400
    error_code = "PASSWORD_REUSED"

    def __init__(
        self,
        message: str = "Password was used recently; choose a different password",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "FORBIDDEN"


class CsrfValidationError(ForbiddenError):
    """CSRF token missing or invalid (403)."""
    error_code = "CSRF_VALIDATION_FAILED"

    def __init__(self, message: str = "CSRF token validation failed", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "CONFLICT"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "RATE_LIMIT_EXCEEDED"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "INTERNAL_ERROR"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidPasswordError",
    "AccountLockedError",
    "AccountNotActiveError",
    "InvalidCodeError",
    "InvalidOrExpiredTokenError",
    "PasswordReusedError",
    "ForbiddenError",
    "CsrfValidationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
