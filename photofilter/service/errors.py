from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - token_expired (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class MissingCredentialsError(AuthenticationError):
    """No bearer credential was presented (401)."""

    def __init__(self, message: str = "authentication required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCredentialsError(AuthenticationError):
    """Username/password pair rejected (401).

    Raised identically for unknown users, users without a password and wrong
    passwords.
    """

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(AuthenticationError):
    """Token signature is valid but it is past its expiry (401)."""
    error_code = "token_expired"

    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class InvalidTokenError(ForbiddenError):
    """Token is malformed, forged or of the wrong kind (403)."""

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenNotRecognizedError(ForbiddenError):
    """Refresh token verifies but is not (or no longer) on file for its user (403)."""

    def __init__(self, message: str = "refresh token not recognized", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class VerificationTokenNotFoundError(NotFoundError):
    def __init__(
        self, message: str = "invalid or expired verification token", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class ShareTokenNotFoundError(NotFoundError):
    def __init__(self, message: str = "share link not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ShareTokenExpiredError(ShareTokenNotFoundError):
    def __init__(self, message: str = "share link expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "MissingCredentialsError",
    "InvalidCredentialsError",
    "TokenExpiredError",
    "ForbiddenError",
    "InvalidTokenError",
    "TokenNotRecognizedError",
    "NotFoundError",
    "VerificationTokenNotFoundError",
    "ShareTokenNotFoundError",
    "ShareTokenExpiredError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
