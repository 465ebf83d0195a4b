from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each instance carries the HTTP ``status_code``, a stable machine-readable
    ``code`` the frontend switches on, a human ``message`` and, for
    input-related failures, the offending ``field``.
    """

    status_code: int = 400
    code: str = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        field: Optional[str] = None,
        detail: Optional[dict] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.field = field
        self.detail = detail or {}
        self.headers = headers or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, status_code={self.status_code})"


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    code = "VALIDATION_ERROR"


class BadRequestError(ValidationError):
    """Request is well-formed but cannot be honoured (400)."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    code = "UNAUTHORIZED"


class TokenError(AuthenticationError):
    """A signed token failed verification."""


class TokenExpiredError(TokenError):
    code = "TOKEN_EXPIRED"


class InvalidTokenError(TokenError):
    code = "INVALID_TOKEN"


class ForbiddenError(ServiceError):
    """Access denied - insufficient role or permission (403)."""
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    code = "CONFLICT"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    code = "INTERNAL_ERROR"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "TokenError",
    "TokenExpiredError",
    "InvalidTokenError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
