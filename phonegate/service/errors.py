from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - unauthorized (401)
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
    """Malformed or policy-violating input (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Invalid credentials, session or verification code (401).

    Messages stay generic so callers cannot tell which factor failed.
    """
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """Session has expired (401)."""
    pass


class SessionRevokedError(AuthenticationError):
    """Session was revoked (401)."""
    pass


class SessionNotFoundError(AuthenticationError):
    """Session does not exist (401)."""
    pass


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """State conflict, e.g. duplicate phone or already suspended (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429). Carries the retry-after hint in seconds."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "rate limit exceeded",
        *,
        retry_after: int,
        detail: Optional[dict] = None,
    ) -> None:
        self.retry_after = max(1, int(retry_after))
        super().__init__(
            message, detail={**(detail or {}), "retry_after": self.retry_after}
        )


class ServerError(ServiceError):
    """Storage or delivery-channel failure (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "SessionExpiredError",
    "SessionRevokedError",
    "SessionNotFoundError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
