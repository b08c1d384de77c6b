from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class carries an HTTP status_code and a stable error_code:
    - bad_request (400)
    - unauthorized (401)
    - forbidden / account_locked (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "bad_request"

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


class BadRequestError(ServiceError):
    """Request is well-formed but cannot be honoured (400)."""
    status_code = 400
    error_code = "bad_request"


class AuthenticationError(ServiceError):
    """Credentials or token rejected (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient role (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountLockedError(ForbiddenError):
    """Login refused while the account lock is in force (403)."""
    error_code = "account_locked"

    def __init__(self, retry_after_minutes: int) -> None:
        super().__init__(
            f"Account locked. Retry in {retry_after_minutes} minute(s).",
            detail={"retry_after_minutes": retry_after_minutes},
        )
        self.retry_after_minutes = retry_after_minutes


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. email or tenant code already taken (409)."""
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
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "AccountLockedError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
