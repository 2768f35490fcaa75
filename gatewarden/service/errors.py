from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for security-engine exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - expired (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - account_locked (423)
    - rate_limited (429)
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
    """Malformed scope, weak password, bad domain (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Wrong credentials or an invalid token or code (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """A reset token, second-factor code or key that does not match anything live."""
    error_code = "invalid_token"


class ExpiredError(AuthenticationError):
    """Session, token or key past its deadline (401)."""
    error_code = "expired"


class SessionExpiredError(ExpiredError):
    pass


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Unknown account, session, key or token (404)."""
    status_code = 404
    error_code = "not_found"


class SessionNotFoundError(NotFoundError):
    pass


class ConflictError(ServiceError):
    """Duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class AccountLockedError(ServiceError):
    """Account is inside its lockout window (423)."""
    status_code = 423
    error_code = "account_locked"


class RateLimitExceeded(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class DeliveryError(ServiceError):
    """A notification whose delivery is the whole point of the call failed (503)."""
    status_code = 503
    error_code = "delivery_failed"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidTokenError",
    "ExpiredError",
    "SessionExpiredError",
    "ForbiddenError",
    "NotFoundError",
    "SessionNotFoundError",
    "ConflictError",
    "AccountLockedError",
    "RateLimitExceeded",
    "DeliveryError",
]
