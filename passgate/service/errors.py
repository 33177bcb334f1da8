from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the error envelope:
    - validation_error (400)
    - invalid_code (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500, 502)
    - service_unavailable (503)
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


class CredentialError(ServiceError):
    """A one-time credential could not be redeemed (400).

    Subclasses record the internal reason for logging. The outward message and
    error code are identical for every reason so callers cannot probe which
    check failed.
    """

    status_code = 400
    error_code = "invalid_code"
    reason = "invalid"
    generic_message = "invalid or expired code"

    def __init__(self, message: Optional[str] = None, *, detail: Optional[dict] = None) -> None:
        super().__init__(message or self.generic_message, detail=detail)


class InvalidCredentialError(CredentialError):
    """No credential matched, or its attempts are exhausted."""
    reason = "invalid"


class ExpiredCredentialError(CredentialError):
    """The matching credential is past its expiry."""
    reason = "expired"


class AlreadyUsedCredentialError(CredentialError):
    """The matching credential has already been consumed."""
    reason = "already_used"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class ForbiddenGuestReadonlyError(ForbiddenError):
    """Guest sessions may not perform account mutations (403)."""

    def __init__(self, message: str = "guest accounts are read-only", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. an invalid state transition (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""

    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "rate limit exceeded",
        *,
        retry_after: int = 1,
        limit: int = 0,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.retry_after = max(1, int(retry_after))
        self.limit = limit


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class DeliveryError(ServerError):
    """The delivery gateway failed to hand off a credential (502)."""
    status_code = 502


class ServiceUnavailableError(ServiceError):
    """A required backend is unavailable and the call site fails closed (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "CredentialError",
    "InvalidCredentialError",
    "ExpiredCredentialError",
    "AlreadyUsedCredentialError",
    "AuthenticationError",
    "ForbiddenError",
    "ForbiddenGuestReadonlyError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "DeliveryError",
    "ServiceUnavailableError",
]
