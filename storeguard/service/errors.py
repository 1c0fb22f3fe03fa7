from __future__ import annotations

from typing import Dict, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass pins an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - validation_error (400)
    - server_error (500)

    ``public_message`` overrides ``message`` in client-facing responses when
    the internal message would leak which check failed.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    public_message: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.headers = headers or {}

    @property
    def client_message(self) -> str:
        return self.public_message or self.message


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    public_message = "unauthorized"


class InvalidCredentials(AuthenticationError):
    """Unknown email, wrong password, disabled identity or bad access grant."""
    public_message = "invalid credentials"


class RefreshCredentialError(AuthenticationError):
    """Base for refresh credential failures; all render the same to clients."""
    public_message = "invalid or expired refresh token"


class CredentialNotFound(RefreshCredentialError):
    pass


class CredentialExpired(RefreshCredentialError):
    pass


class CredentialRevoked(RefreshCredentialError):
    pass


class SecurityViolation(RefreshCredentialError):
    """A revoked refresh credential was presented again; every session of the
    owning identity has been revoked."""

    def __init__(self, message: str, *, identity_id: Optional[str] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.identity_id = identity_id


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateIdentity(ConflictError):
    """An identity with this email already exists."""


class RateLimitExceeded(ServiceError):
    """Rate limit exceeded (429). Carries retry metadata in ``detail``."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "too many requests",
        *,
        retry_after_seconds: int,
        remaining_tokens: int = 0,
        limit: Optional[int] = None,
    ) -> None:
        detail = {
            "retry_after_seconds": retry_after_seconds,
            "remaining_tokens": remaining_tokens,
        }
        headers = {
            "Retry-After": str(retry_after_seconds),
            "X-Rate-Limit-Retry-After-Seconds": str(retry_after_seconds),
            "X-Rate-Limit-Remaining": str(remaining_tokens),
        }
        if limit is not None:
            headers["X-Rate-Limit-Limit"] = str(limit)
        super().__init__(message, detail=detail, headers=headers)
        self.retry_after_seconds = retry_after_seconds
        self.remaining_tokens = remaining_tokens


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentials",
    "RefreshCredentialError",
    "CredentialNotFound",
    "CredentialExpired",
    "CredentialRevoked",
    "SecurityViolation",
    "ForbiddenError",
    "ConflictError",
    "DuplicateIdentity",
    "RateLimitExceeded",
    "ServerError",
]
