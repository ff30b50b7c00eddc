from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code``, a stable ``error_code`` and
    the taxonomy ``kind`` reported to clients. ``message`` must be safe to
    show to an unauthenticated caller; anything else goes in the logs.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    kind: str = "ValidationError"

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
    kind = "ValidationError"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    kind = "AuthenticationError"


class InvalidCredentialsError(AuthenticationError):
    """Wrong password or unknown email; the two are indistinguishable."""

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionNotFoundError(AuthenticationError):
    def __init__(self, message: str = "authentication required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionExpiredError(AuthenticationError):
    def __init__(self, message: str = "session expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthorizationError(ServiceError):
    """Access denied - insufficient role or permission (403)."""
    status_code = 403
    error_code = "forbidden"
    kind = "AuthorizationError"


class CSRFError(ServiceError):
    """Missing, invalid or expired CSRF token (403)."""
    status_code = 403
    error_code = "csrf_invalid"
    kind = "CSRFError"

    def __init__(self, message: str = "invalid csrf token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RateLimitError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    kind = "RateLimitError"

    def __init__(self, retry_after_ms: int, message: str = "too many requests") -> None:
        super().__init__(message, detail={"retry_after_ms": retry_after_ms})
        self.retry_after_ms = retry_after_ms

    @property
    def retry_after_seconds(self) -> int:
        return max(1, -(-self.retry_after_ms // 1000))


class LockoutError(ServiceError):
    """Account temporarily suspended after repeated failures (429)."""
    status_code = 429
    error_code = "locked_out"
    kind = "LockoutError"

    def __init__(self, retry_after_seconds: int, locked_until: datetime) -> None:
        super().__init__(
            "too many failed login attempts, try again later",
            detail={
                "retry_after_ms": retry_after_seconds * 1000,
                "locked_until": locked_until.isoformat(),
            },
        )
        self.retry_after_seconds = retry_after_seconds
        self.locked_until = locked_until

    @property
    def retry_after_ms(self) -> int:
        return self.retry_after_seconds * 1000


class InternalError(ServiceError):
    """Collaborator or store failure (500)."""
    status_code = 500
    error_code = "server_error"
    kind = "InternalError"

    def __init__(self, message: str = "internal server error", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "SessionNotFoundError",
    "SessionExpiredError",
    "AuthorizationError",
    "CSRFError",
    "RateLimitError",
    "LockoutError",
    "InternalError",
]
