from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for session-core exceptions.

    Each class carries an HTTP ``status_code`` and a stable ``error_code`` so
    the calling web layer can render a response without importing the
    individual classes:

    - invalid_credentials (401)
    - invalid_token (401)
    - forbidden (403)
    - conflict (409)
    - account_locked (423)
    - store_unavailable (503)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two are never distinguished."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid email or password") -> None:
        super().__init__(message)


class InvalidTokenError(AuthenticationError):
    """Malformed, expired, wrong-kind or revoked token."""
    error_code = "invalid_token"

    def __init__(self, message: str = "Invalid or expired token") -> None:
        super().__init__(message)


class AccountLockedError(ServiceError):
    """Too many failed logins; carries the unlock time but not the count."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, locked_until: datetime) -> None:
        super().__init__(
            "Account is temporarily locked due to too many failed login attempts",
            detail={"locked_until": locked_until.isoformat()},
        )
        self.locked_until = locked_until


class ForbiddenError(ServiceError):
    """Access denied - insufficient role (403)."""
    status_code = 403
    error_code = "forbidden"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate email (409)."""
    status_code = 409
    error_code = "conflict"


class StoreUnavailableError(ServiceError):
    """Transient infrastructure failure; retry rather than report bad credentials."""
    status_code = 503
    error_code = "store_unavailable"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "AccountLockedError",
    "ForbiddenError",
    "ConflictError",
    "StoreUnavailableError",
]
