from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code so callers can render feedback without string matching:
    - invalid_credentials, token_expired, token_invalid, token_revoked (401)
    - account_inactive, forbidden (403)
    - account_locked (423)
    - rate_limited (429)
    - weak_password, reset_token_invalid, validation_error (400)
    - conflict (409)
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


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServiceUnavailableError(ServiceError):
    """A backing store failed or timed out (503)."""
    status_code = 503
    error_code = "service_unavailable"


class CredentialError(ServiceError):
    """Base of the closed credential-lifecycle taxonomy."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentials(CredentialError):
    status_code = 401
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid email or password") -> None:
        super().__init__(message)


class AccountLocked(CredentialError):
    status_code = 423
    error_code = "account_locked"

    def __init__(self, retry_after: int, message: Optional[str] = None) -> None:
        self.retry_after = max(1, int(retry_after))
        super().__init__(
            message or "account temporarily locked after repeated failed logins",
            detail={"retry_after": self.retry_after},
        )


class AccountInactive(CredentialError):
    status_code = 403
    error_code = "account_inactive"

    def __init__(self, message: str = "account is disabled") -> None:
        super().__init__(message)


class TokenExpired(CredentialError):
    status_code = 401
    error_code = "token_expired"

    def __init__(self, message: str = "token has expired") -> None:
        super().__init__(message)


class TokenInvalid(CredentialError):
    status_code = 401
    error_code = "token_invalid"

    def __init__(self, message: str = "token is invalid") -> None:
        super().__init__(message)


class TokenRevoked(CredentialError):
    status_code = 401
    error_code = "token_revoked"

    def __init__(self, message: str = "token has been revoked") -> None:
        super().__init__(message)


class RateLimited(CredentialError):
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, retry_after: int, message: Optional[str] = None) -> None:
        self.retry_after = max(1, int(retry_after))
        super().__init__(
            message or "too many requests",
            detail={"retry_after": self.retry_after},
        )


class WeakPassword(CredentialError):
    status_code = 400
    error_code = "weak_password"

    def __init__(self, violations: Sequence[str], message: Optional[str] = None) -> None:
        self.violations: List[str] = list(violations)
        super().__init__(
            message or "password does not meet requirements",
            detail={"violations": self.violations},
        )


class ResetTokenInvalid(CredentialError):
    status_code = 400
    error_code = "reset_token_invalid"

    def __init__(self, message: str = "reset token is invalid or has expired") -> None:
        super().__init__(message)


CREDENTIAL_ERRORS = (
    InvalidCredentials,
    AccountLocked,
    AccountInactive,
    TokenExpired,
    TokenInvalid,
    TokenRevoked,
    RateLimited,
    WeakPassword,
    ResetTokenInvalid,
)


def describe_error(exc: ServiceError) -> Dict[str, Any]:
    """Render a service error as ``{code, message, details}`` for UI feedback."""
    return {
        "code": exc.error_code,
        "message": exc.message,
        "details": dict(exc.detail),
    }


__all__ = [
    "ServiceError",
    "ValidationError",
    "ForbiddenError",
    "ConflictError",
    "ServiceUnavailableError",
    "CredentialError",
    "InvalidCredentials",
    "AccountLocked",
    "AccountInactive",
    "TokenExpired",
    "TokenInvalid",
    "TokenRevoked",
    "RateLimited",
    "WeakPassword",
    "ResetTokenInvalid",
    "CREDENTIAL_ERRORS",
    "describe_error",
]
