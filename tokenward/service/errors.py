from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to transport responses.

    Each subclass carries a stable ``error_code`` and the HTTP status an
    outer transport layer should use. Only the orchestrator turns these into
    user-facing outcomes; lower layers let them propagate.
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


class InvalidTokenError(ServiceError):
    """Token signature, format, type or expiry is invalid (401)."""
    status_code = 401
    error_code = "invalid_token"


class TokenFamilyExpiredError(ServiceError):
    """Refresh chain exceeded its absolute lifetime; sign in again (401)."""
    status_code = 401
    error_code = "session_expired"


class TokenReplayDetectedError(ServiceError):
    """A superseded refresh token was presented; all sessions revoked (401)."""
    status_code = 401
    error_code = "token_reuse"


class BadCredentialsError(ServiceError):
    """Identifier or secret is wrong; the message never says which (401)."""
    status_code = 401
    error_code = "unauthorized"


class _RetryAfterError(ServiceError):
    def __init__(self, message: str, *, retry_after: Optional[int] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after
        if retry_after is not None:
            self.detail.setdefault("retry_after", retry_after)


class AccountLockedError(_RetryAfterError):
    """Too many failed attempts; identifier temporarily locked (423)."""
    status_code = 423
    error_code = "account_locked"


class RateLimitedError(_RetryAfterError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServiceUnavailableError(ServiceError):
    """Credential store unavailable; request failed closed (503)."""
    status_code = 503
    error_code = "store_unavailable"


__all__ = [
    "ServiceError",
    "InvalidTokenError",
    "TokenFamilyExpiredError",
    "TokenReplayDetectedError",
    "BadCredentialsError",
    "AccountLockedError",
    "RateLimitedError",
    "ServiceUnavailableError",
]
