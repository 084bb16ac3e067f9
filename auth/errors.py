"""
auth/errors.py -- Error taxonomy for the session-authentication core.

Each error carries a stable machine-readable `code` and the HTTP status the
transport layer should map it to. The auth core itself never builds HTTP
responses; api/ reads status_code and to_dict().

Taxonomy:
  RateLimitError     429  attempts exceeded, retryable after retry_after_seconds
  UnauthorizedError  401  credential missing/malformed/invalid/expired/revoked
  NotFoundError      404  identity or renewal credential absent
  InternalError      500  persistence or codec failure not caused by input
"""

from __future__ import annotations

from typing import Literal, Optional

UnauthorizedReason = Literal["missing", "malformed", "invalid", "expired", "revoked"]


class AuthError(Exception):
    """Base class for auth-core errors mapped to HTTP responses."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, *, details: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class RateLimitError(AuthError):
    """Too many login attempts inside the trailing window (429)."""

    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str, retry_after_seconds: int, *, details: Optional[dict] = None) -> None:
        super().__init__(message, details=details)
        self.retry_after_seconds = retry_after_seconds


class UnauthorizedError(AuthError):
    """Credential missing or unusable (401).

    `reason` is the precise condition, kept for logs and for clients that
    need a stable discriminator. `message` stays generic for session
    operations so the response does not leak which condition fired.
    """

    status_code = 401
    code = "unauthorized"

    def __init__(
        self,
        reason: UnauthorizedReason,
        message: str = "Invalid or expired session.",
        *,
        details: Optional[dict] = None,
    ) -> None:
        super().__init__(message, details=details)
        self.reason = reason

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["reason"] = self.reason
        return payload


class NotFoundError(AuthError):
    status_code = 404
    code = "not_found"

    def __init__(self, resource: str, *, details: Optional[dict] = None) -> None:
        super().__init__(f"{resource} not found", details=details)
        self.resource = resource


class InternalError(AuthError):
    status_code = 500
    code = "internal_error"


class IdentityConflictError(InternalError):
    """Raised when a concurrent first login already created the same email."""
