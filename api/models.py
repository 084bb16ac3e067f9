"""
API request and response models for the Bazaar auth endpoints.

Wire format only. Domain state lives in the auth/models.py dataclasses;
route handlers convert (see UserProfile.from_identity).
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import Identity

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Pragmatic shape check: one @, no whitespace, a dot in the domain part.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    Email-only login: there is no password field. The validator trims and
    lower-cases before the pattern check, so "  A@X.com " logs in as "a@x.com".
    """

    email: str = Field(min_length=1, max_length=255, pattern=EMAIL_PATTERN)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value


class RefreshRequest(BaseModel):
    """Optional body for POST /auth/refresh and /auth/revoke.

    Browsers send the renewal secret as the refresh_token cookie and leave
    this empty; non-browser clients may put it here instead.
    """

    refresh_token: Optional[str] = Field(default=None, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserProfile(BaseModel):
    """Public view of an Identity."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    bio: Optional[str] = None
    karma: int = 0
    created_at: Optional[datetime] = None

    @classmethod
    def from_identity(cls, identity: Identity) -> "UserProfile":
        return cls(
            id=identity.id,
            email=identity.email,
            name=identity.display_name,
            avatar_url=identity.avatar_url,
            bio=identity.bio,
            karma=identity.karma,
            created_at=identity.created_at,
        )


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserProfile


class RefreshResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class LogoutResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    revoked: int


class SessionStatusResponse(BaseModel):
    """Response for GET /api/v1/auth/session (optional auth)."""

    model_config = ConfigDict(frozen=True)

    authenticated: bool
    user_id: Optional[str] = None
    email: Optional[str] = None


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    reason: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
