"""
auth/models.py -- Domain dataclasses for session authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these only own the shape.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class Identity:
    """The durable account record, keyed by a case-normalized email.

    Created implicitly on the first successful login with an unseen email.
    display_name, avatar_url, bio and karma are profile fields owned by the
    profile module; the auth core only reads them.
    """

    email: str
    id: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None
    bio: str | None = None
    karma: int = 0
    created_at: datetime | None = None


@dataclass
class RenewalCredential:
    """A long-lived credential exchanged for fresh access tokens.

    secret_hash is a one-way bcrypt hash; the plaintext is handed to the
    client once and never persisted. revoked_at is set once and never unset.
    """

    identity_id: str
    secret_hash: str
    expires_at: datetime
    id: str | None = None
    revoked_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class AttemptRecord:
    """One login attempt. Append-only; feeds the attempt-window queries."""

    email: str
    succeeded: bool
    origin_address: str
    id: str | None = None
    identity_id: str | None = None
    user_agent: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class AccessClaims:
    """Claims carried inside a signed access token. Never persisted."""

    identity_id: str
    email: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class IssuedRenewal:
    """Plaintext renewal secret returned once at issue time."""

    plain_secret: str
    expires_at: datetime


@dataclass(frozen=True)
class LoginResult:
    """Successful login: access token, identity, and the renewal secret.

    The caller decides how renewal_secret travels (cookie or body field).
    """

    access_token: str
    identity: Identity
    renewal_secret: str
    renewal_expires_at: datetime
    expires_in: int


@dataclass(frozen=True)
class RefreshResult:
    access_token: str
    expires_in: int


@dataclass(frozen=True)
class AuthenticatedIdentity:
    """Marker attached to request.state by the access gates."""

    id: str
    email: str
