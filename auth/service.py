"""
auth/service.py -- SessionService: login, refresh, logout and token validation.

SessionService is the only auth component route handlers talk to. It composes
AttemptLimiter, CredentialStore, TokenCodec and RenewalCredentialManager and
returns tagged Ok/Err values; no exception crosses its public methods.

Login walks four states:
  1. Rate check   -- email window or origin failed-window exhausted -> Err(RateLimitError).
                     Nothing is recorded; the caller already knows it is throttled.
  2. Identified   -- find the identity by email, creating it on first login.
                     A concurrent first login for the same email is retried once
                     as a lookup.
  3. Issued       -- access token + renewal credential. A failure here records a
                     failed attempt and returns the underlying error.
  4. Recorded     -- successful attempt written, result returned.

Steps are separate round trips, not one transaction. A crash between identity
creation and renewal persistence leaves an identity with no renewal credential,
which the next login repairs.

Attempt-history writes are bookkeeping: a failure is logged and never turns a
successful login into a failed one.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from auth.errors import AuthError, IdentityConflictError, InternalError, NotFoundError, UnauthorizedError
from auth.limiter import AttemptLimiter
from auth.models import AccessClaims, Identity, LoginResult, RefreshResult
from auth.renewal import RenewalCredentialManager
from auth.result import Err, Ok, Result
from auth.store import CredentialStore, normalize_email, utcnow
from auth.tokens import TokenCodec
from core.config import Settings

logger = logging.getLogger("bazaar.auth")


class SessionService:
    """Orchestrates the session lifecycle on top of the auth components.

    Build one per application with from_settings() and share it across
    requests; it holds no per-request state.
    """

    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        renewals: RenewalCredentialManager,
        limiter: AttemptLimiter,
    ) -> None:
        self._store = store
        self._codec = codec
        self._renewals = renewals
        self._limiter = limiter

    @classmethod
    def from_settings(
        cls,
        store: CredentialStore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> "SessionService":
        """Wire the default component graph from application settings."""
        return cls(
            store=store,
            codec=TokenCodec(settings.secret_key, lifetime_seconds=settings.access_token_seconds, clock=clock),
            renewals=RenewalCredentialManager(
                store,
                settings.secret_key,
                lifetime_seconds=settings.renewal_token_seconds,
                rounds=settings.renewal_hash_rounds,
                clock=clock,
            ),
            limiter=AttemptLimiter(
                store,
                max_attempts_per_email=settings.login_max_attempts_per_email,
                max_failed_per_origin=settings.login_max_failed_per_origin,
                window_minutes=settings.login_window_minutes,
                clock=clock,
            ),
        )

    @property
    def access_token_lifetime(self) -> int:
        return self._codec.lifetime_seconds

    @property
    def renewal_lifetime(self) -> int:
        return self._renewals.lifetime_seconds

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, email: str, origin_address: str, user_agent: str | None = None) -> Result[LoginResult, AuthError]:
        """Log in by email, provisioning the identity on first use.

        Returns Ok(LoginResult) or Err(RateLimitError | InternalError).
        """
        email = normalize_email(email)

        limited = self._limiter.evaluate(email, origin_address)
        if limited is not None:
            return Err(limited)

        try:
            identity = self._find_or_create_identity(email)
            access_token = self._codec.issue(identity)
            renewal = self._renewals.issue(identity.id)
        except AuthError as exc:
            logger.warning("Login failed for email=%s: %s", email, exc.message)
            self._record_attempt(email, False, origin_address, user_agent)
            return Err(exc)
        except Exception:
            logger.exception("Unexpected error during login for email=%s", email)
            self._record_attempt(email, False, origin_address, user_agent)
            return Err(InternalError("An unexpected error occurred during login"))

        self._record_attempt(email, True, origin_address, user_agent)
        logger.info("Login succeeded identity_id=%s email=%s", identity.id, email)
        return Ok(
            LoginResult(
                access_token=access_token,
                identity=identity,
                renewal_secret=renewal.plain_secret,
                renewal_expires_at=renewal.expires_at,
                expires_in=self._codec.lifetime_seconds,
            )
        )

    def _find_or_create_identity(self, email: str) -> Identity:
        identity = self._store.find_identity_by_email(email)
        if identity is not None:
            return identity
        try:
            identity = self._store.create_identity(email)
        except IdentityConflictError:
            # Lost the race against a concurrent first login; the row exists now.
            identity = self._store.find_identity_by_email(email)
            if identity is None:
                raise
            return identity
        logger.info("Created identity id=%s for first-time login email=%s", identity.id, email)
        return identity

    def _record_attempt(self, email: str, succeeded: bool, origin_address: str, user_agent: str | None) -> None:
        try:
            self._store.record_attempt(email, succeeded, origin_address, user_agent)
        except AuthError:
            logger.exception("Failed to record login attempt email=%s succeeded=%s", email, succeeded)

    # ------------------------------------------------------------------
    # Refresh / revoke / logout
    # ------------------------------------------------------------------

    def refresh(self, renewal_secret: str) -> Result[RefreshResult, AuthError]:
        """Exchange a renewal secret for a fresh access token.

        The renewal credential is not rotated and no attempt is recorded.
        Returns Ok(RefreshResult) or Err(UnauthorizedError | InternalError).
        """
        try:
            redeemed = self._renewals.redeem(renewal_secret)
            if redeemed.is_err:
                logger.warning("Refresh rejected: reason=%s", redeemed.error.reason)
                return redeemed
            identity = redeemed.value
            access_token = self._codec.issue(identity)
        except AuthError as exc:
            logger.error("Refresh failed: %s", exc.message)
            return Err(exc)
        except Exception:
            logger.exception("Unexpected error during token refresh")
            return Err(InternalError("An unexpected error occurred during token refresh"))

        logger.info("Access token refreshed identity_id=%s", identity.id)
        return Ok(RefreshResult(access_token=access_token, expires_in=self._codec.lifetime_seconds))

    def revoke(self, renewal_secret: str) -> Result[bool, AuthError]:
        """Revoke one renewal credential. Ok(False) when nothing matched or it was already revoked."""
        try:
            revoked = self._renewals.revoke(renewal_secret)
        except AuthError as exc:
            return Err(exc)
        except Exception:
            logger.exception("Unexpected error during renewal credential revocation")
            return Err(InternalError("An unexpected error occurred during revocation"))
        logger.info("Renewal credential revocation requested (revoked=%s)", revoked)
        return Ok(revoked)

    def logout(self, identity_id: str) -> Result[int, AuthError]:
        """Revoke all renewal credentials of an identity. Idempotent.

        Ok carries the number of credentials revoked by this call (0 on repeat).
        Access tokens already issued remain valid until they expire.
        """
        try:
            count = self._renewals.revoke_all(identity_id)
        except AuthError as exc:
            logger.error("Logout failed identity_id=%s: %s", identity_id, exc.message)
            return Err(exc)
        except Exception:
            logger.exception("Unexpected error during logout identity_id=%s", identity_id)
            return Err(InternalError("An unexpected error occurred during logout"))
        logger.info("Logged out identity_id=%s tokens_revoked=%d", identity_id, count)
        return Ok(count)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def validate_token(self, token: str) -> Result[AccessClaims, UnauthorizedError]:
        """Verify an access token. Used by the access gates."""
        return self._codec.verify(token)

    def get_identity(self, identity_id: str) -> Result[Identity, AuthError]:
        """Fetch the current identity record for an authenticated id."""
        try:
            identity = self._store.find_identity_by_id(identity_id)
        except AuthError as exc:
            return Err(exc)
        if identity is None:
            return Err(NotFoundError("Identity"))
        return Ok(identity)
