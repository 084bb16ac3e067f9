"""
auth/renewal.py -- Long-lived renewal credentials (issue, redeem, revoke).

Security design decisions:
  Secret: secrets.token_hex(32) -- 32 random bytes, 64 hex chars, 256 bits of
       entropy. Returned to the caller exactly once; never stored or logged.

  Hash: bcrypt at a configurable cost. A random per-row salt would make the
       hash unusable as a lookup key, so the salt is derived from SECRET_KEY
       (HMAC-SHA256, truncated to bcrypt's 16 salt bytes). The same plaintext
       therefore always hashes to the same value and redeem() is a single
       UNIQUE-index hit. Someone holding the database but not SECRET_KEY
       cannot even start a brute-force run.

  Redeem does NOT rotate. A renewal credential stays valid for repeated use
       until it expires or is revoked; clients may keep one stored secret for
       the whole lifetime.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta

import bcrypt

from auth.errors import UnauthorizedError
from auth.models import Identity, IssuedRenewal
from auth.result import Err, Ok, Result
from auth.store import CredentialStore, utcnow

logger = logging.getLogger("bazaar.auth.renewal")

RENEWAL_LIFETIME_SECONDS = 7 * 24 * 60 * 60
DEFAULT_ROUNDS = 10

# bcrypt only reads the first 72 bytes of its input. Longer input cannot be a
# secret this module issued, so it is rejected before hashing.
_BCRYPT_MAX_BYTES = 72

_SALT_CONTEXT = b"bazaar.renewal-credential.salt"
_STD_B64 = b"ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
_BCRYPT_B64 = b"./ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789"
_TO_BCRYPT_B64 = bytes.maketrans(_STD_B64, _BCRYPT_B64)


def derive_salt(secret_key: str, rounds: int) -> bytes:
    """Build a bcrypt salt string ($2b$NN$ + 22 chars) from the server key."""
    raw = hmac.new(secret_key.encode("utf-8"), _SALT_CONTEXT, hashlib.sha256).digest()[:16]
    encoded = base64.b64encode(raw).rstrip(b"=").translate(_TO_BCRYPT_B64)
    return b"$2b$%02d$" % rounds + encoded


def generate_secret() -> str:
    """Return a new renewal secret: 32 random bytes as 64 hex characters."""
    return secrets.token_hex(32)


class RenewalCredentialManager:
    """Generate, hash, persist and validate renewal credentials via CredentialStore."""

    def __init__(
        self,
        store: CredentialStore,
        secret_key: str,
        *,
        lifetime_seconds: int = RENEWAL_LIFETIME_SECONDS,
        rounds: int = DEFAULT_ROUNDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._salt = derive_salt(secret_key, rounds)
        self.lifetime_seconds = lifetime_seconds
        self._clock = clock

    def hash_secret(self, plain_secret: str) -> str:
        return bcrypt.hashpw(plain_secret.encode("utf-8"), self._salt).decode("utf-8")

    def issue(self, identity_id: str) -> IssuedRenewal:
        """Create and persist a renewal credential; return the plaintext once.

        Raises InternalError if the store write fails.
        """
        plain_secret = generate_secret()
        expires_at = self._clock() + timedelta(seconds=self.lifetime_seconds)
        credential_id = self._store.create_renewal_credential(identity_id, self.hash_secret(plain_secret), expires_at)
        logger.info("Issued renewal credential id=%s identity_id=%s", credential_id, identity_id)
        return IssuedRenewal(plain_secret=plain_secret, expires_at=expires_at)

    def redeem(self, plain_secret: str) -> Result[Identity, UnauthorizedError]:
        """Validate a presented secret and return the owning Identity.

        Failure reasons: "invalid" (unknown secret or owner gone), "revoked",
        "expired". The credential itself is left untouched on success.
        Raises InternalError if the store is unavailable.
        """
        if not plain_secret or len(plain_secret.encode("utf-8")) > _BCRYPT_MAX_BYTES:
            logger.warning("Renewal credential rejected: unusable input")
            return Err(UnauthorizedError("invalid"))

        credential = self._store.find_renewal_credential_by_hash(self.hash_secret(plain_secret))
        if credential is None:
            logger.warning("Renewal credential rejected: not found")
            return Err(UnauthorizedError("invalid"))
        if credential.revoked_at is not None:
            logger.warning("Renewal credential rejected: revoked id=%s", credential.id)
            return Err(UnauthorizedError("revoked"))
        if credential.expires_at < self._clock():
            logger.warning("Renewal credential rejected: expired id=%s", credential.id)
            return Err(UnauthorizedError("expired"))

        identity = self._store.find_identity_by_id(credential.identity_id)
        if identity is None:
            logger.warning("Renewal credential rejected: identity %s no longer exists", credential.identity_id)
            return Err(UnauthorizedError("invalid"))
        return Ok(identity)

    def revoke(self, plain_secret: str) -> bool:
        """Revoke the single credential matching `plain_secret`. Returns True if one changed."""
        if not plain_secret or len(plain_secret.encode("utf-8")) > _BCRYPT_MAX_BYTES:
            return False
        credential = self._store.find_renewal_credential_by_hash(self.hash_secret(plain_secret))
        if credential is None:
            return False
        return self._store.revoke_renewal_credential(credential.id)

    def revoke_all(self, identity_id: str) -> int:
        """Revoke every active credential owned by `identity_id`. Returns the count."""
        return self._store.revoke_all_renewal_credentials(identity_id)
