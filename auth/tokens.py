"""
auth/tokens.py -- Signed access tokens (JWT, HS256 via python-jose).

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       exactly identity_id, email, iat and exp. Nothing about an issued token
       is stored server-side, so a token cannot be revoked individually; its
       short lifetime (default 15 minutes) is the only bound on misuse.

  Verification order: signature/structure first ("invalid"), then the claim
       set must be complete ("invalid"), then expiry against the codec clock
       ("expired"). Expiry is checked here rather than inside jose so the
       clock is injectable and both reasons stay distinguishable for logs.

  TokenCodec holds only immutable configuration. issue() and verify() do no
       I/O and share no mutable state, so one instance serves every request.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from numbers import Number

from jose import JWTError, jwt

from auth.errors import UnauthorizedError
from auth.models import AccessClaims, Identity
from auth.result import Err, Ok, Result
from auth.store import utcnow

logger = logging.getLogger("bazaar.auth.tokens")

_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ("identity_id", "email", "iat", "exp")


class TokenCodec:
    """Issue and verify short-lived access tokens.

    Usage:
        codec = TokenCodec(settings.secret_key, lifetime_seconds=900)
        token = codec.issue(identity)
        result = codec.verify(token)
        if result.is_ok:
            claims = result.value
    """

    def __init__(
        self,
        secret_key: str,
        lifetime_seconds: int = 15 * 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._secret_key = secret_key
        self.lifetime_seconds = lifetime_seconds
        self._clock = clock

    def issue(self, identity: Identity) -> str:
        """Encode a signed token for `identity` expiring lifetime_seconds from now."""
        issued_at = self._clock().replace(microsecond=0)
        payload = {
            "identity_id": identity.id,
            "email": identity.email,
            "iat": issued_at,
            "exp": issued_at + timedelta(seconds=self.lifetime_seconds),
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def verify(self, token: str) -> Result[AccessClaims, UnauthorizedError]:
        """Decode and check a token. Returns Ok(AccessClaims) or Err(UnauthorizedError)."""
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError as exc:
            logger.warning("Access token rejected: %s", exc)
            return Err(UnauthorizedError("invalid"))

        missing = [claim for claim in _REQUIRED_CLAIMS if not payload.get(claim)]
        if missing or not all(isinstance(payload[c], Number) for c in ("iat", "exp")):
            logger.warning("Access token rejected: incomplete claims (missing=%s)", missing)
            return Err(UnauthorizedError("invalid"))

        try:
            claims = AccessClaims(
                identity_id=str(payload["identity_id"]),
                email=str(payload["email"]),
                issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )
        except (OverflowError, OSError, ValueError):
            logger.warning("Access token rejected: timestamp out of range")
            return Err(UnauthorizedError("invalid"))
        if self._clock() > claims.expires_at:
            logger.info("Access token rejected: expired at %s", claims.expires_at.isoformat())
            return Err(UnauthorizedError("expired"))
        return Ok(claims)
