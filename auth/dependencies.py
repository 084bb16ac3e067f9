"""
auth/dependencies.py -- FastAPI Depends() helpers: the access gates.

Both gates read `Authorization: Bearer <token>` and verify it through
SessionService.validate_token(). On success the authenticated identity is
attached to request.state.identity for downstream handlers.

get_current_identity()      -- required gate. Missing header, malformed header,
                               invalid or expired token -> HTTP 401 carrying a
                               stable `reason` (missing/malformed/invalid/expired).
                               Header shape is checked before any verification.
try_get_current_identity()  -- optional gate. Same extraction and verification,
                               but every failure simply yields None; it never
                               returns an error.

Layer rule: auth/dependencies.py may import from fastapi (for Request and
HTTPException) because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request

from auth.errors import UnauthorizedError
from auth.models import AuthenticatedIdentity
from auth.result import Err, Ok, Result
from auth.service import SessionService

logger = logging.getLogger("bazaar.auth.gate")

_MESSAGES = {
    "missing": "Authorization header is required.",
    "malformed": "Authorization header must be in format: Bearer <token>.",
}


def extract_bearer_token(header: str | None) -> Result[str, UnauthorizedError]:
    """Split an Authorization header value into its bearer token.

    Exactly two space-separated parts are accepted, the first being the
    literal "Bearer".
    """
    if not header:
        return Err(UnauthorizedError("missing", _MESSAGES["missing"]))
    parts = header.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        return Err(UnauthorizedError("malformed", _MESSAGES["malformed"]))
    return Ok(parts[1])


def _session_service(request: Request) -> SessionService:
    return request.app.state.session_service


def _unauthorized(error: UnauthorizedError) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail=error.to_dict(),
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_identity(request: Request) -> AuthenticatedIdentity:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: AuthenticatedIdentity = Depends(get_current_identity)): ...
    """
    extracted = extract_bearer_token(request.headers.get("Authorization"))
    if extracted.is_err:
        logger.warning("Rejected %s %s: %s", request.method, request.url.path, extracted.error.reason)
        raise _unauthorized(extracted.error)

    verified = _session_service(request).validate_token(extracted.value)
    if verified.is_err:
        logger.warning("Rejected %s %s: token %s", request.method, request.url.path, verified.error.reason)
        raise _unauthorized(verified.error)

    identity = AuthenticatedIdentity(id=verified.value.identity_id, email=verified.value.email)
    request.state.identity = identity
    return identity


def try_get_current_identity(request: Request) -> AuthenticatedIdentity | None:
    """Attach the identity when a valid token is present; otherwise return None.

    Never raises -- routes that work for anonymous callers decide for
    themselves what a missing identity means.
    """
    request.state.identity = None
    extracted = extract_bearer_token(request.headers.get("Authorization"))
    if extracted.is_err:
        if extracted.error.reason != "missing":
            logger.debug("Optional auth: %s Authorization header ignored", extracted.error.reason)
        return None

    verified = _session_service(request).validate_token(extracted.value)
    if verified.is_err:
        logger.debug("Optional auth: token %s, continuing anonymously", verified.error.reason)
        return None

    identity = AuthenticatedIdentity(id=verified.value.identity_id, email=verified.value.email)
    request.state.identity = identity
    return identity
