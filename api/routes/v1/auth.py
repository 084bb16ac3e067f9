"""
api/routes/v1/auth.py -- Session authentication REST endpoints.

Routes:
  POST /api/v1/auth/login     -- email login; returns access token, sets refresh_token cookie
  POST /api/v1/auth/refresh   -- exchange the renewal secret for a new access token
  POST /api/v1/auth/revoke    -- revoke one renewal secret (cookie or body); 204
  POST /api/v1/auth/logout    -- revoke all renewal secrets of the caller (requires auth)
  GET  /api/v1/auth/me        -- current identity profile (requires auth)
  GET  /api/v1/auth/session   -- whether the caller is authenticated (optional auth)

Transport:
  Access tokens travel as Authorization: Bearer <token>.
  The renewal secret travels as the httpOnly refresh_token cookie, scoped to
  /api/v1/auth. Non-browser clients may send it as {"refresh_token": ...} or
  as a Bearer header on /refresh instead.

Security:
  POST /login is throttled per IP by slowapi on top of the per-email and
  per-origin attempt limits enforced inside SessionService.
  Cache-Control: no-store on every response carrying a credential.
  401s from refresh/logout/validate use one generic message; the `reason`
  field is the only discriminator.
"""

from __future__ import annotations

import logging
from typing import NoReturn

from fastapi import APIRouter, Body, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    RefreshRequest,
    RefreshResponse,
    SessionStatusResponse,
    UserProfile,
)
from auth.dependencies import extract_bearer_token, get_current_identity, try_get_current_identity
from auth.errors import AuthError, RateLimitError, UnauthorizedError
from auth.models import AuthenticatedIdentity
from auth.service import SessionService
from core.config import get_settings

logger = logging.getLogger("bazaar.api.auth")

REFRESH_COOKIE = "refresh_token"
_REFRESH_COOKIE_PATH = "/api/v1/auth"

# Auth policy:
# - POST /api/v1/auth/login:    public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/refresh:  public -- the renewal secret is the credential
# - POST /api/v1/auth/revoke:   public -- the renewal secret is the credential
# - POST /api/v1/auth/logout:   requires auth (get_current_identity)
# - GET  /api/v1/auth/me:       requires auth (get_current_identity)
# - GET  /api/v1/auth/session:  optional auth (try_get_current_identity)
router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _service(request: Request) -> SessionService:
    return request.app.state.session_service


def client_origin(request: Request) -> str:
    """Best-effort origin address: first X-Forwarded-For hop, X-Real-IP, then the peer."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("X-Real-IP", "").strip()
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


def _raise_for(error: AuthError) -> NoReturn:
    """Turn a service error into the HTTP error envelope."""
    headers: dict[str, str] = {"Cache-Control": "no-store"}
    if isinstance(error, RateLimitError):
        headers["Retry-After"] = str(error.retry_after_seconds)
    elif isinstance(error, UnauthorizedError):
        headers["WWW-Authenticate"] = "Bearer"
    raise HTTPException(status_code=error.status_code, detail=error.to_dict(), headers=headers)


def _presented_renewal_secret(request: Request, body: RefreshRequest | None, allow_bearer: bool) -> str | None:
    secret = request.cookies.get(REFRESH_COOKIE)
    if not secret and body is not None and body.refresh_token:
        secret = body.refresh_token
    if not secret and allow_bearer:
        extracted = extract_bearer_token(request.headers.get("Authorization"))
        if extracted.is_ok:
            secret = extracted.value
    return secret


def set_refresh_cookie(response: Response, secret: str, max_age: int) -> None:
    """Write the renewal secret as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="strict" and a path limited to the auth routes: the cookie is
    only ever sent to /refresh, /revoke and /logout.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the renewal credential lifetime.
    """
    response.set_cookie(
        REFRESH_COOKIE,
        value=secret,
        httponly=True,
        samesite="strict",
        secure=get_settings().secure_cookies,
        max_age=max_age,
        path=_REFRESH_COOKIE_PATH,
    )


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(login_rate_limit)  # the router must register the rate-limited wrapper
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Log in with an email address; unknown emails get an account on the spot.

    The response looks the same for new and existing accounts, so it reveals
    nothing about which emails are registered.
    """
    origin = client_origin(request)
    logger.info("Login attempt email=%s origin=%s", body.email, origin)

    result = _service(request).login(body.email, origin, request.headers.get("User-Agent"))
    if result.is_err:
        _raise_for(result.error)

    session = result.value
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=session.access_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=session.expires_in,
            user=UserProfile.from_identity(session.identity),
        ).model_dump(mode="json"),
    )
    set_refresh_cookie(resp, session.renewal_secret, _service(request).renewal_lifetime)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/refresh", response_model=RefreshResponse)
def refresh(request: Request, body: RefreshRequest | None = Body(default=None)) -> JSONResponse:
    """Issue a fresh access token for a valid renewal secret.

    The renewal secret is not rotated; the same cookie keeps working until it
    expires or is revoked.
    """
    secret = _presented_renewal_secret(request, body, allow_bearer=True)
    if not secret:
        _raise_for(UnauthorizedError("missing", "Refresh token is required."))

    result = _service(request).refresh(secret)
    if result.is_err:
        _raise_for(result.error)

    resp = JSONResponse(
        content=RefreshResponse(
            access_token=result.value.access_token,
            token_type="bearer",  # noqa: S106 # nosec B106
            expires_in=result.value.expires_in,
        ).model_dump()
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/revoke", status_code=204)
def revoke(request: Request, body: RefreshRequest | None = Body(default=None)) -> Response:
    """Revoke the presented renewal secret. Idempotent; unknown secrets also get 204."""
    secret = _presented_renewal_secret(request, body, allow_bearer=False)
    if not secret:
        _raise_for(UnauthorizedError("missing", "Refresh token is required."))

    result = _service(request).revoke(secret)
    if result.is_err:
        _raise_for(result.error)

    resp = Response(status_code=204)
    resp.delete_cookie(REFRESH_COOKIE, path=_REFRESH_COOKIE_PATH)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=LogoutResponse)
def logout(request: Request, identity: AuthenticatedIdentity = Depends(get_current_identity)) -> JSONResponse:
    """Revoke every renewal credential of the caller and clear the cookie.

    Access tokens already handed out stay valid until they expire.
    """
    result = _service(request).logout(identity.id)
    if result.is_err:
        _raise_for(result.error)

    resp = JSONResponse(content=LogoutResponse(message="Logged out successfully.", revoked=result.value).model_dump())
    resp.delete_cookie(REFRESH_COOKIE, path=_REFRESH_COOKIE_PATH)
    return resp


@router.get("/auth/me", response_model=UserProfile)
def me(request: Request, identity: AuthenticatedIdentity = Depends(get_current_identity)) -> UserProfile:
    """Return the profile of the authenticated identity."""
    result = _service(request).get_identity(identity.id)
    if result.is_err:
        _raise_for(result.error)
    return UserProfile.from_identity(result.value)


@router.get("/auth/session", response_model=SessionStatusResponse)
def session_status(
    identity: AuthenticatedIdentity | None = Depends(try_get_current_identity),
) -> SessionStatusResponse:
    """Report whether the request carries a valid access token. Never 401s."""
    if identity is None:
        return SessionStatusResponse(authenticated=False)
    return SessionStatusResponse(authenticated=True, user_id=identity.id, email=identity.email)
