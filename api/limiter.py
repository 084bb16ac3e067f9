"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

This is the coarse per-IP HTTP throttle in front of the auth routes. The
per-email and per-origin login policy lives in auth.limiter.AttemptLimiter,
which queries the attempt history and therefore holds across instances.
A single shared instance is required: separate instances would each get an
isolated counter and limits would never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_rate_limit() -> str:
    """Resolved lazily so tests can adjust LOGIN_RATE_LIMIT before the first request."""
    return get_settings().login_rate_limit
