"""
auth/limiter.py -- Login attempt limits computed from the attempt history.

AttemptLimiter answers "has this email, or this origin address, used up its
attempts in the trailing window?" by counting login_attempts rows. There is no
process-local counter, so every server instance sharing the database sees the
same answer.

The check and the later attempt write are not reserved atomically. Concurrent
logins racing inside one window may overshoot the cap by a few attempts; the
limit is soft, not a reserved counter.

Policy (defaults, configurable via core.config.Settings):
  5 attempts per email per 15 minutes, successful or not.
  10 failed attempts per origin address per 15 minutes.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import datetime, timedelta

from auth.errors import InternalError, RateLimitError
from auth.store import CredentialStore, utcnow

logger = logging.getLogger("bazaar.auth.limiter")

MAX_ATTEMPTS_PER_EMAIL = 5
MAX_FAILED_PER_ORIGIN = 10
WINDOW_MINUTES = 15


class AttemptLimiter:
    """Read-only window queries over the attempt history."""

    def __init__(
        self,
        store: CredentialStore,
        *,
        max_attempts_per_email: int = MAX_ATTEMPTS_PER_EMAIL,
        max_failed_per_origin: int = MAX_FAILED_PER_ORIGIN,
        window_minutes: int = WINDOW_MINUTES,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self.max_attempts_per_email = max_attempts_per_email
        self.max_failed_per_origin = max_failed_per_origin
        self.window_minutes = window_minutes
        self._clock = clock

    def check_email_window(self, email: str, window_minutes: int | None = None) -> int:
        """Count all attempts for `email` inside the trailing window."""
        since = self._window_start(window_minutes)
        return self._store.count_attempts_since(since, email=email)

    def check_origin_window(self, origin_address: str, window_minutes: int | None = None) -> int:
        """Count failed attempts from `origin_address` inside the trailing window."""
        since = self._window_start(window_minutes)
        return self._store.count_attempts_since(since, origin_address=origin_address, succeeded=False)

    def evaluate(self, email: str, origin_address: str) -> RateLimitError | None:
        """Return a RateLimitError if either threshold is reached, else None.

        A failing history query is logged and treated as "not limited": the
        limit guards against abuse, it must not take login down with it.
        """
        try:
            if self.check_email_window(email) >= self.max_attempts_per_email:
                logger.warning("Login rate limit exceeded for email=%s origin=%s", email, origin_address)
                return RateLimitError(
                    "Too many login attempts. Please try again later.",
                    self._retry_after(email=email),
                )
            if self.check_origin_window(origin_address) >= self.max_failed_per_origin:
                logger.warning("Login rate limit exceeded for origin=%s email=%s", origin_address, email)
                return RateLimitError(
                    "Too many failed login attempts from this address. Please try again later.",
                    self._retry_after(origin_address=origin_address, succeeded=False),
                )
        except InternalError:
            logger.exception("Attempt history unavailable; skipping login rate limit check")
        return None

    def _window_start(self, window_minutes: int | None) -> datetime:
        minutes = window_minutes if window_minutes is not None else self.window_minutes
        return self._clock() - timedelta(minutes=minutes)

    def _retry_after(self, **filters) -> int:
        """Seconds until the oldest counted attempt leaves the window (minimum 1)."""
        window = timedelta(minutes=self.window_minutes)
        now = self._clock()
        oldest = self._store.earliest_attempt_since(now - window, **filters)
        if oldest is None:
            return int(window.total_seconds())
        remaining = (oldest + window - now).total_seconds()
        return max(1, math.ceil(remaining))
