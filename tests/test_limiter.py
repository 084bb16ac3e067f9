"""
tests/test_limiter.py -- Unit tests for auth.limiter.AttemptLimiter.

Coverage:
  - email window counts every attempt, origin window counts failures only
  - attempts older than the window are ignored
  - evaluate() returns RateLimitError with retry_after from the oldest attempt
  - an unavailable attempt history fails open
"""

from __future__ import annotations

import pytest

from auth.errors import InternalError, RateLimitError
from auth.limiter import AttemptLimiter
from auth.store import CredentialStore


@pytest.fixture
def limiter(store: CredentialStore, clock) -> AttemptLimiter:
    return AttemptLimiter(store, max_attempts_per_email=5, max_failed_per_origin=10, window_minutes=15, clock=clock)


class TestWindows:
    def test_email_window_counts_successes_and_failures(self, limiter, store) -> None:
        store.record_attempt("w@example.com", True, "10.1.0.1")
        store.record_attempt("w@example.com", False, "10.1.0.2")
        assert limiter.check_email_window("W@example.com") == 2

    def test_origin_window_counts_failures_only(self, limiter, store) -> None:
        store.record_attempt("a@example.com", True, "10.1.0.3")
        store.record_attempt("b@example.com", False, "10.1.0.3")
        store.record_attempt("c@example.com", False, "10.1.0.3")
        assert limiter.check_origin_window("10.1.0.3") == 2

    def test_old_attempts_leave_the_window(self, limiter, store, clock) -> None:
        store.record_attempt("old@example.com", False, "10.1.0.4")
        clock.advance(minutes=15, seconds=1)
        assert limiter.check_email_window("old@example.com") == 0
        assert limiter.check_origin_window("10.1.0.4") == 0

    def test_custom_window_override(self, limiter, store, clock) -> None:
        store.record_attempt("x@example.com", False, "10.1.0.5")
        clock.advance(minutes=10)
        assert limiter.check_email_window("x@example.com", window_minutes=5) == 0
        assert limiter.check_email_window("x@example.com", window_minutes=60) == 1


class TestEvaluate:
    def test_under_limit_returns_none(self, limiter, store) -> None:
        for _ in range(4):
            store.record_attempt("ok@example.com", True, "10.2.0.1")
        assert limiter.evaluate("ok@example.com", "10.2.0.1") is None

    def test_email_limit_reached(self, limiter, store) -> None:
        for _ in range(5):
            store.record_attempt("busy@example.com", True, "10.2.0.2")
        error = limiter.evaluate("busy@example.com", "10.2.0.99")
        assert isinstance(error, RateLimitError)
        assert error.status_code == 429
        assert error.retry_after_seconds == 15 * 60

    def test_retry_after_tracks_oldest_attempt(self, limiter, store, clock) -> None:
        store.record_attempt("slow@example.com", True, "10.2.0.3")
        clock.advance(minutes=4)
        for _ in range(4):
            store.record_attempt("slow@example.com", True, "10.2.0.3")
        clock.advance(minutes=1)
        error = limiter.evaluate("slow@example.com", "10.2.0.3")
        assert error.retry_after_seconds == 10 * 60

    def test_origin_limit_applies_to_any_email(self, limiter, store) -> None:
        for i in range(10):
            store.record_attempt(f"spray{i}@example.com", False, "10.2.0.4")
        error = limiter.evaluate("fresh@example.com", "10.2.0.4")
        assert isinstance(error, RateLimitError)
        assert "address" in error.message

    def test_successes_do_not_count_towards_origin_limit(self, limiter, store) -> None:
        for i in range(12):
            store.record_attempt(f"office{i}@example.com", True, "10.2.0.5")
        assert limiter.evaluate("another@example.com", "10.2.0.5") is None

    def test_history_failure_fails_open(self, limiter, store, monkeypatch) -> None:
        def broken(*args, **kwargs):
            raise InternalError("Failed to count login attempts")

        monkeypatch.setattr(store, "count_attempts_since", broken)
        assert limiter.evaluate("any@example.com", "10.2.0.6") is None
