"""Tests for rolling-window login throttling."""

from datetime import datetime, timedelta, timezone

import pytest

from wordnest.service.throttle import AttemptThrottle
from wordnest.storage.memory import MemoryStore
from wordnest.storage.models import AuthAttempt, FailureReason

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    return MemoryStore()


def _fail(store, email, ip_addr=None, *, at=NOW, success=False):
    attempt = AuthAttempt.new(
        email,
        success,
        failure_reason=None if success else FailureReason.INVALID_CREDENTIALS,
        ip_addr=ip_addr,
    )
    attempt.created_at = at
    store.record_auth_attempt(attempt)


def _throttle(store, max_attempts=3):
    return AttemptThrottle(
        store, window=timedelta(minutes=15), max_attempts=max_attempts, clock=lambda: NOW
    )


class TestAdmission:
    def test_admits_below_ceiling(self, store):
        throttle = _throttle(store)
        _fail(store, "alice@example.com")
        _fail(store, "alice@example.com")

        assert throttle.check_admission("alice@example.com", None)

    def test_denies_at_ceiling(self, store):
        throttle = _throttle(store)
        for _ in range(3):
            _fail(store, "alice@example.com")

        assert not throttle.check_admission("alice@example.com", None)

    def test_successes_do_not_count(self, store):
        throttle = _throttle(store)
        for _ in range(5):
            _fail(store, "alice@example.com", success=True)

        assert throttle.failed_attempts("alice@example.com", None) == 0

    def test_attempts_outside_window_ignored(self, store):
        throttle = _throttle(store)
        for _ in range(3):
            _fail(store, "alice@example.com", at=NOW - timedelta(minutes=16))

        assert throttle.check_admission("alice@example.com", None)

    def test_attempt_on_window_boundary_counts(self, store):
        throttle = _throttle(store, max_attempts=1)
        _fail(store, "alice@example.com", at=NOW - timedelta(minutes=15))

        assert not throttle.check_admission("alice@example.com", None)


class TestMatching:
    def test_same_ip_across_emails_counts(self, store):
        throttle = _throttle(store)
        for i in range(3):
            _fail(store, f"user{i}@example.com", "10.0.0.1")

        assert not throttle.check_admission("fresh@example.com", "10.0.0.1")
        assert throttle.check_admission("fresh@example.com", "10.0.0.2")

    def test_same_email_across_ips_counts(self, store):
        throttle = _throttle(store)
        for i in range(3):
            _fail(store, "alice@example.com", f"10.0.0.{i}")

        assert not throttle.check_admission("alice@example.com", "192.168.1.1")

    def test_unknown_ip_matches_email_only(self, store):
        throttle = _throttle(store)
        for i in range(3):
            _fail(store, f"user{i}@example.com", None)

        assert throttle.check_admission("fresh@example.com", None)


def test_max_attempts_must_be_positive(store):
    with pytest.raises(ValueError):
        AttemptThrottle(store, max_attempts=0)
