from __future__ import annotations

import pytest

from app.economy.referrals.errors import ReferralRateLimitedError
from app.economy.referrals.rate_limit import ReferralRateLimiter
from tests.referrals_fixtures import FakeClock


def test_rate_limiter_rejects_attempt_over_limit_within_window() -> None:
    clock = FakeClock()
    limiter = ReferralRateLimiter(window_seconds=3600, max_attempts=10, clock=clock)

    for expected in range(1, 11):
        assert limiter.check_and_record("user-1") == expected
        clock.advance(60)

    with pytest.raises(ReferralRateLimitedError):
        limiter.check_and_record("user-1")
    assert limiter.attempts_for("user-1") == 10


def test_rate_limiter_window_restarts_after_quiet_period() -> None:
    clock = FakeClock()
    limiter = ReferralRateLimiter(window_seconds=3600, max_attempts=2, clock=clock)
    limiter.check_and_record("user-1")
    limiter.check_and_record("user-1")

    clock.advance(3600)

    assert limiter.check_and_record("user-1") == 1


def test_rate_limiter_tracks_users_independently_and_resets() -> None:
    limiter = ReferralRateLimiter(window_seconds=60, max_attempts=1, clock=FakeClock())
    limiter.check_and_record("user-1")
    assert limiter.check_and_record("user-2") == 1

    limiter.reset("user-1")
    assert limiter.attempts_for("user-1") == 0
    assert limiter.check_and_record("user-1") == 1

    limiter.reset()
    assert limiter.attempts_for("user-2") == 0


def test_rate_limiter_forgets_users_idle_past_the_window() -> None:
    clock = FakeClock()
    limiter = ReferralRateLimiter(window_seconds=3600, max_attempts=10, clock=clock)
    for index in range(500):
        limiter.check_and_record(f"user-{index}")
    assert limiter.tracked_users() == 500

    clock.advance(3600)
    limiter.check_and_record("user-late")

    assert limiter.tracked_users() == 1
    assert limiter.attempts_for("user-0") == 0
