from __future__ import annotations

import threading
from collections.abc import Callable
from time import monotonic

import structlog

from app.economy.referrals.errors import ReferralRateLimitedError

logger = structlog.get_logger(__name__)


class ReferralRateLimiter:
    """Per-user signup attempt counter with a window measured from the last attempt."""

    def __init__(
        self,
        *,
        window_seconds: float,
        max_attempts: int,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self._window_seconds = float(window_seconds)
        self._max_attempts = int(max_attempts)
        self._clock = clock
        self._last_attempt: dict[str, float] = {}
        self._attempt_count: dict[str, int] = {}
        self._last_sweep = clock()
        self._lock = threading.Lock()

    def check_and_record(self, user_id: str) -> int:
        with self._lock:
            now = self._clock()
            if now - self._last_sweep >= self._window_seconds:
                self._sweep_idle(now)
            last_attempt = self._last_attempt.get(user_id)
            attempts = self._attempt_count.get(user_id, 0)
            if last_attempt is not None and now - last_attempt >= self._window_seconds:
                attempts = 0

            if attempts >= self._max_attempts:
                logger.warning(
                    "referral_rate_limited",
                    user_id=user_id,
                    attempts=attempts,
                    window_seconds=self._window_seconds,
                )
                raise ReferralRateLimitedError

            attempts += 1
            self._attempt_count[user_id] = attempts
            self._last_attempt[user_id] = now
            return attempts

    def attempts_for(self, user_id: str) -> int:
        with self._lock:
            return self._attempt_count.get(user_id, 0)

    def tracked_users(self) -> int:
        with self._lock:
            return len(self._last_attempt)

    def reset(self, user_id: str | None = None) -> None:
        with self._lock:
            if user_id is None:
                self._last_attempt.clear()
                self._attempt_count.clear()
                return
            self._last_attempt.pop(user_id, None)
            self._attempt_count.pop(user_id, None)

    def _sweep_idle(self, now: float) -> None:
        idle = [
            user_id
            for user_id, last_attempt in self._last_attempt.items()
            if now - last_attempt >= self._window_seconds
        ]
        for user_id in idle:
            self._last_attempt.pop(user_id, None)
            self._attempt_count.pop(user_id, None)
        self._last_sweep = now
