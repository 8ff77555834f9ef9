from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from time import monotonic
from typing import Generic, TypeVar

from app.economy.referrals.constants import CACHE_MAX_ENTRIES, LEADERBOARD_CACHE_KEY
from app.economy.referrals.types import LeaderboardSnapshot, ReferralStats

T = TypeVar("T")


@dataclass(slots=True)
class CacheEntry(Generic[T]):
    value: T
    timestamp: float
    expires_in: float

    def is_expired(self, now: float) -> bool:
        return now - self.timestamp > self.expires_in


class TTLCache(Generic[T]):
    """Expired entries are swept once per TTL period; past ``max_entries`` the oldest goes first."""

    def __init__(
        self,
        *,
        ttl_seconds: float,
        clock: Callable[[], float] = monotonic,
        max_entries: int = CACHE_MAX_ENTRIES,
    ) -> None:
        self._ttl_seconds = max(0.0, float(ttl_seconds))
        self._clock = clock
        self._max_entries = max(1, int(max_entries))
        self._entries: dict[str, CacheEntry[T]] = {}
        self._last_sweep = clock()
        self._lock = threading.Lock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def get(self, key: str) -> T | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: T) -> None:
        with self._lock:
            now = self._clock()
            if now - self._last_sweep >= self._ttl_seconds:
                self._sweep_expired(now)
            self._entries.pop(key, None)
            while len(self._entries) >= self._max_entries:
                del self._entries[next(iter(self._entries))]
            self._entries[key] = CacheEntry(
                value=value,
                timestamp=now,
                expires_in=self._ttl_seconds,
            )

    def _sweep_expired(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        self._last_sweep = now

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class ReferralCaches:
    def __init__(
        self,
        *,
        stats_ttl_seconds: float,
        leaderboard_ttl_seconds: float,
        code_validation_ttl_seconds: float,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self.stats: TTLCache[ReferralStats] = TTLCache(ttl_seconds=stats_ttl_seconds, clock=clock)
        self.leaderboard: TTLCache[LeaderboardSnapshot] = TTLCache(
            ttl_seconds=leaderboard_ttl_seconds,
            clock=clock,
        )
        self.code_validation: TTLCache[bool] = TTLCache(
            ttl_seconds=code_validation_ttl_seconds,
            clock=clock,
        )

    def cached_leaderboard(self) -> LeaderboardSnapshot | None:
        return self.leaderboard.get(LEADERBOARD_CACHE_KEY)

    def store_leaderboard(self, snapshot: LeaderboardSnapshot) -> None:
        self.leaderboard.set(LEADERBOARD_CACHE_KEY, snapshot)

    def invalidate_stats(self, user_id: str) -> None:
        self.stats.invalidate(user_id)

    def invalidate_leaderboard(self) -> None:
        self.leaderboard.invalidate(LEADERBOARD_CACHE_KEY)

    def invalidate_code(self, code: str) -> None:
        self.code_validation.invalidate(code)

    def clear(self) -> None:
        self.stats.clear()
        self.leaderboard.clear()
        self.code_validation.clear()
