from __future__ import annotations

import base64
import json
from collections.abc import Sequence
from datetime import datetime

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models.referrals import Referral
from app.db.models.users import User
from app.db.repo.referrals_repo import ReferralsRepo
from app.db.repo.users_repo import UsersRepo
from app.economy.referrals.cache import ReferralCaches
from app.economy.referrals.constants import (
    DEFAULT_LEADERBOARD_LIMIT,
    DEFAULT_REFERRALS_PAGE_SIZE,
    MAX_LEADERBOARD_LIMIT,
    MAX_REFERRALS_PAGE_SIZE,
    RANK_APPROXIMATE,
    RANK_UNKNOWN,
    REFERRAL_STATUS_PENDING,
    USER_LOOKUP_BATCH_SIZE,
)
from app.economy.referrals.errors import ReferralInvalidCursorError, ReferralInvalidUserError
from app.economy.referrals.time_utils import ensure_utc
from app.economy.referrals.types import (
    LeaderboardEntry,
    LeaderboardSnapshot,
    ReferralHistoryItem,
    ReferralPage,
    ReferralStats,
)

logger = structlog.get_logger(__name__)


def encode_cursor(*, created_at: datetime, referral_id: str) -> str:
    raw = json.dumps({"c": ensure_utc(created_at).isoformat(), "i": referral_id})
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> tuple[datetime, str]:
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        decoded = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
        created_at = ensure_utc(datetime.fromisoformat(decoded["c"]))
        referral_id = str(decoded["i"])
    except (ValueError, KeyError, TypeError) as exc:
        raise ReferralInvalidCursorError from exc
    return created_at, referral_id


def rank_leaderboard_users(users: Sequence[User], *, limit: int) -> list[LeaderboardEntry]:
    ordered = sorted(
        (user for user in users if user.total_referrals > 0),
        key=lambda user: (-int(user.total_referrals), user.id),
    )
    return [
        LeaderboardEntry(
            rank=position,
            user_id=user.id,
            display_name=user.display_name,
            photo_url=user.photo_url,
            total_referrals=int(user.total_referrals),
            premium_days_earned=int(user.premium_days_earned),
        )
        for position, user in enumerate(ordered[:limit], start=1)
    ]


def _sort_key(referral: Referral) -> tuple[datetime, str]:
    return ensure_utc(referral.created_at), referral.id


class ReferralQueries:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        caches: ReferralCaches,
        *,
        rank_scan_limit: int = 1000,
        lookup_batch_size: int = USER_LOOKUP_BATCH_SIZE,
    ) -> None:
        self._session_factory = session_factory
        self._caches = caches
        self._rank_scan_limit = max(1, int(rank_scan_limit))
        self._lookup_batch_size = max(1, int(lookup_batch_size))

    async def fetch_leaderboard(
        self,
        limit: int = DEFAULT_LEADERBOARD_LIMIT,
        *,
        force_refresh: bool = False,
    ) -> list[LeaderboardEntry]:
        limit = max(1, min(int(limit), MAX_LEADERBOARD_LIMIT))
        if not force_refresh:
            snapshot = self._caches.cached_leaderboard()
            if snapshot is not None and snapshot.limit >= limit:
                return list(snapshot.entries[:limit])

        try:
            async with self._session_factory() as session:
                users = await UsersRepo.list_top_referrers(session, limit=limit)
        except SQLAlchemyError:
            logger.warning("referral_leaderboard_ordered_query_failed", limit=limit, exc_info=True)
            users = await self._load_leaderboard_superset(limit=limit)

        entries = rank_leaderboard_users(users, limit=limit)
        self._caches.store_leaderboard(LeaderboardSnapshot(limit=limit, entries=tuple(entries)))
        return entries

    async def _load_leaderboard_superset(self, *, limit: int) -> list[User]:
        async with self._session_factory() as session:
            return await UsersRepo.list_referrers_unordered(
                session,
                limit=max(limit * 2, self._rank_scan_limit),
            )

    async def fetch_user_referrals(
        self,
        user_id: str,
        *,
        page_size: int = DEFAULT_REFERRALS_PAGE_SIZE,
        cursor: str | None = None,
    ) -> ReferralPage:
        page_size = max(1, min(int(page_size), MAX_REFERRALS_PAGE_SIZE))
        before: tuple[datetime, str] | None = decode_cursor(cursor) if cursor else None

        try:
            async with self._session_factory() as session:
                rows = await ReferralsRepo.list_page_for_referrer(
                    session,
                    referrer_user_id=user_id,
                    limit=page_size + 1,
                    before_created_at=None if before is None else before[0],
                    before_id=None if before is None else before[1],
                )
            has_more = len(rows) > page_size
            rows = rows[:page_size]
        except SQLAlchemyError:
            logger.warning("referral_history_ordered_query_failed", user_id=user_id, exc_info=True)
            rows = await self._load_history_fallback(user_id, before=before, page_size=page_size)
            has_more = False

        next_cursor = None
        if has_more and rows:
            next_cursor = encode_cursor(created_at=rows[-1].created_at, referral_id=rows[-1].id)

        items = await self._enrich(rows)
        return ReferralPage(items=tuple(items), next_cursor=next_cursor, has_more=has_more)

    async def _load_history_fallback(
        self,
        user_id: str,
        *,
        before: tuple[datetime, str] | None,
        page_size: int,
    ) -> list[Referral]:
        async with self._session_factory() as session:
            rows = await ReferralsRepo.list_for_referrer_unordered(
                session,
                referrer_user_id=user_id,
                limit=self._rank_scan_limit,
            )
        ordered = sorted(rows, key=_sort_key, reverse=True)
        if before is not None:
            ordered = [row for row in ordered if _sort_key(row) < before]
        return ordered[:page_size]

    async def _enrich(self, rows: Sequence[Referral]) -> list[ReferralHistoryItem]:
        referred_ids = list(dict.fromkeys(row.referred_user_id for row in rows))
        users_by_id: dict[str, User] = {}
        async with self._session_factory() as session:
            for offset in range(0, len(referred_ids), self._lookup_batch_size):
                batch = referred_ids[offset : offset + self._lookup_batch_size]
                for user in await UsersRepo.list_by_ids(session, batch):
                    users_by_id[user.id] = user

        items: list[ReferralHistoryItem] = []
        for row in rows:
            referred = users_by_id.get(row.referred_user_id)
            items.append(
                ReferralHistoryItem(
                    referral_id=row.id,
                    referred_user_id=row.referred_user_id,
                    referred_display_name=None if referred is None else referred.display_name,
                    referred_photo_url=None if referred is None else referred.photo_url,
                    referral_code=row.referral_code,
                    status=row.status,
                    reward_claimed=bool(row.reward_claimed),
                    created_at=ensure_utc(row.created_at),
                )
            )
        return items

    async def get_stats(self, user_id: str, *, force_refresh: bool = False) -> ReferralStats:
        if not force_refresh:
            cached = self._caches.stats.get(user_id)
            if cached is not None:
                return cached

        async with self._session_factory() as session:
            user = await UsersRepo.get_by_id(session, user_id)
            if user is None:
                raise ReferralInvalidUserError
            total_referrals = int(user.total_referrals)
            premium_days_earned = int(user.premium_days_earned)
            referral_code = user.referral_code or ""
            pending_referrals = await self._count_pending(session, user_id=user_id)
            referral_rank = await self._rank_or_unknown(
                session,
                user_id=user_id,
                total_referrals=total_referrals,
            )

        stats = ReferralStats(
            total_referrals=total_referrals,
            pending_referrals=0 if pending_referrals is None else pending_referrals,
            premium_days_earned=premium_days_earned,
            referral_rank=RANK_UNKNOWN if referral_rank is None else referral_rank,
            referral_code=referral_code,
        )
        # Degraded reads are served but not cached.
        if pending_referrals is not None and referral_rank is not None:
            self._caches.stats.set(user_id, stats)
        return stats

    async def _count_pending(self, session: AsyncSession, *, user_id: str) -> int | None:
        try:
            async with session.begin_nested():
                return await ReferralsRepo.count_for_referrer_by_status(
                    session,
                    referrer_user_id=user_id,
                    status=REFERRAL_STATUS_PENDING,
                )
        except SQLAlchemyError:
            logger.warning("referral_stats_pending_count_failed", user_id=user_id, exc_info=True)
            return None

    async def _rank_or_unknown(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        total_referrals: int,
    ) -> int | None:
        try:
            async with session.begin_nested():
                return await self._resolve_rank(
                    session,
                    user_id=user_id,
                    total_referrals=total_referrals,
                )
        except SQLAlchemyError:
            logger.warning("referral_stats_rank_failed", user_id=user_id, exc_info=True)
            return None

    async def _resolve_rank(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        total_referrals: int,
    ) -> int:
        if total_referrals <= 0:
            return RANK_UNKNOWN

        snapshot = self._caches.cached_leaderboard()
        if snapshot is not None:
            for entry in snapshot.entries:
                if entry.user_id == user_id:
                    return entry.rank

        users_above = await UsersRepo.count_users_with_more_referrals(
            session,
            total_referrals=total_referrals,
            scan_limit=self._rank_scan_limit,
        )
        if users_above >= self._rank_scan_limit:
            return RANK_APPROXIMATE
        return users_above + 1
