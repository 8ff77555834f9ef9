from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.repo.milestone_achievements_repo import MilestoneAchievementsRepo
from app.db.repo.referrals_repo import ReferralsRepo
from app.db.repo.users_repo import UsersRepo
from app.economy.referrals.constants import (
    NOTIFICATION_REFERRAL_MILESTONE,
    REFERRAL_STATUS_COMPLETED,
)
from app.economy.referrals.errors import ReferralInvalidUserError
from app.economy.referrals.milestones import Milestone, newly_achieved_milestone
from app.economy.referrals.notifications import MilestoneSignals, NotificationDispatcher
from app.economy.referrals.rewards import RewardIssuer
from app.economy.referrals.time_utils import utc_now
from app.economy.referrals.types import (
    GrantResult,
    MilestoneReached,
    Notification,
    StatsRefreshResult,
)

logger = structlog.get_logger(__name__)


async def count_completed_indexed(session: AsyncSession, *, referrer_user_id: str) -> int:
    return await ReferralsRepo.count_for_referrer_by_status(
        session,
        referrer_user_id=referrer_user_id,
        status=REFERRAL_STATUS_COMPLETED,
    )


async def count_completed_scan(session: AsyncSession, *, referrer_user_id: str) -> int:
    statuses = await ReferralsRepo.list_statuses_for_referrer(
        session,
        referrer_user_id=referrer_user_id,
    )
    return sum(1 for status in statuses if status == REFERRAL_STATUS_COMPLETED)


def premium_days_for(total_referrals: int, *, bonus_days: int, max_referrals: int) -> int:
    return min(max(0, total_referrals), max_referrals) * bonus_days


class StatsEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        reward_issuer: RewardIssuer,
        signals: MilestoneSignals,
        dispatcher: NotificationDispatcher,
        *,
        referrer_bonus_days: int = 7,
        max_referrals: int = 100,
        now_provider: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._reward_issuer = reward_issuer
        self._signals = signals
        self._dispatcher = dispatcher
        self._referrer_bonus_days = referrer_bonus_days
        self._max_referrals = max_referrals
        self._now = now_provider

    async def refresh(self, user_id: str) -> StatsRefreshResult:
        now_utc = self._now()
        async with self._session_factory.begin() as session:
            user = await UsersRepo.get_by_id_for_update(session, user_id)
            if user is None:
                raise ReferralInvalidUserError

            previous_total = int(user.referrals_reconciled_total or 0)
            total_referrals = await self._count_completed(session, user_id=user_id)
            premium_days_earned = premium_days_for(
                total_referrals,
                bonus_days=self._referrer_bonus_days,
                max_referrals=self._max_referrals,
            )
            await UsersRepo.update_referral_totals(
                session,
                user_id=user_id,
                total_referrals=total_referrals,
                premium_days_earned=premium_days_earned,
            )

            milestone = newly_achieved_milestone(previous_total, total_referrals)
            if milestone is not None:
                milestone = await self._record_achievement(
                    session,
                    user_id=user_id,
                    milestone=milestone,
                    total_referrals=total_referrals,
                    now_utc=now_utc,
                )

        milestone_grant: GrantResult | None = None
        if milestone is not None:
            milestone_grant = await self._announce_milestone(
                user_id=user_id,
                milestone=milestone,
                total_referrals=total_referrals,
                now_utc=now_utc,
            )

        logger.info(
            "referral_stats_refreshed",
            user_id=user_id,
            previous_total=previous_total,
            total_referrals=total_referrals,
            premium_days_earned=premium_days_earned,
            milestone_id=None if milestone is None else milestone.id,
        )
        return StatsRefreshResult(
            user_id=user_id,
            previous_total=previous_total,
            total_referrals=total_referrals,
            premium_days_earned=premium_days_earned,
            milestone=milestone,
            milestone_grant=milestone_grant,
        )

    async def _count_completed(self, session: AsyncSession, *, user_id: str) -> int:
        try:
            async with session.begin_nested():
                return await count_completed_indexed(session, referrer_user_id=user_id)
        except SQLAlchemyError:
            logger.warning("referral_count_index_unavailable", user_id=user_id, exc_info=True)
        return await count_completed_scan(session, referrer_user_id=user_id)

    @staticmethod
    async def _record_achievement(
        session: AsyncSession,
        *,
        user_id: str,
        milestone: Milestone,
        total_referrals: int,
        now_utc: datetime,
    ) -> Milestone | None:
        existing = await MilestoneAchievementsRepo.get(
            session,
            user_id=user_id,
            milestone_id=milestone.id,
        )
        if existing is not None:
            return None
        await MilestoneAchievementsRepo.create(
            session,
            user_id=user_id,
            milestone_id=milestone.id,
            bonus_days=milestone.bonus_days,
            total_referrals=total_referrals,
            achieved_at=now_utc,
        )
        return milestone

    async def _announce_milestone(
        self,
        *,
        user_id: str,
        milestone: Milestone,
        total_referrals: int,
        now_utc: datetime,
    ) -> GrantResult | None:
        grant: GrantResult | None = None
        if milestone.bonus_days > 0:
            try:
                grant = await self._reward_issuer.award_days(
                    user_id,
                    milestone.bonus_days,
                    milestone.reward_reason,
                )
            except Exception:
                # Already logged and alerted by the issuer; reconciliation retries it.
                grant = None

        self._signals.publish(
            MilestoneReached(
                user_id=user_id,
                milestone=milestone,
                total_referrals=total_referrals,
                achieved_at=now_utc,
            )
        )
        self._dispatcher.enqueue(
            Notification(
                kind=NOTIFICATION_REFERRAL_MILESTONE,
                user_id=user_id,
                payload={
                    "milestone_id": milestone.id,
                    "milestone_name": milestone.name,
                    "bonus_days": milestone.bonus_days,
                    "total_referrals": total_referrals,
                },
            )
        )
        logger.info(
            "referral_milestone_reached",
            user_id=user_id,
            milestone_id=milestone.id,
            bonus_days=milestone.bonus_days,
            total_referrals=total_referrals,
        )
        return grant
