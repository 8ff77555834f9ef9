from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.milestone_achievements import MilestoneAchievement


class MilestoneAchievementsRepo:
    @staticmethod
    async def get(
        session: AsyncSession,
        *,
        user_id: str,
        milestone_id: str,
    ) -> MilestoneAchievement | None:
        stmt = select(MilestoneAchievement).where(
            MilestoneAchievement.user_id == user_id,
            MilestoneAchievement.milestone_id == milestone_id,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def create(
        session: AsyncSession,
        *,
        user_id: str,
        milestone_id: str,
        bonus_days: int,
        total_referrals: int,
        achieved_at: datetime,
    ) -> MilestoneAchievement:
        achievement = MilestoneAchievement(
            user_id=user_id,
            milestone_id=milestone_id,
            bonus_days=bonus_days,
            total_referrals=total_referrals,
            achieved_at=achieved_at,
        )
        session.add(achievement)
        await session.flush()
        return achievement

    @staticmethod
    async def list_for_user(session: AsyncSession, *, user_id: str) -> list[MilestoneAchievement]:
        stmt = (
            select(MilestoneAchievement)
            .where(MilestoneAchievement.user_id == user_id)
            .order_by(MilestoneAchievement.total_referrals.asc())
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())
