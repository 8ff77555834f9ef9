from __future__ import annotations

from datetime import datetime

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.referrals import Referral
from app.db.models.reward_grants import RewardGrant


class ReferralsRepo:
    @staticmethod
    async def get_by_id(session: AsyncSession, referral_id: str) -> Referral | None:
        return await session.get(Referral, referral_id)

    @staticmethod
    async def get_by_referred_user_id(
        session: AsyncSession,
        *,
        referred_user_id: str,
    ) -> Referral | None:
        stmt = select(Referral).where(Referral.referred_user_id == referred_user_id)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def create(session: AsyncSession, *, referral: Referral) -> Referral:
        session.add(referral)
        await session.flush()
        return referral

    @staticmethod
    async def count_for_referrer_by_status(
        session: AsyncSession,
        *,
        referrer_user_id: str,
        status: str,
    ) -> int:
        stmt = select(func.count(Referral.id)).where(
            Referral.referrer_user_id == referrer_user_id,
            Referral.status == status,
        )
        result = await session.execute(stmt)
        return int(result.scalar_one() or 0)

    @staticmethod
    async def list_statuses_for_referrer(
        session: AsyncSession,
        *,
        referrer_user_id: str,
    ) -> list[str]:
        stmt = select(Referral.status).where(Referral.referrer_user_id == referrer_user_id)
        result = await session.execute(stmt)
        return [str(status) for status in result.scalars().all()]

    @staticmethod
    async def list_page_for_referrer(
        session: AsyncSession,
        *,
        referrer_user_id: str,
        limit: int,
        before_created_at: datetime | None = None,
        before_id: str | None = None,
    ) -> list[Referral]:
        stmt = select(Referral).where(Referral.referrer_user_id == referrer_user_id)
        if before_created_at is not None and before_id is not None:
            stmt = stmt.where(
                or_(
                    Referral.created_at < before_created_at,
                    and_(Referral.created_at == before_created_at, Referral.id < before_id),
                )
            )
        stmt = stmt.order_by(Referral.created_at.desc(), Referral.id.desc()).limit(limit)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def list_for_referrer_unordered(
        session: AsyncSession,
        *,
        referrer_user_id: str,
        limit: int,
    ) -> list[Referral]:
        stmt = select(Referral).where(Referral.referrer_user_id == referrer_user_id).limit(limit)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def mark_reward_claimed(session: AsyncSession, *, referral_id: str) -> int:
        stmt = update(Referral).where(Referral.id == referral_id).values(reward_claimed=True)
        result = await session.execute(stmt)
        return result.rowcount or 0

    @staticmethod
    async def list_without_grant(
        session: AsyncSession,
        *,
        reason: str,
        status: str,
        created_before: datetime,
        limit: int,
    ) -> list[Referral]:
        """Referrals in ``status`` with no reward_grants row at all for ``reason``."""
        any_grant = (
            select(RewardGrant.id)
            .where(
                RewardGrant.referral_id == Referral.id,
                RewardGrant.reason == reason,
            )
            .exists()
        )
        stmt = (
            select(Referral)
            .where(
                Referral.status == status,
                Referral.created_at <= created_before,
                ~any_grant,
            )
            .order_by(Referral.created_at.asc(), Referral.id.asc())
            .limit(max(1, int(limit)))
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())
