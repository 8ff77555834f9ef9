from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.users import User


class UsersRepo:
    @staticmethod
    async def get_by_id(session: AsyncSession, user_id: str) -> User | None:
        return await session.get(User, user_id)

    @staticmethod
    async def get_by_id_for_update(session: AsyncSession, user_id: str) -> User | None:
        stmt = select(User).where(User.id == user_id).with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_legacy_referral_code(session: AsyncSession, referral_code: str) -> User | None:
        stmt = select(User).where(User.referral_code == referral_code).limit(1)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def list_by_ids(
        session: AsyncSession,
        user_ids: Sequence[str],
    ) -> list[User]:
        ids = tuple({str(user_id) for user_id in user_ids})
        if not ids:
            return []
        stmt = select(User).where(User.id.in_(ids))
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def create(
        session: AsyncSession,
        *,
        user_id: str,
        display_name: str | None,
        photo_url: str | None = None,
        email: str | None = None,
        referral_code: str | None = None,
        created_at: datetime | None = None,
    ) -> User:
        user = User(
            id=user_id,
            display_name=display_name,
            photo_url=photo_url,
            email=email,
            referral_code=referral_code,
            status="ACTIVE",
            is_premium=False,
            total_referrals=0,
            referrals_reconciled_total=0,
            premium_days_earned=0,
        )
        if created_at is not None:
            user.created_at = created_at
        session.add(user)
        await session.flush()
        return user

    @staticmethod
    async def set_referral_code(session: AsyncSession, *, user_id: str, referral_code: str) -> int:
        stmt = update(User).where(User.id == user_id).values(referral_code=referral_code)
        result = await session.execute(stmt)
        return result.rowcount or 0

    @staticmethod
    async def increment_total_referrals(session: AsyncSession, *, user_id: str) -> int:
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(total_referrals=User.total_referrals + 1)
        )
        result = await session.execute(stmt)
        return result.rowcount or 0

    @staticmethod
    async def update_referral_totals(
        session: AsyncSession,
        *,
        user_id: str,
        total_referrals: int,
        premium_days_earned: int,
    ) -> int:
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(
                total_referrals=total_referrals,
                referrals_reconciled_total=total_referrals,
                premium_days_earned=premium_days_earned,
            )
        )
        result = await session.execute(stmt)
        return result.rowcount or 0

    @staticmethod
    async def update_subscription_expiry(
        session: AsyncSession,
        *,
        user_id: str,
        expires_at: datetime,
    ) -> int:
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(is_premium=True, subscription_expires_at=expires_at)
        )
        result = await session.execute(stmt)
        return result.rowcount or 0

    @staticmethod
    async def list_top_referrers(session: AsyncSession, *, limit: int) -> list[User]:
        stmt = (
            select(User)
            .where(User.total_referrals > 0)
            .order_by(User.total_referrals.desc(), User.id.asc())
            .limit(limit)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def list_referrers_unordered(session: AsyncSession, *, limit: int) -> list[User]:
        stmt = select(User).where(User.total_referrals > 0).limit(limit)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def count_users_with_more_referrals(
        session: AsyncSession,
        *,
        total_referrals: int,
        scan_limit: int,
    ) -> int:
        bounded = (
            select(User.id)
            .where(User.total_referrals > total_referrals)
            .limit(scan_limit)
            .subquery()
        )
        stmt = select(func.count()).select_from(bounded)
        result = await session.execute(stmt)
        return int(result.scalar_one() or 0)
