from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.reward_grants import RewardGrant


class RewardGrantsRepo:
    @staticmethod
    async def get_success_by_idempotency_key(
        session: AsyncSession,
        idempotency_key: str,
    ) -> RewardGrant | None:
        stmt = select(RewardGrant).where(
            RewardGrant.idempotency_key == idempotency_key,
            RewardGrant.success.is_(True),
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def create(session: AsyncSession, *, grant: RewardGrant) -> RewardGrant:
        session.add(grant)
        await session.flush()
        return grant

    @staticmethod
    async def list_for_user(session: AsyncSession, *, user_id: str) -> list[RewardGrant]:
        stmt = (
            select(RewardGrant)
            .where(RewardGrant.user_id == user_id)
            .order_by(RewardGrant.awarded_at.asc(), RewardGrant.id.asc())
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def list_unresolved_failures(session: AsyncSession, *, limit: int) -> list[RewardGrant]:
        """Latest failed row per key whose key never succeeded."""
        success_keys = select(RewardGrant.idempotency_key).where(RewardGrant.success.is_(True))
        latest_failure_ids = (
            select(func.max(RewardGrant.id))
            .where(
                RewardGrant.success.is_(False),
                RewardGrant.idempotency_key.not_in(success_keys),
            )
            .group_by(RewardGrant.idempotency_key)
        )
        stmt = (
            select(RewardGrant)
            .where(RewardGrant.id.in_(latest_failure_ids))
            .order_by(RewardGrant.awarded_at.asc(), RewardGrant.id.asc())
            .limit(max(1, int(limit)))
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())
