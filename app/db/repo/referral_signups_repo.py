from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.referral_signups import ReferralSignup


class ReferralSignupsRepo:
    @staticmethod
    async def create(session: AsyncSession, *, signup: ReferralSignup) -> ReferralSignup:
        session.add(signup)
        await session.flush()
        return signup

    @staticmethod
    async def get_by_referral_id(session: AsyncSession, referral_id: str) -> ReferralSignup | None:
        stmt = select(ReferralSignup).where(ReferralSignup.referral_id == referral_id).limit(1)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()
