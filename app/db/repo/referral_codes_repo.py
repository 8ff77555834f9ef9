from __future__ import annotations

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.referral_codes import ReferralCode


class ReferralCodesRepo:
    @staticmethod
    async def get(session: AsyncSession, code: str) -> ReferralCode | None:
        return await session.get(ReferralCode, code)

    @staticmethod
    async def create(
        session: AsyncSession,
        *,
        code: str,
        owner_user_id: str,
        created_at: datetime,
        migrated: bool = False,
    ) -> ReferralCode:
        """Plain INSERT; an existing code raises IntegrityError on flush."""
        entry = ReferralCode(
            code=code,
            owner_user_id=owner_user_id,
            active=True,
            migrated=migrated,
            created_at=created_at,
        )
        session.add(entry)
        await session.flush()
        return entry
