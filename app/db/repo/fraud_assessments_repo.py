from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.fraud_assessments import FraudAssessmentRecord


class FraudAssessmentsRepo:
    @staticmethod
    async def create(session: AsyncSession, *, record: FraudAssessmentRecord) -> FraudAssessmentRecord:
        session.add(record)
        await session.flush()
        return record

    @staticmethod
    async def list_for_referred_user(
        session: AsyncSession,
        *,
        referred_user_id: str,
    ) -> list[FraudAssessmentRecord]:
        stmt = (
            select(FraudAssessmentRecord)
            .where(FraudAssessmentRecord.referred_user_id == referred_user_id)
            .order_by(FraudAssessmentRecord.id.asc())
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())
