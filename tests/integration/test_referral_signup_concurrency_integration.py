from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select

from app.core.config import get_settings
from app.db.models.referrals import Referral
from app.db.models.reward_grants import RewardGrant
from app.db.session import SessionLocal
from app.economy.referrals.errors import ReferralAlreadyReferredError, ReferralMaxReachedError
from app.economy.referrals.service import build_referral_engine
from app.economy.referrals.types import NewUser
from tests.referrals_fixtures import (
    FakeAttributionService,
    FakeFraudScorer,
    RecordingAlertSender,
    RecordingSink,
    create_user,
)

CODE = "CEL-AB12CD34"


def _engine(**overrides):
    settings = get_settings().model_copy(
        update={"referral_reward_retry_delay_seconds": 0.0, **overrides}
    )
    return build_referral_engine(
        settings,
        SessionLocal,
        fraud_scorer=FakeFraudScorer(),
        attribution=FakeAttributionService(),
        notification_sink=RecordingSink(),
        alert_sender=RecordingAlertSender(),
    )


async def _count(model) -> int:
    async with SessionLocal() as session:
        return int((await session.execute(select(func.count()).select_from(model))).scalar_one())


@pytest.mark.asyncio
async def test_concurrent_signups_for_same_user_create_one_referral() -> None:
    await create_user(SessionLocal, "referrer", indexed_code=CODE)
    engine = _engine()

    results = await asyncio.gather(
        *(engine.process_signup(NewUser(user_id="newbie"), CODE) for _ in range(5)),
        return_exceptions=True,
    )

    successes = [result for result in results if not isinstance(result, Exception)]
    failures = [result for result in results if isinstance(result, Exception)]
    assert len(successes) == 1
    assert all(isinstance(failure, ReferralAlreadyReferredError) for failure in failures)
    assert await _count(Referral) == 1
    async with SessionLocal() as session:
        grants = (
            await session.execute(
                select(RewardGrant.user_id).where(
                    RewardGrant.success.is_(True),
                    RewardGrant.referral_id == successes[0].referral_id,
                )
            )
        ).scalars().all()
    assert sorted(grants) == ["newbie", "referrer"]


@pytest.mark.asyncio
async def test_concurrent_signups_respect_referrer_cap() -> None:
    await create_user(SessionLocal, "referrer", indexed_code=CODE)
    engine = _engine(referral_max_per_referrer=3)

    results = await asyncio.gather(
        *(engine.process_signup(NewUser(user_id=f"n{index}"), CODE) for index in range(6)),
        return_exceptions=True,
    )

    successes = [result for result in results if not isinstance(result, Exception)]
    assert len(successes) == 3
    assert all(
        isinstance(result, ReferralMaxReachedError)
        for result in results
        if isinstance(result, Exception)
    )
    assert await _count(Referral) == 3


@pytest.mark.asyncio
async def test_concurrent_duplicate_grant_is_recorded_once() -> None:
    await create_user(SessionLocal, "referrer", indexed_code=CODE)
    engine = _engine()

    results = await asyncio.gather(
        *(
            engine.rewards.award_days(
                "referrer",
                3,
                "milestone_rising_star",
                idempotency_key="reward:milestone_rising_star:referrer",
            )
            for _ in range(4)
        )
    )

    assert len({result.grant_id for result in results}) == 1
    async with SessionLocal() as session:
        successes = (
            await session.execute(
                select(func.count())
                .select_from(RewardGrant)
                .where(RewardGrant.success.is_(True))
            )
        ).scalar_one()
    assert successes == 1
