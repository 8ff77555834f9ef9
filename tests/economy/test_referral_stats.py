from __future__ import annotations

import pytest
from sqlalchemy import text

from app.db.repo.referrals_repo import ReferralsRepo
from app.db.repo.users_repo import UsersRepo
from app.economy.referrals.errors import ReferralInvalidUserError
from app.economy.referrals.stats import premium_days_for
from app.economy.referrals.types import NewUser
from tests.referrals_fixtures import create_user

CODE = "CEL-AB12CD34"


def test_premium_days_are_capped_by_referral_limit() -> None:
    assert premium_days_for(3, bonus_days=7, max_referrals=100) == 21
    assert premium_days_for(150, bonus_days=7, max_referrals=100) == 700
    assert premium_days_for(-1, bonus_days=7, max_referrals=100) == 0


@pytest.mark.asyncio
async def test_refresh_recounts_completed_referrals(referral_engine, session_factory) -> None:
    await create_user(session_factory, "referrer", indexed_code=CODE)
    for index in range(3):
        await referral_engine.process_signup(NewUser(user_id=f"n{index}"), CODE)

    result = await referral_engine.stats.refresh("referrer")

    assert result.previous_total == 3
    assert result.total_referrals == 3
    assert result.premium_days_earned == 21
    assert result.milestone is None


@pytest.mark.asyncio
async def test_refresh_falls_back_to_scan_when_count_query_fails(
    referral_engine,
    session_factory,
    monkeypatch,
) -> None:
    await create_user(session_factory, "referrer", indexed_code=CODE)
    await referral_engine.process_signup(NewUser(user_id="n1"), CODE)

    scanned: list[str] = []
    original_scan = ReferralsRepo.list_statuses_for_referrer

    async def broken_count(session, *, referrer_user_id, status):
        await session.execute(text("SELECT * FROM missing_referral_index"))

    async def recording_scan(session, *, referrer_user_id):
        scanned.append(referrer_user_id)
        return await original_scan(session, referrer_user_id=referrer_user_id)

    monkeypatch.setattr(ReferralsRepo, "count_for_referrer_by_status", broken_count)
    monkeypatch.setattr(ReferralsRepo, "list_statuses_for_referrer", recording_scan)

    result = await referral_engine.stats.refresh("referrer")

    assert scanned == ["referrer"]
    assert result.total_referrals == 1
    async with session_factory() as session:
        user = await UsersRepo.get_by_id(session, "referrer")
    assert user.total_referrals == 1


@pytest.mark.asyncio
async def test_refresh_unknown_user(referral_engine) -> None:
    with pytest.raises(ReferralInvalidUserError):
        await referral_engine.stats.refresh("ghost")
