from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from app.db.models.referrals import Referral
from app.db.repo.referrals_repo import ReferralsRepo
from app.db.repo.reward_grants_repo import RewardGrantsRepo
from app.db.repo.users_repo import UsersRepo
from app.economy.referrals.rewards import (
    RewardIssuer,
    SqlBillingStore,
    build_reward_idempotency_key,
    extend_expiry,
)
from app.economy.referrals.signup import build_referral_id
from tests.referrals_fixtures import FakeBillingStore, RecordingAlertSender, create_user

UTC = timezone.utc
NOW = datetime(2026, 5, 1, 12, 0, tzinfo=UTC)


def _issuer(session_factory, billing, alerts, *, sleeps: list[float] | None = None, **kwargs):
    async def fake_sleep(seconds: float) -> None:
        if sleeps is not None:
            sleeps.append(seconds)

    return RewardIssuer(
        session_factory,
        billing,
        alert_sender=alerts,
        sleep=fake_sleep,
        now_provider=lambda: NOW,
        **kwargs,
    )


def test_extend_expiry_starts_from_now_when_missing_or_lapsed() -> None:
    assert extend_expiry(current_expiry=None, days=7, now_utc=NOW) == NOW + timedelta(days=7)
    lapsed = NOW - timedelta(days=2)
    assert extend_expiry(current_expiry=lapsed, days=7, now_utc=NOW) == NOW + timedelta(days=7)


def test_extend_expiry_stacks_on_active_subscription() -> None:
    active = NOW + timedelta(days=10)
    assert extend_expiry(current_expiry=active, days=7, now_utc=NOW) == NOW + timedelta(days=17)


def test_idempotency_key_includes_referral_when_present() -> None:
    assert (
        build_reward_idempotency_key(user_id="u1", reason="referral_signup", referral_id="abc")
        == "reward:abc:referral_signup:u1"
    )
    assert (
        build_reward_idempotency_key(user_id="u1", reason="milestone_rising_star", referral_id=None)
        == "reward:milestone_rising_star:u1"
    )


@pytest.mark.asyncio
async def test_award_days_extends_expiry_and_records_grant(session_factory) -> None:
    await create_user(session_factory, "u1")
    billing = FakeBillingStore()
    billing.expiries["u1"] = NOW + timedelta(days=10)
    issuer = _issuer(session_factory, billing, RecordingAlertSender())

    result = await issuer.award_days("u1", 7, "referral_signup", referral_id="ref-1")

    assert result.idempotent_replay is False
    assert result.resulting_expiry == NOW + timedelta(days=17)
    assert billing.expiries["u1"] == NOW + timedelta(days=17)
    async with session_factory() as session:
        grants = await RewardGrantsRepo.list_for_user(session, user_id="u1")
    assert [(grant.days, grant.success) for grant in grants] == [(7, True)]
    assert grants[0].idempotency_key == "reward:ref-1:referral_signup:u1"


@pytest.mark.asyncio
async def test_award_days_replays_previous_success_without_extending_again(session_factory) -> None:
    await create_user(session_factory, "u1")
    billing = FakeBillingStore()
    issuer = _issuer(session_factory, billing, RecordingAlertSender())

    first = await issuer.award_days("u1", 3, "referral_signup", referral_id="ref-1")
    second = await issuer.award_days("u1", 3, "referral_signup", referral_id="ref-1")

    assert second.idempotent_replay is True
    assert second.grant_id == first.grant_id
    assert len(billing.grants) == 1


@pytest.mark.asyncio
async def test_award_days_retries_with_linear_backoff(session_factory) -> None:
    await create_user(session_factory, "u1")
    billing = FakeBillingStore()
    billing.fail_next = 2
    sleeps: list[float] = []
    alerts = RecordingAlertSender()
    issuer = _issuer(
        session_factory,
        billing,
        alerts,
        sleeps=sleeps,
        max_attempts=3,
        retry_delay_seconds=1.0,
    )

    result = await issuer.award_days("u1", 7, "successful_referral", referral_id="ref-1")

    assert result.days == 7
    assert sleeps == [1.0, 2.0]
    assert alerts.alerts == []


@pytest.mark.asyncio
async def test_award_days_exhaustion_records_failure_and_alerts(session_factory) -> None:
    await create_user(session_factory, "u1")
    billing = FakeBillingStore()
    billing.fail_next = 3
    sleeps: list[float] = []
    alerts = RecordingAlertSender()
    issuer = _issuer(
        session_factory,
        billing,
        alerts,
        sleeps=sleeps,
        max_attempts=3,
        retry_delay_seconds=0.5,
    )

    with pytest.raises(ConnectionError):
        await issuer.award_days("u1", 7, "successful_referral", referral_id="ref-1")

    assert sleeps == [0.5, 1.0]
    assert len(alerts.alerts) == 1
    assert alerts.alerts[0]["event"] == "referral_reward_grant_failed"
    assert alerts.alerts[0]["payload"]["idempotency_key"] == "reward:ref-1:successful_referral:u1"
    async with session_factory() as session:
        grants = await RewardGrantsRepo.list_for_user(session, user_id="u1")
    assert [(grant.success, grant.days) for grant in grants] == [(False, 7)]
    assert "billing unavailable" in grants[0].error


@pytest.mark.asyncio
async def test_award_days_rejects_non_positive_days(session_factory) -> None:
    issuer = _issuer(session_factory, FakeBillingStore(), RecordingAlertSender())

    with pytest.raises(ValueError):
        await issuer.award_days("u1", 0, "referral_signup")


@pytest.mark.asyncio
async def test_reconcile_failed_regrants_with_original_key(session_factory) -> None:
    await create_user(session_factory, "u1")
    billing = FakeBillingStore()
    billing.fail_next = 1
    alerts = RecordingAlertSender()
    issuer = _issuer(session_factory, billing, alerts, max_attempts=1)

    with pytest.raises(ConnectionError):
        await issuer.award_days("u1", 7, "successful_referral", referral_id="ref-1")

    result = await issuer.reconcile_failed(limit=10)

    assert (result.scanned, result.regranted, result.still_failing) == (1, 1, 0)
    assert billing.expiries["u1"] == NOW + timedelta(days=7)

    again = await issuer.reconcile_failed(limit=10)
    assert again.scanned == 0
    assert len(billing.grants) == 1


@pytest.mark.asyncio
async def test_sql_billing_store_updates_user_expiry(session_factory) -> None:
    await create_user(session_factory, "u1")
    issuer = _issuer(session_factory, SqlBillingStore(session_factory), RecordingAlertSender())

    await issuer.award_days("u1", 5, "referral_signup", referral_id="ref-9")

    async with session_factory() as session:
        user = await UsersRepo.get_by_id(session, "u1")
    expiry = user.subscription_expires_at
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=UTC)
    assert expiry == NOW + timedelta(days=5)


async def _committed_referral_without_rewards(session_factory, *, created_at: datetime) -> str:
    await create_user(session_factory, "referrer", referral_code="CEL-REFERRER")
    await create_user(session_factory, "newbie")
    referral_id = build_referral_id("referrer", "newbie")
    async with session_factory.begin() as session:
        await ReferralsRepo.create(
            session,
            referral=Referral(
                id=referral_id,
                referrer_user_id="referrer",
                referred_user_id="newbie",
                referral_code="CEL-REFERRER",
                status="completed",
                reward_claimed=False,
                created_at=created_at,
                completed_at=created_at,
            ),
        )
        await UsersRepo.increment_total_referrals(session, user_id="referrer")
    return referral_id


@pytest.mark.asyncio
async def test_reconcile_resumes_referral_committed_before_rewards_were_issued(
    session_factory,
) -> None:
    referral_id = await _committed_referral_without_rewards(
        session_factory,
        created_at=NOW - timedelta(hours=1),
    )
    billing = FakeBillingStore()
    issuer = _issuer(
        session_factory,
        billing,
        RecordingAlertSender(),
        referrer_days=7,
        referred_days=3,
    )

    result = await issuer.reconcile_failed(limit=10)

    assert (result.scanned, result.regranted, result.still_failing) == (2, 2, 0)
    assert billing.expiries["newbie"] == NOW + timedelta(days=3)
    assert billing.expiries["referrer"] == NOW + timedelta(days=7)
    async with session_factory() as session:
        referral = await ReferralsRepo.get_by_id(session, referral_id)
        newbie_grants = await RewardGrantsRepo.list_for_user(session, user_id="newbie")
    assert referral.reward_claimed is True
    assert [grant.idempotency_key for grant in newbie_grants] == [
        f"reward:{referral_id}:referral_signup:newbie"
    ]

    again = await issuer.reconcile_failed(limit=10)
    assert again.scanned == 0
    assert len(billing.grants) == 2


@pytest.mark.asyncio
async def test_reconcile_leaves_recent_referrals_to_the_signup_in_flight(session_factory) -> None:
    await _committed_referral_without_rewards(session_factory, created_at=NOW - timedelta(seconds=30))
    billing = FakeBillingStore()
    issuer = _issuer(session_factory, billing, RecordingAlertSender(), resume_grace_seconds=300)

    result = await issuer.reconcile_failed(limit=10)

    assert result.scanned == 0
    assert billing.grants == []


@pytest.mark.asyncio
async def test_unresolved_failures_keep_latest_row_per_key_and_honor_limit(session_factory) -> None:
    await create_user(session_factory, "u1")
    billing = FakeBillingStore()
    billing.fail_next = 3
    issuer = _issuer(session_factory, billing, RecordingAlertSender(), max_attempts=1)
    for referral_id in ("ref-1", "ref-1", "ref-2"):
        with pytest.raises(ConnectionError):
            await issuer.award_days("u1", 7, "successful_referral", referral_id=referral_id)

    async with session_factory() as session:
        everything = await RewardGrantsRepo.list_unresolved_failures(session, limit=10)
        first_only = await RewardGrantsRepo.list_unresolved_failures(session, limit=1)

    assert [grant.referral_id for grant in everything] == ["ref-1", "ref-2"]
    assert len(first_only) == 1
    ref_one_rows = await _failed_rows(session_factory, "u1", "ref-1")
    assert everything[0].id == max(row.id for row in ref_one_rows)


async def _failed_rows(session_factory, user_id: str, referral_id: str):
    async with session_factory() as session:
        grants = await RewardGrantsRepo.list_for_user(session, user_id=user_id)
    return [grant for grant in grants if grant.referral_id == referral_id and not grant.success]
