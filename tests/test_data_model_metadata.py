from __future__ import annotations

from sqlalchemy import CheckConstraint, UniqueConstraint

from app.db.models import (  # noqa: F401
    FraudAssessmentRecord,
    MilestoneAchievement,
    OutboxEvent,
    Referral,
    ReferralCode,
    ReferralSignup,
    RewardGrant,
    User,
)
from app.db.models.base import Base


def test_all_referral_tables_registered() -> None:
    expected_tables = {
        "users",
        "referral_codes",
        "referrals",
        "reward_grants",
        "milestone_achievements",
        "fraud_assessments",
        "referral_signups",
        "outbox_events",
    }
    assert expected_tables.issubset(set(Base.metadata.tables))


def test_critical_constraints_present() -> None:
    referrals = Base.metadata.tables["referrals"]
    referral_checks = {
        constraint.name for constraint in referrals.constraints if isinstance(constraint, CheckConstraint)
    }
    assert "ck_referrals_no_self_referral" in referral_checks
    assert "ck_referrals_status" in referral_checks
    referral_uniques = {
        constraint.name
        for constraint in referrals.constraints
        if isinstance(constraint, UniqueConstraint)
    }
    assert "uq_referrals_referrer_referred" in referral_uniques
    assert referrals.c.referred_user_id.unique is True
    referrals_indexes = {index.name for index in referrals.indexes}
    assert "idx_referrals_referrer_created" in referrals_indexes
    assert "idx_referrals_referrer_status" in referrals_indexes

    reward_grants = Base.metadata.tables["reward_grants"]
    success_index = next(
        index for index in reward_grants.indexes if index.name == "uq_reward_grants_success_key"
    )
    assert success_index.unique is True
    assert "postgresql_where" in success_index.dialect_kwargs

    milestones = Base.metadata.tables["milestone_achievements"]
    milestone_uniques = {
        constraint.name
        for constraint in milestones.constraints
        if isinstance(constraint, UniqueConstraint)
    }
    assert "uq_milestone_achievements_user_milestone" in milestone_uniques

    users = Base.metadata.tables["users"]
    assert "idx_users_total_referrals" in {index.name for index in users.indexes}
    assert users.c.referral_code.unique is True
