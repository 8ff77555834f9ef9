"""referral_engine_initial_schema

Revision ID: 0a1b2c3d4e5f
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "0a1b2c3d4e5f"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.Column("photo_url", sa.Text(), nullable=True),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default=sa.text("'ACTIVE'")),
        sa.Column("is_premium", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("subscription_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("referral_code", sa.String(16), nullable=True),
        sa.Column("total_referrals", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "referrals_reconciled_total",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("premium_days_earned", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("status IN ('ACTIVE','BLOCKED','DELETED')", name="ck_users_status"),
        sa.CheckConstraint("total_referrals >= 0", name="ck_users_total_referrals_non_negative"),
        sa.UniqueConstraint("referral_code", name="uq_users_referral_code"),
    )
    op.create_index("idx_users_total_referrals", "users", ["total_referrals"])
    op.create_index("idx_users_created_at", "users", ["created_at"])

    op.create_table(
        "referral_codes",
        sa.Column("code", sa.String(16), primary_key=True),
        sa.Column("owner_user_id", sa.String(64), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("migrated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["owner_user_id"], ["users.id"]),
    )
    op.create_index("idx_referral_codes_owner", "referral_codes", ["owner_user_id"])

    op.create_table(
        "referrals",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("referrer_user_id", sa.String(64), nullable=False),
        sa.Column("referred_user_id", sa.String(64), nullable=False),
        sa.Column("referral_code", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("reward_claimed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("status IN ('pending','completed')", name="ck_referrals_status"),
        sa.CheckConstraint("referrer_user_id <> referred_user_id", name="ck_referrals_no_self_referral"),
        sa.ForeignKeyConstraint(["referrer_user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["referred_user_id"], ["users.id"]),
        sa.UniqueConstraint("referred_user_id", name="uq_referrals_referred_user_id"),
        sa.UniqueConstraint(
            "referrer_user_id",
            "referred_user_id",
            name="uq_referrals_referrer_referred",
        ),
    )
    op.create_index("idx_referrals_referrer_status", "referrals", ["referrer_user_id", "status"])
    op.create_index(
        "idx_referrals_referrer_created",
        "referrals",
        ["referrer_user_id", "created_at", "id"],
    )
    op.create_index("idx_referrals_code", "referrals", ["referral_code"])

    op.create_table(
        "reward_grants",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("days", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(64), nullable=False),
        sa.Column("referral_id", sa.String(64), nullable=True),
        sa.Column("idempotency_key", sa.String(160), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("resulting_expiry", sa.DateTime(timezone=True), nullable=True),
        sa.Column("awarded_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("days > 0", name="ck_reward_grants_days_positive"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
    )
    op.create_index("idx_reward_grants_user_awarded", "reward_grants", ["user_id", "awarded_at"])
    op.create_index("idx_reward_grants_key", "reward_grants", ["idempotency_key"])
    op.create_index(
        "uq_reward_grants_success_key",
        "reward_grants",
        ["idempotency_key"],
        unique=True,
        postgresql_where=sa.text("success"),
    )

    op.create_table(
        "milestone_achievements",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("milestone_id", sa.String(32), nullable=False),
        sa.Column("bonus_days", sa.Integer(), nullable=False),
        sa.Column("total_referrals", sa.Integer(), nullable=False),
        sa.Column("achieved_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.UniqueConstraint(
            "user_id",
            "milestone_id",
            name="uq_milestone_achievements_user_milestone",
        ),
    )

    op.create_table(
        "fraud_assessments",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("referred_user_id", sa.String(64), nullable=False),
        sa.Column("referrer_user_id", sa.String(64), nullable=False),
        sa.Column("referral_code", sa.String(16), nullable=False),
        sa.Column("risk_score", sa.Numeric(6, 4), nullable=False),
        sa.Column("risk_level", sa.String(16), nullable=False),
        sa.Column("decision", sa.String(16), nullable=False),
        sa.Column("review_required", sa.Boolean(), nullable=False),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("assessed_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "decision IN ('allow','flag','block')",
            name="ck_fraud_assessments_decision",
        ),
    )
    op.create_index("idx_fraud_assessments_referred", "fraud_assessments", ["referred_user_id"])
    op.create_index(
        "idx_fraud_assessments_review",
        "fraud_assessments",
        ["review_required", "assessed_at"],
    )

    op.create_table(
        "referral_signups",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("referral_id", sa.String(64), nullable=False),
        sa.Column("referrer_user_id", sa.String(64), nullable=False),
        sa.Column("referred_user_id", sa.String(64), nullable=False),
        sa.Column("referral_code", sa.String(16), nullable=False),
        sa.Column("fraud_score", sa.Numeric(6, 4), nullable=False),
        sa.Column("attribution_confidence", sa.Numeric(6, 4), nullable=True),
        sa.Column("referrer_days_awarded", sa.Integer(), nullable=False),
        sa.Column("referred_days_awarded", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_referral_signups_referrer_created",
        "referral_signups",
        ["referrer_user_id", "created_at"],
    )

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=True),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("idx_outbox_events_type_created", "outbox_events", ["event_type", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_outbox_events_type_created", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_index("idx_referral_signups_referrer_created", table_name="referral_signups")
    op.drop_table("referral_signups")
    op.drop_index("idx_fraud_assessments_review", table_name="fraud_assessments")
    op.drop_index("idx_fraud_assessments_referred", table_name="fraud_assessments")
    op.drop_table("fraud_assessments")
    op.drop_table("milestone_achievements")
    op.drop_index("uq_reward_grants_success_key", table_name="reward_grants")
    op.drop_index("idx_reward_grants_key", table_name="reward_grants")
    op.drop_index("idx_reward_grants_user_awarded", table_name="reward_grants")
    op.drop_table("reward_grants")
    op.drop_index("idx_referrals_code", table_name="referrals")
    op.drop_index("idx_referrals_referrer_created", table_name="referrals")
    op.drop_index("idx_referrals_referrer_status", table_name="referrals")
    op.drop_table("referrals")
    op.drop_index("idx_referral_codes_owner", table_name="referral_codes")
    op.drop_table("referral_codes")
    op.drop_index("idx_users_created_at", table_name="users")
    op.drop_index("idx_users_total_referrals", table_name="users")
    op.drop_table("users")
