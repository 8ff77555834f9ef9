from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
    false,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db.models.base import Base


class Referral(Base):
    __tablename__ = "referrals"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','completed')",
            name="ck_referrals_status",
        ),
        CheckConstraint(
            "referrer_user_id <> referred_user_id", name="ck_referrals_no_self_referral"
        ),
        UniqueConstraint(
            "referrer_user_id",
            "referred_user_id",
            name="uq_referrals_referrer_referred",
        ),
        Index("idx_referrals_referrer_status", "referrer_user_id", "status"),
        Index("idx_referrals_referrer_created", "referrer_user_id", "created_at", "id"),
        Index("idx_referrals_code", "referral_code"),
    )

    # sha256("{referrer_user_id}:{referred_user_id}")
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    referrer_user_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("users.id"),
        nullable=False,
    )
    referred_user_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("users.id"),
        unique=True,
        nullable=False,
    )
    referral_code: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    reward_claimed: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=false())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
