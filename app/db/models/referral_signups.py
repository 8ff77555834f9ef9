from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.models.base import Base, BigIntPK


class ReferralSignup(Base):
    __tablename__ = "referral_signups"
    __table_args__ = (Index("idx_referral_signups_referrer_created", "referrer_user_id", "created_at"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    referral_id: Mapped[str] = mapped_column(String(64), nullable=False)
    referrer_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    referred_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    referral_code: Mapped[str] = mapped_column(String(16), nullable=False)
    fraud_score: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)
    attribution_confidence: Mapped[Decimal | None] = mapped_column(Numeric(6, 4), nullable=True)
    referrer_days_awarded: Mapped[int] = mapped_column(Integer, nullable=False)
    referred_days_awarded: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
