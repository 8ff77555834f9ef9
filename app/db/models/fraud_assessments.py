from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, DateTime, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.models.base import Base, BigIntPK


class FraudAssessmentRecord(Base):
    __tablename__ = "fraud_assessments"
    __table_args__ = (
        CheckConstraint(
            "decision IN ('allow','flag','block')",
            name="ck_fraud_assessments_decision",
        ),
        Index("idx_fraud_assessments_referred", "referred_user_id"),
        Index("idx_fraud_assessments_review", "review_required", "assessed_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    referred_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    referrer_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    referral_code: Mapped[str] = mapped_column(String(16), nullable=False)
    risk_score: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)
    risk_level: Mapped[str] = mapped_column(String(16), nullable=False)
    decision: Mapped[str] = mapped_column(String(16), nullable=False)
    review_required: Mapped[bool] = mapped_column(Boolean, nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    assessed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
