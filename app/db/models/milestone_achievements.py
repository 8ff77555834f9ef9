from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.db.models.base import Base, BigIntPK


class MilestoneAchievement(Base):
    __tablename__ = "milestone_achievements"
    __table_args__ = (
        UniqueConstraint("user_id", "milestone_id", name="uq_milestone_achievements_user_milestone"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False)
    milestone_id: Mapped[str] = mapped_column(String(32), nullable=False)
    bonus_days: Mapped[int] = mapped_column(Integer, nullable=False)
    total_referrals: Mapped[int] = mapped_column(Integer, nullable=False)
    achieved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
