from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, false, true
from sqlalchemy.orm import Mapped, mapped_column

from app.db.models.base import Base


class ReferralCode(Base):
    __tablename__ = "referral_codes"
    __table_args__ = (Index("idx_referral_codes_owner", "owner_user_id"),)

    code: Mapped[str] = mapped_column(String(16), primary_key=True)
    owner_user_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("users.id"),
        nullable=False,
    )
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=true())
    migrated: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=false())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
