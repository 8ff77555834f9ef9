from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReferralSignupRequest(CamelModel):
    user_id: str = Field(min_length=1, max_length=64)
    referral_code: str = Field(min_length=1, max_length=32)
    display_name: str | None = Field(default=None, max_length=128)
    email: str | None = Field(default=None, max_length=320)


class ReferralSignupResponse(CamelModel):
    referral_id: str
    referrer_user_id: str
    referred_user_id: str
    state: str
    referrer_days: int = Field(ge=0)
    referred_days: int = Field(ge=0)
    fraud_decision: str
    flagged_for_review: bool
    milestone_id: str | None = None
    reward_failures: list[str]


class ReferralCodeRequest(CamelModel):
    user_id: str = Field(min_length=1, max_length=64)


class ReferralCodeResponse(CamelModel):
    user_id: str
    referral_code: str


class ReferralCodeValidationResponse(CamelModel):
    referral_code: str
    valid: bool


class ReferralStatsResponse(CamelModel):
    user_id: str
    total_referrals: int = Field(ge=0)
    pending_referrals: int = Field(ge=0)
    premium_days_earned: int = Field(ge=0)
    referral_rank: int
    rank_is_approximate: bool
    referral_code: str
    next_milestone_id: str | None = None
    next_milestone_required_referrals: int | None = None


class LeaderboardEntryResponse(CamelModel):
    rank: int = Field(ge=1)
    user_id: str
    display_name: str | None = None
    photo_url: str | None = None
    total_referrals: int = Field(ge=0)
    premium_days_earned: int = Field(ge=0)


class LeaderboardResponse(CamelModel):
    limit: int = Field(ge=1)
    entries: list[LeaderboardEntryResponse]


class ReferralHistoryItemResponse(CamelModel):
    referral_id: str
    referred_user_id: str
    referred_display_name: str | None = None
    referred_photo_url: str | None = None
    referral_code: str
    status: str
    reward_claimed: bool
    created_at: datetime


class ReferralHistoryResponse(CamelModel):
    items: list[ReferralHistoryItemResponse]
    next_cursor: str | None = None
    has_more: bool


class ReferralShareRequest(CamelModel):
    user_id: str = Field(min_length=1, max_length=64)
    channel: str = Field(min_length=1, max_length=32)
    platform: str | None = Field(default=None, max_length=32)


class ReferralShareResponse(CamelModel):
    user_id: str
    referral_code: str
    channel: str
