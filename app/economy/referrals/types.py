from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from app.economy.referrals.milestones import Milestone


class SignupState(str, Enum):
    RECEIVED = "RECEIVED"
    CODE_RESOLVED = "CODE_RESOLVED"
    RATE_LIMIT_PASSED = "RATE_LIMIT_PASSED"
    FRAUD_ASSESSED = "FRAUD_ASSESSED"
    RECORD_CREATED = "RECORD_CREATED"
    REWARDS_ISSUED = "REWARDS_ISSUED"
    STATS_UPDATED = "STATS_UPDATED"
    NOTIFIED = "NOTIFIED"


@dataclass(frozen=True, slots=True)
class NewUser:
    user_id: str
    display_name: str | None = None
    email: str | None = None


@dataclass(frozen=True, slots=True)
class FraudAssessment:
    risk_score: float
    risk_level: str
    decision: str
    review_required: bool = False

    @property
    def should_block(self) -> bool:
        return self.decision == "block" or self.risk_level == "blocked"

    @property
    def should_flag_for_review(self) -> bool:
        return self.decision == "flag" or self.review_required or self.risk_level == "high"


@dataclass(frozen=True, slots=True)
class AttributionResult:
    confidence: float
    model: str | None = None


@dataclass(frozen=True, slots=True)
class RewardConfig:
    referrer_days: int
    referred_days: int
    source: str = "static"


@dataclass(frozen=True, slots=True)
class RewardContext:
    """Referrer snapshot handed to reward config providers after the referral commits."""

    user_id: str
    total_referrals: int
    is_premium: bool
    account_age_days: int
    segments: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class GrantResult:
    grant_id: int
    user_id: str
    days: int
    reason: str
    referral_id: str | None
    idempotency_key: str
    resulting_expiry: datetime | None
    idempotent_replay: bool = False


@dataclass(frozen=True, slots=True)
class ReconciliationResult:
    scanned: int
    regranted: int
    still_failing: int


@dataclass(frozen=True, slots=True)
class MilestoneReached:
    user_id: str
    milestone: Milestone
    total_referrals: int
    achieved_at: datetime


@dataclass(frozen=True, slots=True)
class StatsRefreshResult:
    user_id: str
    previous_total: int
    total_referrals: int
    premium_days_earned: int
    milestone: Milestone | None = None
    milestone_grant: GrantResult | None = None


@dataclass(frozen=True, slots=True)
class ReferralStats:
    total_referrals: int
    pending_referrals: int
    premium_days_earned: int
    referral_rank: int
    referral_code: str


@dataclass(frozen=True, slots=True)
class LeaderboardEntry:
    rank: int
    user_id: str
    display_name: str | None
    photo_url: str | None
    total_referrals: int
    premium_days_earned: int


@dataclass(frozen=True, slots=True)
class LeaderboardSnapshot:
    limit: int
    entries: tuple[LeaderboardEntry, ...]


@dataclass(frozen=True, slots=True)
class ReferralHistoryItem:
    referral_id: str
    referred_user_id: str
    referred_display_name: str | None
    referred_photo_url: str | None
    referral_code: str
    status: str
    reward_claimed: bool
    created_at: datetime


@dataclass(frozen=True, slots=True)
class ReferralPage:
    items: tuple[ReferralHistoryItem, ...]
    next_cursor: str | None
    has_more: bool


@dataclass(frozen=True, slots=True)
class Notification:
    kind: str
    user_id: str
    payload: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SignupResult:
    referral_id: str
    referrer_user_id: str
    referred_user_id: str
    state: SignupState
    referrer_days: int
    referred_days: int
    fraud_decision: str
    flagged_for_review: bool
    milestone: Milestone | None = None
    reward_failures: tuple[str, ...] = ()
