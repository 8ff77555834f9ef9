from app.db.models.base import Base
from app.db.models.fraud_assessments import FraudAssessmentRecord
from app.db.models.milestone_achievements import MilestoneAchievement
from app.db.models.outbox_events import OutboxEvent
from app.db.models.referral_codes import ReferralCode
from app.db.models.referral_signups import ReferralSignup
from app.db.models.referrals import Referral
from app.db.models.reward_grants import RewardGrant
from app.db.models.users import User

__all__ = [
    "Base",
    "FraudAssessmentRecord",
    "MilestoneAchievement",
    "OutboxEvent",
    "Referral",
    "ReferralCode",
    "ReferralSignup",
    "RewardGrant",
    "User",
]
