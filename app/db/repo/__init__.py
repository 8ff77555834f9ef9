from app.db.repo.fraud_assessments_repo import FraudAssessmentsRepo
from app.db.repo.milestone_achievements_repo import MilestoneAchievementsRepo
from app.db.repo.outbox_events_repo import OutboxEventsRepo
from app.db.repo.referral_codes_repo import ReferralCodesRepo
from app.db.repo.referral_signups_repo import ReferralSignupsRepo
from app.db.repo.referrals_repo import ReferralsRepo
from app.db.repo.reward_grants_repo import RewardGrantsRepo
from app.db.repo.users_repo import UsersRepo

__all__ = [
    "FraudAssessmentsRepo",
    "MilestoneAchievementsRepo",
    "OutboxEventsRepo",
    "ReferralCodesRepo",
    "ReferralSignupsRepo",
    "ReferralsRepo",
    "RewardGrantsRepo",
    "UsersRepo",
]
