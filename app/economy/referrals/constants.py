REFERRAL_STATUS_PENDING = "pending"
REFERRAL_STATUS_COMPLETED = "completed"

REWARD_REASON_REFERRAL_SIGNUP = "referral_signup"
REWARD_REASON_SUCCESSFUL_REFERRAL = "successful_referral"
MILESTONE_REWARD_REASON_PREFIX = "milestone_"

CODE_GENERATION_ATTEMPTS = 5
USER_LOOKUP_BATCH_SIZE = 10

LEADERBOARD_CACHE_KEY = "global"
DEFAULT_LEADERBOARD_LIMIT = 20
MAX_LEADERBOARD_LIMIT = 100
DEFAULT_REFERRALS_PAGE_SIZE = 20
MAX_REFERRALS_PAGE_SIZE = 100

# referral_rank sentinels
RANK_UNKNOWN = 0
RANK_APPROXIMATE = -1

NOTIFICATION_REFERRAL_SUCCESS = "referral_success"
NOTIFICATION_REFERRAL_MILESTONE = "referral_milestone"
NOTIFICATION_SEGMENT_ASSIGNMENT = "segment_assignment"
NOTIFICATION_DELIVERY_RETRIES = {
    NOTIFICATION_REFERRAL_SUCCESS: 2,
    NOTIFICATION_REFERRAL_MILESTONE: 2,
    NOTIFICATION_SEGMENT_ASSIGNMENT: 0,
}

SEGMENT_REFERRER = "referrer"
SEGMENT_PREMIUM_REFERRER = "premium_referrer"
ATTRIBUTION_CONVERSION_EVENT = "referral_complete"
REWARD_GRANT_FAILED_ALERT_EVENT = "referral_reward_grant_failed"

CACHE_MAX_ENTRIES = 10_000
MILESTONE_SIGNALS_MAX_PENDING = 10_000
REWARD_RESUME_GRACE_SECONDS = 300
