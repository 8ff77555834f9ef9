from app.economy.referrals import ReferralEngine, build_referral_engine

__all__ = ["ReferralEngine", "build_referral_engine"]
