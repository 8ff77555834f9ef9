from app.economy.referrals.service import ReferralEngine, build_referral_engine

__all__ = ["ReferralEngine", "build_referral_engine"]
