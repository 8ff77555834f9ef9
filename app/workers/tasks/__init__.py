from app.workers.tasks.referrals import run_reward_reconciliation

__all__ = ["run_reward_reconciliation"]
