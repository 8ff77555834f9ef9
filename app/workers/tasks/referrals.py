from __future__ import annotations

from dataclasses import asdict

import structlog

from app.core.config import get_settings
from app.db.session import SessionLocal
from app.economy.referrals.rewards import RewardIssuer, SqlBillingStore
from app.services.alerts import send_ops_alert
from app.workers.asyncio_runner import run_async_job
from app.workers.celery_app import celery_app

logger = structlog.get_logger(__name__)
RECONCILIATION_BACKLOG_ALERT_EVENT = "referral_reward_reconciliation_backlog"


def _build_reward_issuer() -> RewardIssuer:
    settings = get_settings()
    return RewardIssuer(
        SessionLocal,
        SqlBillingStore(SessionLocal),
        max_attempts=settings.referral_reward_max_attempts,
        retry_delay_seconds=settings.referral_reward_retry_delay_seconds,
        alert_sender=send_ops_alert,
        referrer_days=settings.referral_referrer_bonus_days,
        referred_days=settings.referral_referred_bonus_days,
        resume_grace_seconds=settings.referral_reward_resume_grace_seconds,
    )


async def run_reward_reconciliation_async(*, batch_size: int = 100) -> dict[str, int]:
    issuer = _build_reward_issuer()
    result = asdict(await issuer.reconcile_failed(limit=batch_size))

    alert_sent = 0
    if result["still_failing"] > 0:
        alert_sent = int(
            await send_ops_alert(event=RECONCILIATION_BACKLOG_ALERT_EVENT, payload=dict(result))
        )
    result = {**result, "backlog_alert_sent": alert_sent}
    logger.info("referral_reward_reconciliation_task_finished", **result)
    return result


@celery_app.task(name="app.workers.tasks.referrals.run_reward_reconciliation")
def run_reward_reconciliation(batch_size: int = 100) -> dict[str, int]:
    return run_async_job(
        run_reward_reconciliation_async(batch_size=batch_size),
        job_name="referral_reward_reconciliation",
    )


celery_app.conf.beat_schedule = celery_app.conf.beat_schedule or {}
celery_app.conf.beat_schedule.update(
    {
        "referral-reward-reconciliation-every-15-minutes": {
            "task": "app.workers.tasks.referrals.run_reward_reconciliation",
            "schedule": 900.0,
            "options": {"queue": "q_normal"},
        },
    }
)
