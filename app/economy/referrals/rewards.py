from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models.reward_grants import RewardGrant
from app.db.repo.referrals_repo import ReferralsRepo
from app.db.repo.reward_grants_repo import RewardGrantsRepo
from app.db.repo.users_repo import UsersRepo
from app.economy.referrals.collaborators import BillingStore
from app.economy.referrals.constants import (
    REFERRAL_STATUS_COMPLETED,
    REWARD_GRANT_FAILED_ALERT_EVENT,
    REWARD_REASON_REFERRAL_SIGNUP,
    REWARD_REASON_SUCCESSFUL_REFERRAL,
    REWARD_RESUME_GRACE_SECONDS,
)
from app.economy.referrals.errors import ReferralInvalidUserError
from app.economy.referrals.time_utils import ensure_utc, utc_now
from app.economy.referrals.types import GrantResult, ReconciliationResult
from app.services.alerts import send_ops_alert

logger = structlog.get_logger(__name__)

AlertSender = Callable[..., Awaitable[bool]]


def build_reward_idempotency_key(*, user_id: str, reason: str, referral_id: str | None) -> str:
    if referral_id is None:
        return f"reward:{reason}:{user_id}"
    return f"reward:{referral_id}:{reason}:{user_id}"


def extend_expiry(*, current_expiry: datetime | None, days: int, now_utc: datetime) -> datetime:
    base_end = current_expiry if current_expiry is not None and current_expiry > now_utc else now_utc
    return base_end + timedelta(days=days)


def _grant_result(grant: RewardGrant, *, idempotent_replay: bool) -> GrantResult:
    return GrantResult(
        grant_id=grant.id,
        user_id=grant.user_id,
        days=grant.days,
        reason=grant.reason,
        referral_id=grant.referral_id,
        idempotency_key=grant.idempotency_key,
        resulting_expiry=ensure_utc(grant.resulting_expiry),
        idempotent_replay=idempotent_replay,
    )


class SqlBillingStore:
    """Premium expiry kept on the `users` row."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_expiry(self, user_id: str) -> datetime | None:
        async with self._session_factory() as session:
            user = await UsersRepo.get_by_id(session, user_id)
        if user is None:
            raise ReferralInvalidUserError
        return ensure_utc(user.subscription_expires_at)

    async def grant_premium_days(self, user_id: str, *, expires_at: datetime) -> None:
        async with self._session_factory.begin() as session:
            updated = await UsersRepo.update_subscription_expiry(
                session,
                user_id=user_id,
                expires_at=expires_at,
            )
        if updated == 0:
            raise ReferralInvalidUserError


class RewardIssuer:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        billing_store: BillingStore,
        *,
        max_attempts: int = 3,
        retry_delay_seconds: float = 1.0,
        alert_sender: AlertSender = send_ops_alert,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now_provider: Callable[[], datetime] = utc_now,
        referrer_days: int = 7,
        referred_days: int = 3,
        resume_grace_seconds: float = REWARD_RESUME_GRACE_SECONDS,
    ) -> None:
        self._session_factory = session_factory
        self._billing_store = billing_store
        self._max_attempts = max(1, int(max_attempts))
        self._retry_delay_seconds = max(0.0, float(retry_delay_seconds))
        self._alert_sender = alert_sender
        self._sleep = sleep
        self._now = now_provider
        self._referrer_days = int(referrer_days)
        self._referred_days = int(referred_days)
        self._resume_grace_seconds = max(0.0, float(resume_grace_seconds))

    async def award_days(
        self,
        user_id: str,
        days: int,
        reason: str,
        *,
        referral_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> GrantResult:
        if days <= 0:
            raise ValueError("days must be positive")
        key = idempotency_key or build_reward_idempotency_key(
            user_id=user_id,
            reason=reason,
            referral_id=referral_id,
        )

        replay = await self._find_successful_grant(key)
        if replay is not None:
            logger.info("referral_reward_grant_replayed", user_id=user_id, idempotency_key=key)
            return replay

        attempt = 1
        while True:
            try:
                return await self._grant_once(
                    user_id=user_id,
                    days=days,
                    reason=reason,
                    referral_id=referral_id,
                    idempotency_key=key,
                )
            except Exception as exc:
                logger.warning(
                    "referral_reward_grant_retry",
                    user_id=user_id,
                    reason=reason,
                    attempt=attempt,
                    max_attempts=self._max_attempts,
                    error=repr(exc),
                )
                if attempt >= self._max_attempts:
                    await self._handle_exhausted(
                        user_id=user_id,
                        days=days,
                        reason=reason,
                        referral_id=referral_id,
                        idempotency_key=key,
                        error=exc,
                    )
                    raise
            await self._sleep(self._retry_delay_seconds * attempt)
            attempt += 1

    async def reconcile_failed(self, *, limit: int = 100) -> ReconciliationResult:
        """Re-issue failed grants, then referrals whose signup never reached the grant step."""
        async with self._session_factory() as session:
            failures = await RewardGrantsRepo.list_unresolved_failures(session, limit=limit)

        scanned = len(failures)
        regranted = 0
        still_failing = 0
        for failed in failures:
            try:
                await self.award_days(
                    failed.user_id,
                    failed.days,
                    failed.reason,
                    referral_id=failed.referral_id,
                    idempotency_key=failed.idempotency_key,
                )
            except Exception:
                still_failing += 1
                continue
            regranted += 1

        for reason, days in (
            (REWARD_REASON_REFERRAL_SIGNUP, self._referred_days),
            (REWARD_REASON_SUCCESSFUL_REFERRAL, self._referrer_days),
        ):
            if days <= 0:
                continue
            resumed = await self._resume_missing_grants(reason=reason, days=days, limit=limit)
            scanned += resumed.scanned
            regranted += resumed.regranted
            still_failing += resumed.still_failing

        logger.info(
            "referral_reward_reconciliation_finished",
            scanned=scanned,
            regranted=regranted,
            still_failing=still_failing,
        )
        return ReconciliationResult(
            scanned=scanned,
            regranted=regranted,
            still_failing=still_failing,
        )

    async def _resume_missing_grants(
        self,
        *,
        reason: str,
        days: int,
        limit: int,
    ) -> ReconciliationResult:
        created_before = self._now() - timedelta(seconds=self._resume_grace_seconds)
        async with self._session_factory() as session:
            referrals = await ReferralsRepo.list_without_grant(
                session,
                reason=reason,
                status=REFERRAL_STATUS_COMPLETED,
                created_before=created_before,
                limit=limit,
            )

        regranted = 0
        still_failing = 0
        for referral in referrals:
            beneficiary = (
                referral.referrer_user_id
                if reason == REWARD_REASON_SUCCESSFUL_REFERRAL
                else referral.referred_user_id
            )
            logger.warning(
                "referral_reward_grant_resumed",
                referral_id=referral.id,
                user_id=beneficiary,
                reason=reason,
            )
            try:
                await self.award_days(beneficiary, days, reason, referral_id=referral.id)
            except Exception:
                still_failing += 1
                continue
            regranted += 1
            if reason == REWARD_REASON_SUCCESSFUL_REFERRAL:
                try:
                    async with self._session_factory.begin() as session:
                        await ReferralsRepo.mark_reward_claimed(session, referral_id=referral.id)
                except SQLAlchemyError:
                    logger.warning(
                        "referral_reward_claim_mark_failed",
                        referral_id=referral.id,
                        exc_info=True,
                    )

        return ReconciliationResult(
            scanned=len(referrals),
            regranted=regranted,
            still_failing=still_failing,
        )

    async def _find_successful_grant(self, idempotency_key: str) -> GrantResult | None:
        async with self._session_factory() as session:
            existing = await RewardGrantsRepo.get_success_by_idempotency_key(
                session,
                idempotency_key,
            )
        if existing is None:
            return None
        return _grant_result(existing, idempotent_replay=True)

    async def _grant_once(
        self,
        *,
        user_id: str,
        days: int,
        reason: str,
        referral_id: str | None,
        idempotency_key: str,
    ) -> GrantResult:
        now_utc = self._now()
        current_expiry = ensure_utc(await self._billing_store.get_expiry(user_id))
        new_expiry = extend_expiry(current_expiry=current_expiry, days=days, now_utc=now_utc)
        await self._billing_store.grant_premium_days(user_id, expires_at=new_expiry)

        try:
            async with self._session_factory.begin() as session:
                grant = await RewardGrantsRepo.create(
                    session,
                    grant=RewardGrant(
                        user_id=user_id,
                        days=days,
                        reason=reason,
                        referral_id=referral_id,
                        idempotency_key=idempotency_key,
                        success=True,
                        error=None,
                        resulting_expiry=new_expiry,
                        awarded_at=now_utc,
                    ),
                )
        except IntegrityError:
            # A concurrent caller recorded the same key first.
            replay = await self._find_successful_grant(idempotency_key)
            if replay is None:
                raise
            logger.warning(
                "referral_reward_grant_concurrent_duplicate",
                user_id=user_id,
                idempotency_key=idempotency_key,
            )
            return replay

        logger.info(
            "referral_reward_granted",
            user_id=user_id,
            days=days,
            reason=reason,
            referral_id=referral_id,
            resulting_expiry=new_expiry.isoformat(),
        )
        return _grant_result(grant, idempotent_replay=False)

    async def _handle_exhausted(
        self,
        *,
        user_id: str,
        days: int,
        reason: str,
        referral_id: str | None,
        idempotency_key: str,
        error: Exception,
    ) -> None:
        logger.error(
            "referral_reward_grant_failed",
            user_id=user_id,
            days=days,
            reason=reason,
            referral_id=referral_id,
            attempts=self._max_attempts,
            error=repr(error),
        )
        try:
            async with self._session_factory.begin() as session:
                await RewardGrantsRepo.create(
                    session,
                    grant=RewardGrant(
                        user_id=user_id,
                        days=days,
                        reason=reason,
                        referral_id=referral_id,
                        idempotency_key=idempotency_key,
                        success=False,
                        error=repr(error)[:1000],
                        resulting_expiry=None,
                        awarded_at=self._now(),
                    ),
                )
        except SQLAlchemyError:
            logger.warning(
                "referral_reward_failure_record_failed",
                user_id=user_id,
                idempotency_key=idempotency_key,
                exc_info=True,
            )

        await self._alert_sender(
            event=REWARD_GRANT_FAILED_ALERT_EVENT,
            payload={
                "user_id": user_id,
                "days": days,
                "reason": reason,
                "referral_id": referral_id,
                "idempotency_key": idempotency_key,
                "error": repr(error),
            },
        )
