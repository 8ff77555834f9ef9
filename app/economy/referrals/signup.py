from __future__ import annotations

import hashlib
from collections.abc import Callable, Sequence
from datetime import datetime
from decimal import Decimal

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.referral_codes import normalize_referral_code
from app.db.models.fraud_assessments import FraudAssessmentRecord
from app.db.models.referral_signups import ReferralSignup
from app.db.models.referrals import Referral
from app.db.repo.fraud_assessments_repo import FraudAssessmentsRepo
from app.db.repo.referral_signups_repo import ReferralSignupsRepo
from app.db.repo.referrals_repo import ReferralsRepo
from app.db.repo.users_repo import UsersRepo
from app.economy.referrals.cache import ReferralCaches
from app.economy.referrals.codes import ReferralCodeRegistry
from app.economy.referrals.collaborators import (
    AttributionService,
    FraudScorer,
    RewardConfigProvider,
)
from app.economy.referrals.constants import (
    ATTRIBUTION_CONVERSION_EVENT,
    NOTIFICATION_REFERRAL_SUCCESS,
    NOTIFICATION_SEGMENT_ASSIGNMENT,
    REFERRAL_STATUS_COMPLETED,
    REWARD_REASON_REFERRAL_SIGNUP,
    REWARD_REASON_SUCCESSFUL_REFERRAL,
    SEGMENT_PREMIUM_REFERRER,
    SEGMENT_REFERRER,
)
from app.economy.referrals.errors import (
    ReferralAlreadyReferredError,
    ReferralError,
    ReferralInvalidCodeError,
    ReferralInvalidUserError,
    ReferralMaxReachedError,
    ReferralRateLimitedError,
    ReferralSelfReferralError,
)
from app.economy.referrals.milestones import Milestone
from app.economy.referrals.notifications import NotificationDispatcher
from app.economy.referrals.rate_limit import ReferralRateLimiter
from app.economy.referrals.rewards import RewardIssuer
from app.economy.referrals.stats import StatsEngine
from app.economy.referrals.time_utils import ensure_utc, utc_now
from app.economy.referrals.types import (
    AttributionResult,
    FraudAssessment,
    GrantResult,
    NewUser,
    Notification,
    RewardConfig,
    RewardContext,
    SignupResult,
    SignupState,
)

logger = structlog.get_logger(__name__)


def build_referral_id(referrer_user_id: str, referred_user_id: str) -> str:
    return hashlib.sha256(f"{referrer_user_id}:{referred_user_id}".encode("utf-8")).hexdigest()


class SignupProcessor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        code_registry: ReferralCodeRegistry,
        rate_limiter: ReferralRateLimiter,
        fraud_scorer: FraudScorer,
        attribution: AttributionService,
        reward_providers: Sequence[RewardConfigProvider],
        default_reward_config: RewardConfig,
        reward_issuer: RewardIssuer,
        stats_engine: StatsEngine,
        caches: ReferralCaches,
        dispatcher: NotificationDispatcher,
        max_referrals: int = 100,
        now_provider: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._code_registry = code_registry
        self._rate_limiter = rate_limiter
        self._fraud_scorer = fraud_scorer
        self._attribution = attribution
        self._reward_providers = tuple(reward_providers)
        self._default_reward_config = default_reward_config
        self._reward_issuer = reward_issuer
        self._stats_engine = stats_engine
        self._caches = caches
        self._dispatcher = dispatcher
        self._max_referrals = max_referrals
        self._now = now_provider

    async def process_signup(
        self,
        new_user: NewUser,
        referral_code: str | None,
        *,
        ip_address: str | None = None,
    ) -> SignupResult:
        state = SignupState.RECEIVED
        try:
            code = normalize_referral_code(referral_code)
            if not new_user.user_id or not code:
                raise ReferralInvalidUserError

            self._rate_limiter.check_and_record(new_user.user_id)
            state = SignupState.RATE_LIMIT_PASSED

            referrer_user_id = await self._resolve_referrer(code, new_user=new_user)
            state = SignupState.CODE_RESOLVED

            assessment = await self._assess_fraud(
                new_user=new_user,
                referrer_user_id=referrer_user_id,
                code=code,
                ip_address=ip_address,
            )
            state = SignupState.FRAUD_ASSESSED

            attribution = await self._attribute(new_user.user_id)

            referral_id = await self._create_referral(
                new_user=new_user,
                referrer_user_id=referrer_user_id,
                code=code,
            )
            state = SignupState.RECORD_CREATED
        except ReferralError as exc:
            logger.info(
                "referral_signup_rejected",
                referred_user_id=new_user.user_id,
                referral_code=referral_code,
                state=state.value,
                reason=type(exc).__name__,
            )
            raise

        reward_context = await self._build_reward_context(referrer_user_id)
        reward_config = await self._resolve_reward_config(
            referrer_user_id=referrer_user_id,
            referred_user_id=new_user.user_id,
            context=reward_context,
        )
        reward_failures: list[str] = []
        await self._grant(
            user_id=new_user.user_id,
            days=reward_config.referred_days,
            reason=REWARD_REASON_REFERRAL_SIGNUP,
            referral_id=referral_id,
            failures=reward_failures,
        )
        referrer_grant = await self._grant(
            user_id=referrer_user_id,
            days=reward_config.referrer_days,
            reason=REWARD_REASON_SUCCESSFUL_REFERRAL,
            referral_id=referral_id,
            failures=reward_failures,
        )
        if referrer_grant is not None:
            await self._mark_reward_claimed(referral_id)
        state = SignupState.REWARDS_ISSUED

        milestone = await self._refresh_stats(referrer_user_id)
        self._caches.invalidate_stats(referrer_user_id)
        self._caches.invalidate_leaderboard()
        state = SignupState.STATS_UPDATED

        self._notify(
            new_user=new_user,
            referrer_user_id=referrer_user_id,
            referral_id=referral_id,
            reward_config=reward_config,
            reward_context=reward_context,
        )
        await self._record_signup(
            referral_id=referral_id,
            referrer_user_id=referrer_user_id,
            referred_user_id=new_user.user_id,
            code=code,
            assessment=assessment,
            attribution=attribution,
            reward_config=reward_config,
            reward_failures=reward_failures,
        )
        state = SignupState.NOTIFIED

        logger.info(
            "referral_signup_processed",
            referral_id=referral_id,
            referrer_user_id=referrer_user_id,
            referred_user_id=new_user.user_id,
            referrer_days=reward_config.referrer_days,
            referred_days=reward_config.referred_days,
            reward_config_source=reward_config.source,
            fraud_decision=assessment.decision,
            flagged_for_review=assessment.should_flag_for_review,
            milestone_id=None if milestone is None else milestone.id,
            reward_failures=reward_failures,
        )
        return SignupResult(
            referral_id=referral_id,
            referrer_user_id=referrer_user_id,
            referred_user_id=new_user.user_id,
            state=state,
            referrer_days=reward_config.referrer_days,
            referred_days=reward_config.referred_days,
            fraud_decision=assessment.decision,
            flagged_for_review=assessment.should_flag_for_review,
            milestone=milestone,
            reward_failures=tuple(reward_failures),
        )

    async def _resolve_referrer(self, code: str, *, new_user: NewUser) -> str:
        referrer_user_id = await self._code_registry.resolve_owner(code)
        if referrer_user_id is None:
            raise ReferralInvalidCodeError
        if referrer_user_id == new_user.user_id:
            raise ReferralSelfReferralError
        async with self._session_factory() as session:
            referrer = await UsersRepo.get_by_id(session, referrer_user_id)
        if referrer is None:
            raise ReferralInvalidUserError
        return referrer_user_id

    async def _assess_fraud(
        self,
        *,
        new_user: NewUser,
        referrer_user_id: str,
        code: str,
        ip_address: str | None,
    ) -> FraudAssessment:
        assessment = await self._fraud_scorer.assess(
            referred_user_id=new_user.user_id,
            referrer_user_id=referrer_user_id,
            referral_code=code,
            email=new_user.email,
            ip_address=ip_address,
        )
        async with self._session_factory.begin() as session:
            await FraudAssessmentsRepo.create(
                session,
                record=FraudAssessmentRecord(
                    referred_user_id=new_user.user_id,
                    referrer_user_id=referrer_user_id,
                    referral_code=code,
                    risk_score=Decimal(str(round(assessment.risk_score, 4))),
                    risk_level=assessment.risk_level,
                    decision=assessment.decision,
                    review_required=assessment.should_flag_for_review,
                    ip_address=ip_address,
                    assessed_at=self._now(),
                ),
            )

        if assessment.should_block:
            logger.warning(
                "referral_signup_blocked_by_fraud",
                referred_user_id=new_user.user_id,
                referrer_user_id=referrer_user_id,
                risk_score=assessment.risk_score,
                risk_level=assessment.risk_level,
            )
            raise ReferralRateLimitedError
        if assessment.should_flag_for_review:
            logger.warning(
                "referral_signup_flagged_for_review",
                referred_user_id=new_user.user_id,
                referrer_user_id=referrer_user_id,
                risk_score=assessment.risk_score,
                risk_level=assessment.risk_level,
            )
        return assessment

    async def _attribute(self, user_id: str) -> AttributionResult | None:
        try:
            attribution = await self._attribution.attribute(
                user_id=user_id,
                conversion_event=ATTRIBUTION_CONVERSION_EVENT,
            )
        except Exception as exc:
            logger.warning("referral_attribution_failed", user_id=user_id, error=repr(exc))
            return None
        if attribution is not None:
            logger.info(
                "referral_attribution_resolved",
                user_id=user_id,
                confidence=attribution.confidence,
                model=attribution.model,
            )
        return attribution

    async def _create_referral(
        self,
        *,
        new_user: NewUser,
        referrer_user_id: str,
        code: str,
    ) -> str:
        referral_id = build_referral_id(referrer_user_id, new_user.user_id)
        now_utc = self._now()
        try:
            async with self._session_factory.begin() as session:
                if await ReferralsRepo.get_by_id(session, referral_id) is not None:
                    raise ReferralAlreadyReferredError
                existing = await ReferralsRepo.get_by_referred_user_id(
                    session,
                    referred_user_id=new_user.user_id,
                )
                if existing is not None:
                    raise ReferralAlreadyReferredError

                referrer = await UsersRepo.get_by_id_for_update(session, referrer_user_id)
                if referrer is None:
                    raise ReferralInvalidUserError
                if int(referrer.total_referrals) >= self._max_referrals:
                    raise ReferralMaxReachedError

                if await UsersRepo.get_by_id(session, new_user.user_id) is None:
                    await UsersRepo.create(
                        session,
                        user_id=new_user.user_id,
                        display_name=new_user.display_name,
                        email=new_user.email,
                    )
                await ReferralsRepo.create(
                    session,
                    referral=Referral(
                        id=referral_id,
                        referrer_user_id=referrer_user_id,
                        referred_user_id=new_user.user_id,
                        referral_code=code,
                        status=REFERRAL_STATUS_COMPLETED,
                        reward_claimed=False,
                        created_at=now_utc,
                        completed_at=now_utc,
                    ),
                )
                await UsersRepo.increment_total_referrals(session, user_id=referrer_user_id)
        except IntegrityError as exc:
            raise ReferralAlreadyReferredError from exc
        return referral_id

    async def _build_reward_context(self, referrer_user_id: str) -> RewardContext | None:
        try:
            async with self._session_factory() as session:
                referrer = await UsersRepo.get_by_id(session, referrer_user_id)
        except SQLAlchemyError:
            logger.warning("referral_reward_context_failed", user_id=referrer_user_id, exc_info=True)
            return None
        if referrer is None:
            return None

        now_utc = self._now()
        expires_at = ensure_utc(referrer.subscription_expires_at)
        is_premium = bool(referrer.is_premium) or (expires_at is not None and expires_at > now_utc)
        created_at = ensure_utc(referrer.created_at)
        account_age_days = 0 if created_at is None else max(0, (now_utc - created_at).days)

        segments = [SEGMENT_REFERRER]
        if is_premium:
            segments.append(SEGMENT_PREMIUM_REFERRER)
        return RewardContext(
            user_id=referrer_user_id,
            total_referrals=int(referrer.total_referrals or 0),
            is_premium=is_premium,
            account_age_days=account_age_days,
            segments=tuple(segments),
        )

    async def _resolve_reward_config(
        self,
        *,
        referrer_user_id: str,
        referred_user_id: str,
        context: RewardContext | None,
    ) -> RewardConfig:
        for provider in self._reward_providers:
            try:
                config = await provider.get_reward_config(
                    referrer_user_id=referrer_user_id,
                    referred_user_id=referred_user_id,
                    context=context,
                )
            except Exception as exc:
                logger.warning(
                    "referral_reward_config_provider_failed",
                    provider=type(provider).__name__,
                    error=repr(exc),
                )
                continue
            if config is not None:
                return config
        return self._default_reward_config

    async def _grant(
        self,
        *,
        user_id: str,
        days: int,
        reason: str,
        referral_id: str,
        failures: list[str],
    ) -> GrantResult | None:
        if days <= 0:
            return None
        try:
            return await self._reward_issuer.award_days(
                user_id,
                days,
                reason,
                referral_id=referral_id,
            )
        except Exception:
            failures.append(reason)
            return None

    async def _mark_reward_claimed(self, referral_id: str) -> None:
        try:
            async with self._session_factory.begin() as session:
                await ReferralsRepo.mark_reward_claimed(session, referral_id=referral_id)
        except SQLAlchemyError:
            logger.warning("referral_reward_claim_mark_failed", referral_id=referral_id, exc_info=True)

    async def _refresh_stats(self, referrer_user_id: str) -> Milestone | None:
        try:
            result = await self._stats_engine.refresh(referrer_user_id)
        except Exception:
            logger.error("referral_stats_refresh_failed", user_id=referrer_user_id, exc_info=True)
            return None
        return result.milestone

    def _notify(
        self,
        *,
        new_user: NewUser,
        referrer_user_id: str,
        referral_id: str,
        reward_config: RewardConfig,
        reward_context: RewardContext | None,
    ) -> None:
        self._dispatcher.enqueue(
            Notification(
                kind=NOTIFICATION_REFERRAL_SUCCESS,
                user_id=referrer_user_id,
                payload={
                    "referral_id": referral_id,
                    "referred_user_id": new_user.user_id,
                    "referred_display_name": new_user.display_name,
                    "bonus_days": reward_config.referrer_days,
                },
            )
        )
        if reward_context is None:
            return
        self._dispatcher.enqueue(
            Notification(
                kind=NOTIFICATION_SEGMENT_ASSIGNMENT,
                user_id=referrer_user_id,
                payload={
                    "segment": reward_context.segments[-1],
                    "segments": list(reward_context.segments),
                    "total_referrals": reward_context.total_referrals,
                    "referred_user_id": new_user.user_id,
                    "reward_config_source": reward_config.source,
                },
            )
        )

    async def _record_signup(
        self,
        *,
        referral_id: str,
        referrer_user_id: str,
        referred_user_id: str,
        code: str,
        assessment: FraudAssessment,
        attribution: AttributionResult | None,
        reward_config: RewardConfig,
        reward_failures: list[str],
    ) -> None:
        try:
            async with self._session_factory.begin() as session:
                await ReferralSignupsRepo.create(
                    session,
                    signup=ReferralSignup(
                        referral_id=referral_id,
                        referrer_user_id=referrer_user_id,
                        referred_user_id=referred_user_id,
                        referral_code=code,
                        fraud_score=Decimal(str(round(assessment.risk_score, 4))),
                        attribution_confidence=(
                            None
                            if attribution is None
                            else Decimal(str(round(attribution.confidence, 4)))
                        ),
                        referrer_days_awarded=(
                            0
                            if REWARD_REASON_SUCCESSFUL_REFERRAL in reward_failures
                            else reward_config.referrer_days
                        ),
                        referred_days_awarded=(
                            0
                            if REWARD_REASON_REFERRAL_SIGNUP in reward_failures
                            else reward_config.referred_days
                        ),
                        created_at=self._now(),
                    ),
                )
        except SQLAlchemyError:
            logger.warning("referral_signup_record_failed", referral_id=referral_id, exc_info=True)
