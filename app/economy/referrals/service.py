from __future__ import annotations

from collections.abc import Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.economy.referrals.cache import ReferralCaches
from app.economy.referrals.codes import ReferralCodeRegistry
from app.economy.referrals.collaborators import (
    AttributionService,
    BillingStore,
    FraudScorer,
    NoopSegmentTracker,
    NotificationSink,
    RewardConfigProvider,
    SegmentTracker,
    StaticRewardConfigProvider,
)
from app.economy.referrals.constants import (
    DEFAULT_LEADERBOARD_LIMIT,
    DEFAULT_REFERRALS_PAGE_SIZE,
    NOTIFICATION_SEGMENT_ASSIGNMENT,
)
from app.economy.referrals.notifications import (
    MilestoneSignals,
    NotificationDispatcher,
    OutboxNotificationSink,
    SegmentAssignmentSink,
)
from app.economy.referrals.queries import ReferralQueries
from app.economy.referrals.rate_limit import ReferralRateLimiter
from app.economy.referrals.rewards import AlertSender, RewardIssuer, SqlBillingStore
from app.economy.referrals.signup import SignupProcessor
from app.economy.referrals.stats import StatsEngine
from app.economy.referrals.types import (
    LeaderboardEntry,
    MilestoneReached,
    NewUser,
    RewardConfig,
    ReferralPage,
    ReferralStats,
    SignupResult,
)
from app.services.alerts import send_ops_alert
from app.services.attribution import build_attribution_service
from app.services.fraud_scoring import build_fraud_scorer

logger = structlog.get_logger(__name__)


class ReferralEngine:
    """Inbound surface of the referral engine.

    Each collaborator is built once by ``build_referral_engine`` and passed in;
    tests construct the engine with fakes the same way.
    """

    def __init__(
        self,
        *,
        codes: ReferralCodeRegistry,
        rate_limiter: ReferralRateLimiter,
        caches: ReferralCaches,
        rewards: RewardIssuer,
        stats: StatsEngine,
        queries: ReferralQueries,
        signup: SignupProcessor,
        dispatcher: NotificationDispatcher,
        signals: MilestoneSignals,
        attribution: AttributionService,
    ) -> None:
        self.codes = codes
        self.rate_limiter = rate_limiter
        self.caches = caches
        self.rewards = rewards
        self.stats = stats
        self.queries = queries
        self.signup = signup
        self.dispatcher = dispatcher
        self.signals = signals
        self._attribution = attribution

    async def start(self) -> None:
        await self.dispatcher.start()

    async def stop(self) -> None:
        await self.dispatcher.stop()

    async def process_signup(
        self,
        new_user: NewUser,
        referral_code: str | None,
        *,
        ip_address: str | None = None,
    ) -> SignupResult:
        return await self.signup.process_signup(new_user, referral_code, ip_address=ip_address)

    async def generate_code(self, owner_user_id: str) -> str:
        return await self.codes.generate(owner_user_id)

    async def ensure_code(self, user_id: str) -> str:
        return await self.codes.ensure_code(user_id)

    async def validate_code(self, code: str | None) -> bool:
        return await self.codes.validate(code)

    async def get_stats(self, user_id: str, *, force_refresh: bool = False) -> ReferralStats:
        return await self.queries.get_stats(user_id, force_refresh=force_refresh)

    async def fetch_leaderboard(
        self,
        limit: int = DEFAULT_LEADERBOARD_LIMIT,
        *,
        force_refresh: bool = False,
    ) -> list[LeaderboardEntry]:
        return await self.queries.fetch_leaderboard(limit, force_refresh=force_refresh)

    async def fetch_user_referrals(
        self,
        user_id: str,
        *,
        page_size: int = DEFAULT_REFERRALS_PAGE_SIZE,
        cursor: str | None = None,
    ) -> ReferralPage:
        return await self.queries.fetch_user_referrals(user_id, page_size=page_size, cursor=cursor)

    async def track_share(self, user_id: str, *, channel: str, platform: str | None = None) -> str:
        code = await self.codes.ensure_code(user_id)
        try:
            await self._attribution.record_touchpoint(
                user_id=user_id,
                referral_code=code,
                channel=channel,
                platform=platform,
            )
        except Exception as exc:
            logger.warning(
                "referral_share_touchpoint_failed",
                user_id=user_id,
                channel=channel,
                error=repr(exc),
            )
        else:
            logger.info("referral_share_tracked", user_id=user_id, channel=channel, platform=platform)
        return code

    def consume_milestone(self, user_id: str) -> MilestoneReached | None:
        return self.signals.consume(user_id)

    def clear_caches(self) -> None:
        self.caches.clear()


def build_referral_engine(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    fraud_scorer: FraudScorer | None = None,
    attribution: AttributionService | None = None,
    reward_providers: Sequence[RewardConfigProvider] | None = None,
    segment_tracker: SegmentTracker | None = None,
    billing_store: BillingStore | None = None,
    notification_sink: NotificationSink | None = None,
    alert_sender: AlertSender = send_ops_alert,
) -> ReferralEngine:
    caches = ReferralCaches(
        stats_ttl_seconds=settings.referral_stats_cache_ttl_seconds,
        leaderboard_ttl_seconds=settings.referral_leaderboard_cache_ttl_seconds,
        code_validation_ttl_seconds=settings.referral_code_validation_cache_ttl_seconds,
    )
    rate_limiter = ReferralRateLimiter(
        window_seconds=settings.referral_rate_limit_window_seconds,
        max_attempts=settings.referral_rate_limit_max_attempts,
    )
    attribution_service = attribution or build_attribution_service(settings)
    dispatcher = NotificationDispatcher(
        notification_sink or OutboxNotificationSink(session_factory),
        maxsize=settings.referral_notification_queue_size,
        routes={
            NOTIFICATION_SEGMENT_ASSIGNMENT: SegmentAssignmentSink(
                segment_tracker or NoopSegmentTracker()
            ),
        },
    )
    signals = MilestoneSignals()
    codes = ReferralCodeRegistry(
        session_factory,
        caches,
        prefix=settings.referral_code_prefix,
    )
    rewards = RewardIssuer(
        session_factory,
        billing_store or SqlBillingStore(session_factory),
        max_attempts=settings.referral_reward_max_attempts,
        retry_delay_seconds=settings.referral_reward_retry_delay_seconds,
        alert_sender=alert_sender,
        referrer_days=settings.referral_referrer_bonus_days,
        referred_days=settings.referral_referred_bonus_days,
        resume_grace_seconds=settings.referral_reward_resume_grace_seconds,
    )
    stats = StatsEngine(
        session_factory,
        rewards,
        signals,
        dispatcher,
        referrer_bonus_days=settings.referral_referrer_bonus_days,
        max_referrals=settings.referral_max_per_referrer,
    )
    queries = ReferralQueries(
        session_factory,
        caches,
        rank_scan_limit=settings.referral_rank_scan_limit,
    )
    default_reward_config = RewardConfig(
        referrer_days=settings.referral_referrer_bonus_days,
        referred_days=settings.referral_referred_bonus_days,
        source="static",
    )
    signup = SignupProcessor(
        session_factory,
        code_registry=codes,
        rate_limiter=rate_limiter,
        fraud_scorer=fraud_scorer or build_fraud_scorer(settings),
        attribution=attribution_service,
        reward_providers=tuple(
            reward_providers
            if reward_providers is not None
            else (
                StaticRewardConfigProvider(
                    referrer_days=default_reward_config.referrer_days,
                    referred_days=default_reward_config.referred_days,
                ),
            )
        ),
        default_reward_config=default_reward_config,
        reward_issuer=rewards,
        stats_engine=stats,
        caches=caches,
        dispatcher=dispatcher,
        max_referrals=settings.referral_max_per_referrer,
    )
    return ReferralEngine(
        codes=codes,
        rate_limiter=rate_limiter,
        caches=caches,
        rewards=rewards,
        stats=stats,
        queries=queries,
        signup=signup,
        dispatcher=dispatcher,
        signals=signals,
        attribution=attribution_service,
    )
