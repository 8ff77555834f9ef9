from __future__ import annotations

from datetime import datetime
from typing import Protocol

from app.economy.referrals.types import (
    AttributionResult,
    FraudAssessment,
    Notification,
    RewardConfig,
    RewardContext,
)


class FraudScorer(Protocol):
    async def assess(
        self,
        *,
        referred_user_id: str,
        referrer_user_id: str,
        referral_code: str,
        email: str | None,
        ip_address: str | None,
    ) -> FraudAssessment: ...


class AttributionService(Protocol):
    async def attribute(self, *, user_id: str, conversion_event: str) -> AttributionResult | None: ...

    async def record_touchpoint(
        self,
        *,
        user_id: str,
        referral_code: str,
        channel: str,
        platform: str | None,
    ) -> None: ...


class RewardConfigProvider(Protocol):
    async def get_reward_config(
        self,
        *,
        referrer_user_id: str,
        referred_user_id: str,
        context: RewardContext | None = None,
    ) -> RewardConfig | None: ...


class SegmentTracker(Protocol):
    async def track_assignment(
        self,
        *,
        user_id: str,
        segment: str,
        payload: dict[str, object],
    ) -> None: ...


class BillingStore(Protocol):
    async def get_expiry(self, user_id: str) -> datetime | None: ...

    async def grant_premium_days(self, user_id: str, *, expires_at: datetime) -> None: ...


class NotificationSink(Protocol):
    async def enqueue(self, notification: Notification) -> None: ...


class AllowAllFraudScorer:
    async def assess(
        self,
        *,
        referred_user_id: str,
        referrer_user_id: str,
        referral_code: str,
        email: str | None,
        ip_address: str | None,
    ) -> FraudAssessment:
        return FraudAssessment(risk_score=0.0, risk_level="low", decision="allow")


class NoopAttributionService:
    async def attribute(self, *, user_id: str, conversion_event: str) -> AttributionResult | None:
        return None

    async def record_touchpoint(
        self,
        *,
        user_id: str,
        referral_code: str,
        channel: str,
        platform: str | None,
    ) -> None:
        return None


class StaticRewardConfigProvider:
    def __init__(self, *, referrer_days: int, referred_days: int) -> None:
        self._config = RewardConfig(
            referrer_days=referrer_days,
            referred_days=referred_days,
            source="static",
        )

    async def get_reward_config(
        self,
        *,
        referrer_user_id: str,
        referred_user_id: str,
        context: RewardContext | None = None,
    ) -> RewardConfig | None:
        return self._config


class NoopSegmentTracker:
    async def track_assignment(
        self,
        *,
        user_id: str,
        segment: str,
        payload: dict[str, object],
    ) -> None:
        return None
