from __future__ import annotations

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from app.core.config import Settings
from app.economy.referrals.collaborators import AllowAllFraudScorer, FraudScorer
from app.economy.referrals.types import FraudAssessment

logger = structlog.get_logger(__name__)


class FraudAssessmentResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    risk_score: float = Field(alias="riskScore", ge=0)
    risk_level: str = Field(alias="riskLevel")
    decision: str
    review_required: bool = Field(default=False, alias="reviewRequired")


class HttpFraudScorer:
    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    async def assess(
        self,
        *,
        referred_user_id: str,
        referrer_user_id: str,
        referral_code: str,
        email: str | None,
        ip_address: str | None,
    ) -> FraudAssessment:
        async with httpx.AsyncClient(
            timeout=self._timeout_seconds,
            transport=self._transport,
        ) as client:
            response = await client.post(
                f"{self._base_url}/assess",
                json={
                    "referredUserId": referred_user_id,
                    "referrerUserId": referrer_user_id,
                    "referralCode": referral_code,
                    "email": email,
                    "ipAddress": ip_address,
                },
            )
            response.raise_for_status()

        parsed = FraudAssessmentResponse.model_validate(response.json())
        decision = parsed.decision.strip().lower()
        if decision not in {"allow", "flag", "block"}:
            logger.warning("referral_fraud_unknown_decision", decision=parsed.decision)
            decision = "flag"
        return FraudAssessment(
            risk_score=parsed.risk_score,
            risk_level=parsed.risk_level.strip().lower(),
            decision=decision,
            review_required=parsed.review_required,
        )


def build_fraud_scorer(settings: Settings) -> FraudScorer:
    base_url = settings.referral_fraud_service_url.strip()
    if not base_url:
        return AllowAllFraudScorer()
    return HttpFraudScorer(
        base_url=base_url,
        timeout_seconds=settings.referral_collaborator_timeout_seconds,
    )
