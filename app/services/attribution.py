from __future__ import annotations

import httpx
from pydantic import BaseModel, ConfigDict, Field

from app.core.config import Settings
from app.economy.referrals.collaborators import AttributionService, NoopAttributionService
from app.economy.referrals.types import AttributionResult


class AttributionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    confidence: float = Field(ge=0, le=1)
    model: str | None = Field(default=None, alias="attributionModel")


class HttpAttributionService:
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

    async def attribute(self, *, user_id: str, conversion_event: str) -> AttributionResult | None:
        async with httpx.AsyncClient(
            timeout=self._timeout_seconds,
            transport=self._transport,
        ) as client:
            response = await client.post(
                f"{self._base_url}/conversions",
                json={"userId": user_id, "conversionEvent": conversion_event},
            )
            response.raise_for_status()
        if response.status_code == httpx.codes.NO_CONTENT:
            return None
        parsed = AttributionResponse.model_validate(response.json())
        return AttributionResult(confidence=parsed.confidence, model=parsed.model)

    async def record_touchpoint(
        self,
        *,
        user_id: str,
        referral_code: str,
        channel: str,
        platform: str | None,
    ) -> None:
        async with httpx.AsyncClient(
            timeout=self._timeout_seconds,
            transport=self._transport,
        ) as client:
            response = await client.post(
                f"{self._base_url}/touchpoints",
                json={
                    "userId": user_id,
                    "referralCode": referral_code,
                    "channel": channel,
                    "platform": platform,
                    "touchpointType": "share",
                },
            )
            response.raise_for_status()


def build_attribution_service(settings: Settings) -> AttributionService:
    base_url = settings.referral_attribution_service_url.strip()
    if not base_url:
        return NoopAttributionService()
    return HttpAttributionService(
        base_url=base_url,
        timeout_seconds=settings.referral_collaborator_timeout_seconds,
    )
