from __future__ import annotations

from dataclasses import asdict

import structlog
from fastapi import APIRouter, HTTPException, Query, Request

from app.core.config import get_settings
from app.economy.referrals.constants import (
    DEFAULT_LEADERBOARD_LIMIT,
    DEFAULT_REFERRALS_PAGE_SIZE,
    MAX_LEADERBOARD_LIMIT,
    MAX_REFERRALS_PAGE_SIZE,
    RANK_APPROXIMATE,
)
from app.economy.referrals.errors import (
    ReferralAlreadyReferredError,
    ReferralCodeGenerationError,
    ReferralError,
    ReferralInvalidCodeError,
    ReferralInvalidCursorError,
    ReferralInvalidUserError,
    ReferralMaxReachedError,
    ReferralRateLimitedError,
    ReferralSelfReferralError,
)
from app.economy.referrals.milestones import next_milestone
from app.economy.referrals.service import ReferralEngine
from app.economy.referrals.types import NewUser
from app.services.internal_auth import extract_client_ip, is_internal_request_authenticated

from .referrals_models import (
    LeaderboardEntryResponse,
    LeaderboardResponse,
    ReferralCodeRequest,
    ReferralCodeResponse,
    ReferralCodeValidationResponse,
    ReferralHistoryItemResponse,
    ReferralHistoryResponse,
    ReferralShareRequest,
    ReferralShareResponse,
    ReferralSignupRequest,
    ReferralSignupResponse,
    ReferralStatsResponse,
)

router = APIRouter(prefix="/referrals", tags=["referrals"])
logger = structlog.get_logger(__name__)

ERROR_RESPONSES: tuple[tuple[type[ReferralError], int, str], ...] = (
    (ReferralInvalidUserError, 404, "E_REFERRAL_INVALID_USER"),
    (ReferralInvalidCodeError, 404, "E_REFERRAL_INVALID_CODE"),
    (ReferralSelfReferralError, 422, "E_REFERRAL_SELF_REFERRAL"),
    (ReferralRateLimitedError, 429, "E_REFERRAL_RATE_LIMITED"),
    (ReferralAlreadyReferredError, 409, "E_REFERRAL_ALREADY_REFERRED"),
    (ReferralMaxReachedError, 409, "E_REFERRAL_MAX_REACHED"),
    (ReferralCodeGenerationError, 503, "E_REFERRAL_CODE_GENERATION_FAILED"),
    (ReferralInvalidCursorError, 422, "E_REFERRAL_INVALID_CURSOR"),
)


def _as_http_error(exc: ReferralError) -> HTTPException:
    for error_type, status_code, code in ERROR_RESPONSES:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail={"code": code})
    return HTTPException(status_code=400, detail={"code": "E_REFERRAL_REJECTED"})


def _assert_internal_access(request: Request) -> None:
    settings = get_settings()
    if not is_internal_request_authenticated(request, expected_token=settings.internal_api_token):
        logger.warning(
            "internal_referrals_auth_failed",
            client_ip=extract_client_ip(
                request,
                trusted_proxies=settings.internal_api_trusted_proxies,
            ),
        )
        raise HTTPException(status_code=403, detail={"code": "E_FORBIDDEN"})


def _engine(request: Request) -> ReferralEngine:
    return request.app.state.referral_engine


@router.post("/signup", response_model=ReferralSignupResponse)
async def process_referral_signup(
    payload: ReferralSignupRequest,
    request: Request,
) -> ReferralSignupResponse:
    _assert_internal_access(request)
    settings = get_settings()
    try:
        result = await _engine(request).process_signup(
            NewUser(
                user_id=payload.user_id,
                display_name=payload.display_name,
                email=payload.email,
            ),
            payload.referral_code,
            ip_address=extract_client_ip(
                request,
                trusted_proxies=settings.internal_api_trusted_proxies,
            ),
        )
    except ReferralError as exc:
        raise _as_http_error(exc) from exc

    return ReferralSignupResponse(
        referral_id=result.referral_id,
        referrer_user_id=result.referrer_user_id,
        referred_user_id=result.referred_user_id,
        state=result.state.value,
        referrer_days=result.referrer_days,
        referred_days=result.referred_days,
        fraud_decision=result.fraud_decision,
        flagged_for_review=result.flagged_for_review,
        milestone_id=None if result.milestone is None else result.milestone.id,
        reward_failures=list(result.reward_failures),
    )


@router.post("/codes", response_model=ReferralCodeResponse)
async def ensure_referral_code(
    payload: ReferralCodeRequest,
    request: Request,
) -> ReferralCodeResponse:
    _assert_internal_access(request)
    try:
        code = await _engine(request).ensure_code(payload.user_id)
    except ReferralError as exc:
        raise _as_http_error(exc) from exc
    return ReferralCodeResponse(user_id=payload.user_id, referral_code=code)


@router.get("/codes/{code}/validate", response_model=ReferralCodeValidationResponse)
async def validate_referral_code(code: str, request: Request) -> ReferralCodeValidationResponse:
    _assert_internal_access(request)
    is_valid = await _engine(request).validate_code(code)
    return ReferralCodeValidationResponse(referral_code=code.strip().upper(), valid=is_valid)


@router.get("/users/{user_id}/stats", response_model=ReferralStatsResponse)
async def get_referral_stats(
    user_id: str,
    request: Request,
    force_refresh: bool = Query(default=False, alias="forceRefresh"),
) -> ReferralStatsResponse:
    _assert_internal_access(request)
    try:
        stats = await _engine(request).get_stats(user_id, force_refresh=force_refresh)
    except ReferralError as exc:
        raise _as_http_error(exc) from exc

    upcoming = next_milestone(stats.total_referrals)
    return ReferralStatsResponse(
        user_id=user_id,
        total_referrals=stats.total_referrals,
        pending_referrals=stats.pending_referrals,
        premium_days_earned=stats.premium_days_earned,
        referral_rank=stats.referral_rank,
        rank_is_approximate=stats.referral_rank == RANK_APPROXIMATE,
        referral_code=stats.referral_code,
        next_milestone_id=None if upcoming is None else upcoming.id,
        next_milestone_required_referrals=(
            None if upcoming is None else upcoming.required_referrals
        ),
    )


@router.get("/leaderboard", response_model=LeaderboardResponse)
async def get_referral_leaderboard(
    request: Request,
    limit: int = Query(default=DEFAULT_LEADERBOARD_LIMIT, ge=1, le=MAX_LEADERBOARD_LIMIT),
    force_refresh: bool = Query(default=False, alias="forceRefresh"),
) -> LeaderboardResponse:
    _assert_internal_access(request)
    entries = await _engine(request).fetch_leaderboard(limit, force_refresh=force_refresh)
    return LeaderboardResponse(
        limit=limit,
        entries=[LeaderboardEntryResponse(**asdict(entry)) for entry in entries],
    )


@router.get("/users/{user_id}/referrals", response_model=ReferralHistoryResponse)
async def list_user_referrals(
    user_id: str,
    request: Request,
    page_size: int = Query(
        default=DEFAULT_REFERRALS_PAGE_SIZE,
        ge=1,
        le=MAX_REFERRALS_PAGE_SIZE,
        alias="pageSize",
    ),
    cursor: str | None = Query(default=None, max_length=512),
) -> ReferralHistoryResponse:
    _assert_internal_access(request)
    try:
        page = await _engine(request).fetch_user_referrals(
            user_id,
            page_size=page_size,
            cursor=cursor,
        )
    except ReferralError as exc:
        raise _as_http_error(exc) from exc

    return ReferralHistoryResponse(
        items=[ReferralHistoryItemResponse(**asdict(item)) for item in page.items],
        next_cursor=page.next_cursor,
        has_more=page.has_more,
    )


@router.post("/shares", response_model=ReferralShareResponse)
async def track_referral_share(
    payload: ReferralShareRequest,
    request: Request,
) -> ReferralShareResponse:
    _assert_internal_access(request)
    try:
        code = await _engine(request).track_share(
            payload.user_id,
            channel=payload.channel,
            platform=payload.platform,
        )
    except ReferralError as exc:
        raise _as_http_error(exc) from exc
    return ReferralShareResponse(user_id=payload.user_id, referral_code=code, channel=payload.channel)
