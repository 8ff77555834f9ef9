from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.referral_codes import (
    DEFAULT_CODE_PREFIX,
    derive_fallback_referral_code,
    generate_referral_code,
    normalize_referral_code,
)
from app.db.repo.referral_codes_repo import ReferralCodesRepo
from app.db.repo.users_repo import UsersRepo
from app.economy.referrals.cache import ReferralCaches
from app.economy.referrals.constants import CODE_GENERATION_ATTEMPTS
from app.economy.referrals.errors import ReferralCodeGenerationError, ReferralInvalidUserError
from app.economy.referrals.time_utils import utc_now

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class _CodeLookup:
    owner_user_id: str
    active: bool
    source: str


class ReferralCodeRegistry:
    """Code index over `referral_codes` with a fallback to the legacy `users.referral_code` column."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        caches: ReferralCaches,
        *,
        prefix: str = DEFAULT_CODE_PREFIX,
        generation_attempts: int = CODE_GENERATION_ATTEMPTS,
        code_factory: Callable[..., str] = generate_referral_code,
        now_provider: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._caches = caches
        self._prefix = prefix
        self._generation_attempts = max(1, int(generation_attempts))
        self._code_factory = code_factory
        self._now = now_provider

    async def generate(self, owner_user_id: str) -> str:
        async with self._session_factory() as session:
            owner = await UsersRepo.get_by_id(session, owner_user_id)
        if owner is None:
            raise ReferralInvalidUserError

        for attempt in range(1, self._generation_attempts + 1):
            candidate = self._code_factory(prefix=self._prefix)
            if await self._reserve(candidate, owner_user_id=owner_user_id):
                logger.info(
                    "referral_code_generated",
                    owner_user_id=owner_user_id,
                    code=candidate,
                    attempt=attempt,
                )
                return candidate
            logger.info(
                "referral_code_collision",
                owner_user_id=owner_user_id,
                attempt=attempt,
            )

        fallback = derive_fallback_referral_code(
            owner_user_id,
            at=self._now(),
            prefix=self._prefix,
        )
        if await self._reserve(fallback, owner_user_id=owner_user_id):
            logger.warning(
                "referral_code_fallback_used",
                owner_user_id=owner_user_id,
                code=fallback,
                attempts=self._generation_attempts,
            )
            return fallback

        logger.error(
            "referral_code_generation_exhausted",
            owner_user_id=owner_user_id,
            attempts=self._generation_attempts + 1,
        )
        raise ReferralCodeGenerationError

    async def ensure_code(self, user_id: str) -> str:
        async with self._session_factory() as session:
            user = await UsersRepo.get_by_id(session, user_id)
        if user is None:
            raise ReferralInvalidUserError
        if user.referral_code:
            return user.referral_code

        code = await self.generate(user_id)
        async with self._session_factory.begin() as session:
            await UsersRepo.set_referral_code(session, user_id=user_id, referral_code=code)
        self._caches.invalidate_stats(user_id)
        return code

    async def validate(self, code: str | None) -> bool:
        normalized = normalize_referral_code(code)
        if not normalized:
            return False

        cached = self._caches.code_validation.get(normalized)
        if cached is not None:
            return cached

        try:
            lookup = await self._lookup(normalized)
        except SQLAlchemyError:
            logger.warning("referral_code_validation_failed", code=normalized, exc_info=True)
            return False

        is_valid = lookup is not None and lookup.active
        self._caches.code_validation.set(normalized, is_valid)
        return is_valid

    async def resolve_owner(self, code: str | None) -> str | None:
        normalized = normalize_referral_code(code)
        if not normalized:
            return None
        lookup = await self._lookup(normalized)
        if lookup is None or not lookup.active:
            return None
        return lookup.owner_user_id

    async def _lookup(self, code: str) -> _CodeLookup | None:
        async with self._session_factory() as session:
            indexed = await ReferralCodesRepo.get(session, code)
            if indexed is not None:
                return _CodeLookup(
                    owner_user_id=indexed.owner_user_id,
                    active=bool(indexed.active),
                    source="index",
                )
            legacy_owner = await UsersRepo.get_by_legacy_referral_code(session, code)

        if legacy_owner is None:
            return None
        await self._migrate_legacy_code(code, owner_user_id=legacy_owner.id)
        return _CodeLookup(owner_user_id=legacy_owner.id, active=True, source="legacy")

    async def _migrate_legacy_code(self, code: str, *, owner_user_id: str) -> None:
        try:
            migrated = await self._reserve(code, owner_user_id=owner_user_id, migrated=True)
        except SQLAlchemyError:
            logger.warning(
                "referral_code_migration_failed",
                code=code,
                owner_user_id=owner_user_id,
                exc_info=True,
            )
            return
        if migrated:
            logger.info("referral_code_migrated", code=code, owner_user_id=owner_user_id)

    async def _reserve(self, code: str, *, owner_user_id: str, migrated: bool = False) -> bool:
        try:
            async with self._session_factory.begin() as session:
                if await ReferralCodesRepo.get(session, code) is not None:
                    return False
                if not migrated:
                    legacy_owner = await UsersRepo.get_by_legacy_referral_code(session, code)
                    if legacy_owner is not None:
                        return False
                await ReferralCodesRepo.create(
                    session,
                    code=code,
                    owner_user_id=owner_user_id,
                    created_at=self._now(),
                    migrated=migrated,
                )
        except IntegrityError:
            return False
        self._caches.invalidate_code(code)
        return True
