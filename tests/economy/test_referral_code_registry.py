from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from app.db.repo.referral_codes_repo import ReferralCodesRepo
from app.db.repo.users_repo import UsersRepo
from app.economy.referrals.cache import ReferralCaches
from app.economy.referrals.codes import ReferralCodeRegistry
from app.economy.referrals.errors import ReferralCodeGenerationError, ReferralInvalidUserError
from tests.referrals_fixtures import FakeClock, create_user


def _caches() -> ReferralCaches:
    return ReferralCaches(
        stats_ttl_seconds=60,
        leaderboard_ttl_seconds=300,
        code_validation_ttl_seconds=30,
        clock=FakeClock(),
    )


def _scripted_factory(codes: list[str]):
    remaining = list(codes)

    def factory(*, prefix: str) -> str:
        return remaining.pop(0)

    return factory


@pytest.mark.asyncio
async def test_generate_retries_after_collision(session_factory) -> None:
    await create_user(session_factory, "owner-a", indexed_code="CEL-TAKEN001")
    await create_user(session_factory, "owner-b")
    registry = ReferralCodeRegistry(
        session_factory,
        _caches(),
        code_factory=_scripted_factory(["CEL-TAKEN001", "CEL-FRESH002"]),
    )

    code = await registry.generate("owner-b")

    assert code == "CEL-FRESH002"
    async with session_factory() as session:
        entry = await ReferralCodesRepo.get(session, code)
    assert entry is not None
    assert entry.owner_user_id == "owner-b"


@pytest.mark.asyncio
async def test_generate_avoids_codes_held_only_in_legacy_column(session_factory) -> None:
    await create_user(session_factory, "legacy-owner", referral_code="CEL-LEGACY01")
    await create_user(session_factory, "owner-b")
    registry = ReferralCodeRegistry(
        session_factory,
        _caches(),
        code_factory=_scripted_factory(["CEL-LEGACY01", "CEL-FRESH003"]),
    )

    assert await registry.generate("owner-b") == "CEL-FRESH003"


@pytest.mark.asyncio
async def test_generate_uses_fallback_after_all_random_attempts_collide(session_factory) -> None:
    await create_user(session_factory, "owner-a", indexed_code="CEL-TAKEN001")
    await create_user(session_factory, "owner-b")
    registry = ReferralCodeRegistry(
        session_factory,
        _caches(),
        generation_attempts=3,
        code_factory=lambda *, prefix: "CEL-TAKEN001",
    )

    code = await registry.generate("owner-b")

    assert code.startswith("CEL-")
    assert code != "CEL-TAKEN001"
    assert await registry.resolve_owner(code) == "owner-b"


@pytest.mark.asyncio
async def test_generate_raises_when_fallback_also_collides(session_factory, monkeypatch) -> None:
    await create_user(session_factory, "owner-a", indexed_code="CEL-TAKEN001")
    await create_user(session_factory, "owner-b")
    monkeypatch.setattr(
        "app.economy.referrals.codes.derive_fallback_referral_code",
        lambda owner_user_id, *, at, prefix: "CEL-TAKEN001",
    )
    registry = ReferralCodeRegistry(
        session_factory,
        _caches(),
        code_factory=lambda *, prefix: "CEL-TAKEN001",
    )

    with pytest.raises(ReferralCodeGenerationError):
        await registry.generate("owner-b")


@pytest.mark.asyncio
async def test_generate_requires_existing_owner(session_factory) -> None:
    registry = ReferralCodeRegistry(session_factory, _caches())

    with pytest.raises(ReferralInvalidUserError):
        await registry.generate("ghost")


@pytest.mark.asyncio
async def test_ensure_code_assigns_once(session_factory) -> None:
    await create_user(session_factory, "owner-a")
    registry = ReferralCodeRegistry(
        session_factory,
        _caches(),
        code_factory=_scripted_factory(["CEL-FIRST001", "CEL-OTHER002"]),
    )

    first = await registry.ensure_code("owner-a")
    second = await registry.ensure_code("owner-a")

    assert first == second == "CEL-FIRST001"
    async with session_factory() as session:
        user = await UsersRepo.get_by_id(session, "owner-a")
    assert user.referral_code == "CEL-FIRST001"


@pytest.mark.asyncio
async def test_validate_caches_result_for_normalized_code(session_factory, monkeypatch) -> None:
    await create_user(session_factory, "owner-a", indexed_code="CEL-AB12CD34")
    caches = _caches()
    registry = ReferralCodeRegistry(session_factory, caches)

    assert await registry.validate(" cel-ab12cd34 ") is True

    async def _must_not_query(session, code):
        raise AssertionError("validation should be served from cache")

    monkeypatch.setattr(ReferralCodesRepo, "get", _must_not_query)
    assert await registry.validate("CEL-AB12CD34") is True


@pytest.mark.asyncio
async def test_validate_returns_false_for_blank_and_unknown_codes(session_factory) -> None:
    registry = ReferralCodeRegistry(session_factory, _caches())

    assert await registry.validate("") is False
    assert await registry.validate(None) is False
    assert await registry.validate("CEL-NOPE0000") is False


@pytest.mark.asyncio
async def test_validate_storage_error_is_not_cached(session_factory, monkeypatch) -> None:
    await create_user(session_factory, "owner-a", indexed_code="CEL-AB12CD34")
    caches = _caches()
    registry = ReferralCodeRegistry(session_factory, caches)

    async def _broken_get(session, code):
        raise OperationalError("SELECT", {}, Exception("db down"))

    with monkeypatch.context() as patch:
        patch.setattr(ReferralCodesRepo, "get", _broken_get)
        assert await registry.validate("CEL-AB12CD34") is False

    assert caches.code_validation.get("CEL-AB12CD34") is None
    assert await registry.validate("CEL-AB12CD34") is True


@pytest.mark.asyncio
async def test_legacy_code_resolves_and_is_migrated_into_index(session_factory) -> None:
    await create_user(session_factory, "legacy-owner", referral_code="CEL-LEGACY01")
    registry = ReferralCodeRegistry(session_factory, _caches())

    assert await registry.resolve_owner("cel-legacy01") == "legacy-owner"

    async with session_factory() as session:
        entry = await ReferralCodesRepo.get(session, "CEL-LEGACY01")
    assert entry is not None
    assert entry.migrated is True
    assert entry.owner_user_id == "legacy-owner"


@pytest.mark.asyncio
async def test_index_entry_takes_precedence_over_legacy_column(session_factory) -> None:
    await create_user(session_factory, "legacy-owner", referral_code="CEL-SHARED01")
    await create_user(session_factory, "indexed-owner", indexed_code="CEL-SHARED01")
    registry = ReferralCodeRegistry(session_factory, _caches())

    assert await registry.resolve_owner("CEL-SHARED01") == "indexed-owner"


@pytest.mark.asyncio
async def test_generated_code_replaces_cached_negative_lookup(session_factory) -> None:
    await create_user(session_factory, "owner-b")
    registry = ReferralCodeRegistry(
        session_factory,
        _caches(),
        code_factory=_scripted_factory(["CEL-FRESH004"]),
    )
    assert await registry.validate("CEL-FRESH004") is False

    await registry.generate("owner-b")

    assert await registry.validate("cel-fresh004") is True
