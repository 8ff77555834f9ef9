from __future__ import annotations

import pytest
from sqlalchemy import text

from app.core.integration_db_safety import assess_integration_db_safety
from app.db.session import engine

TRUNCATE_TABLES = (
    "referral_signups",
    "fraud_assessments",
    "milestone_achievements",
    "reward_grants",
    "outbox_events",
    "referrals",
    "referral_codes",
    "users",
)

TRUNCATE_SQL = f"TRUNCATE TABLE {', '.join(TRUNCATE_TABLES)} RESTART IDENTITY CASCADE"


@pytest.fixture(scope="session", autouse=True)
def guard_integration_db_target() -> None:
    safety = assess_integration_db_safety(str(engine.url))
    if not safety.is_safe:
        pytest.skip(f"Refusing to run integration tests against this database: {safety.reason}")


@pytest.fixture(autouse=True)
async def cleanup_db() -> None:
    # Dispose pooled connections between tests to avoid cross-event-loop asyncpg reuse.
    await engine.dispose()

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:  # pragma: no cover - environment-dependent
        pytest.skip(f"Postgres is required for integration tests: {exc}")

    async with engine.begin() as conn:
        await conn.execute(text(TRUNCATE_SQL))

    yield

    await engine.dispose()
