from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.config import Settings
from app.db.models import Base
from app.economy.referrals.service import ReferralEngine, build_referral_engine
from tests.referrals_fixtures import (
    FakeAttributionService,
    FakeBillingStore,
    FakeFraudScorer,
    RecordingAlertSender,
    RecordingSink,
)


@pytest.fixture
async def sqlite_engine() -> AsyncIterator[AsyncEngine]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Let SQLAlchemy own BEGIN so SAVEPOINTs behave on sqlite.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(sqlite_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=sqlite_engine, expire_on_commit=False)


@pytest.fixture
def referral_settings() -> Settings:
    return Settings(_env_file=None).model_copy(
        update={
            "referral_reward_retry_delay_seconds": 0.0,
            "referral_fraud_service_url": "",
            "referral_attribution_service_url": "",
        }
    )


@pytest.fixture
def fraud_scorer() -> FakeFraudScorer:
    return FakeFraudScorer()


@pytest.fixture
def attribution() -> FakeAttributionService:
    return FakeAttributionService()


@pytest.fixture
def billing_store() -> FakeBillingStore:
    return FakeBillingStore()


@pytest.fixture
def alert_sender() -> RecordingAlertSender:
    return RecordingAlertSender()


@pytest.fixture
def notification_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def referral_engine(
    referral_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    fraud_scorer: FakeFraudScorer,
    attribution: FakeAttributionService,
    billing_store: FakeBillingStore,
    alert_sender: RecordingAlertSender,
    notification_sink: RecordingSink,
) -> ReferralEngine:
    return build_referral_engine(
        referral_settings,
        session_factory,
        fraud_scorer=fraud_scorer,
        attribution=attribution,
        billing_store=billing_store,
        notification_sink=notification_sink,
        alert_sender=alert_sender,
    )
