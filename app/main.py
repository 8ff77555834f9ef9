from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from app.api.routes.health import router as health_router
from app.api.routes.referrals import router as referrals_router
from app.core.config import get_settings
from app.core.logging import configure_logging
from app.db.session import SessionLocal, dispose_engine
from app.economy.referrals.service import ReferralEngine, build_referral_engine


def create_app(engine: ReferralEngine | None = None) -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        referral_engine = engine or build_referral_engine(settings, SessionLocal)
        app.state.referral_engine = referral_engine
        await referral_engine.start()
        try:
            yield
        finally:
            await referral_engine.stop()
            if engine is None:
                await dispose_engine()

    app = FastAPI(
        title="Referral Rewards Engine API",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.include_router(health_router)
    app.include_router(referrals_router)
    return app


app = create_app()


def run() -> None:
    settings = get_settings()
    uvicorn.run(
        "app.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.app_env == "dev",
    )


if __name__ == "__main__":
    run()
