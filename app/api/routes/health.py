from __future__ import annotations

import asyncio
from typing import Any

import structlog
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from sqlalchemy import text

from app.core.config import get_settings
from app.db.session import SessionLocal
from app.workers.celery_app import celery_app

router = APIRouter(tags=["health"])
logger = structlog.get_logger(__name__)


def _ok_check(extra: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"status": "ok"}
    if extra:
        payload.update(extra)
    return payload


def _failed_check(error: str) -> dict[str, str]:
    return {"status": "failed", "error": error}


async def _check_database() -> dict[str, Any]:
    try:
        async with SessionLocal() as session:
            await session.execute(text("SELECT 1"))
    except Exception:
        logger.warning("health_database_check_failed", exc_info=True)
        return _failed_check("database_unavailable")
    return _ok_check()


async def _check_broker() -> dict[str, Any]:
    redis_client = Redis.from_url(get_settings().celery_broker_url)
    try:
        pong = await redis_client.ping()
    except Exception:
        logger.warning("health_broker_check_failed", exc_info=True)
        return _failed_check("broker_unavailable")
    finally:
        await redis_client.aclose()
    if pong is not True:
        return _failed_check("broker_unavailable")
    return _ok_check()


def _check_celery_worker_sync() -> dict[str, Any]:
    try:
        inspector = celery_app.control.inspect(timeout=1.0)
        replies = inspector.ping() or {}
    except Exception:
        logger.warning("health_celery_check_failed", exc_info=True)
        return _failed_check("celery_unavailable")
    if not replies:
        return _failed_check("celery_no_workers")
    return _ok_check({"workers": len(replies)})


async def _check_celery_worker() -> dict[str, Any]:
    return await asyncio.to_thread(_check_celery_worker_sync)


def _check_notification_queue(request: Request) -> dict[str, Any]:
    engine = getattr(request.app.state, "referral_engine", None)
    if engine is None:
        return _failed_check("referral_engine_not_started")
    return _ok_check(
        {
            "pending": engine.dispatcher.pending,
            "dropped_total": engine.dispatcher.dropped_total,
        }
    )


def _all_checks_ok(checks: dict[str, dict[str, Any]]) -> bool:
    return all(check.get("status") == "ok" for check in checks.values())


@router.get("/live")
async def live() -> dict[str, str]:
    return {"status": "live"}


@router.get("/health")
async def health(request: Request) -> JSONResponse:
    database, broker, celery = await asyncio.gather(
        _check_database(),
        _check_broker(),
        _check_celery_worker(),
    )
    checks = {
        "database": database,
        "broker": broker,
        "celery": celery,
        "notifications": _check_notification_queue(request),
    }
    is_healthy = _all_checks_ok(checks)
    return JSONResponse(
        status_code=status.HTTP_200_OK if is_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ok" if is_healthy else "degraded", "checks": checks},
    )


@router.get("/ready")
async def ready() -> JSONResponse:
    database, broker = await asyncio.gather(_check_database(), _check_broker())
    checks = {"database": database, "broker": broker}
    is_ready = _all_checks_ok(checks)
    return JSONResponse(
        status_code=status.HTTP_200_OK if is_ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if is_ready else "not_ready", "checks": checks},
    )
