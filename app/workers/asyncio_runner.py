from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable
from typing import TypeVar

import structlog

from app.db.session import dispose_engine

T = TypeVar("T")
logger = structlog.get_logger(__name__)


async def _run_with_fresh_db_pool(awaitable: Awaitable[T], *, job_name: str) -> T:
    # Each Celery invocation gets its own event loop; pooled asyncpg connections cannot cross loops.
    await dispose_engine()
    started_at = time.monotonic()
    with structlog.contextvars.bound_contextvars(job=job_name):
        try:
            return await awaitable
        finally:
            await dispose_engine()
            logger.info(
                "worker_job_finished",
                duration_ms=int((time.monotonic() - started_at) * 1000),
            )


def run_async_job(awaitable: Awaitable[T], *, job_name: str = "anonymous") -> T:
    return asyncio.run(_run_with_fresh_db_pool(awaitable, job_name=job_name))
