from __future__ import annotations

import asyncio
import contextlib
import threading
from collections.abc import Mapping

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.repo.outbox_events_repo import OutboxEventsRepo
from app.economy.referrals.collaborators import NotificationSink, SegmentTracker
from app.economy.referrals.constants import (
    MILESTONE_SIGNALS_MAX_PENDING,
    NOTIFICATION_DELIVERY_RETRIES,
)
from app.economy.referrals.types import MilestoneReached, Notification

logger = structlog.get_logger(__name__)


class OutboxNotificationSink:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def enqueue(self, notification: Notification) -> None:
        async with self._session_factory.begin() as session:
            await OutboxEventsRepo.create(
                session,
                event_type=notification.kind,
                user_id=notification.user_id,
                payload=dict(notification.payload),
                status="PENDING",
            )


class SegmentAssignmentSink:
    def __init__(self, tracker: SegmentTracker) -> None:
        self._tracker = tracker

    async def enqueue(self, notification: Notification) -> None:
        payload = dict(notification.payload)
        segment = str(payload.pop("segment", "unknown"))
        await self._tracker.track_assignment(
            user_id=notification.user_id,
            segment=segment,
            payload=payload,
        )


class NotificationDispatcher:
    """Bounded queue between the signup path and notification sinks.

    ``enqueue`` never waits: a full queue drops the notification. Delivery
    retries follow ``retry_policy`` per kind; kinds missing from it are tried
    once. ``routes`` sends selected kinds to a dedicated sink.
    """

    def __init__(
        self,
        sink: NotificationSink,
        *,
        maxsize: int = 1000,
        routes: Mapping[str, NotificationSink] | None = None,
        retry_policy: Mapping[str, int] | None = None,
    ) -> None:
        self._sink = sink
        self._routes = dict(routes or {})
        self._retry_policy = dict(
            NOTIFICATION_DELIVERY_RETRIES if retry_policy is None else retry_policy
        )
        self._queue: asyncio.Queue[Notification] = asyncio.Queue(maxsize=max(1, int(maxsize)))
        self._worker: asyncio.Task[None] | None = None
        self.delivered_total = 0
        self.dropped_total = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def enqueue(self, notification: Notification) -> bool:
        try:
            self._queue.put_nowait(notification)
        except asyncio.QueueFull:
            self.dropped_total += 1
            logger.warning(
                "referral_notification_queue_full",
                kind=notification.kind,
                user_id=notification.user_id,
            )
            return False
        return True

    async def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    async def stop(self) -> None:
        worker = self._worker
        self._worker = None
        if worker is not None:
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker
        await self.drain()

    async def drain(self) -> int:
        delivered = 0
        while True:
            try:
                notification = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return delivered
            try:
                if await self._deliver(notification):
                    delivered += 1
            finally:
                self._queue.task_done()

    async def _run(self) -> None:
        while True:
            notification = await self._queue.get()
            try:
                await self._deliver(notification)
            finally:
                self._queue.task_done()

    async def _deliver(self, notification: Notification) -> bool:
        sink = self._routes.get(notification.kind, self._sink)
        retries = max(0, int(self._retry_policy.get(notification.kind, 0)))
        for attempt in range(1, retries + 2):
            try:
                await sink.enqueue(notification)
            except Exception as exc:
                logger.warning(
                    "referral_notification_delivery_failed",
                    kind=notification.kind,
                    user_id=notification.user_id,
                    attempt=attempt,
                    error=repr(exc),
                )
                continue
            self.delivered_total += 1
            return True

        self.dropped_total += 1
        logger.warning(
            "referral_notification_dropped",
            kind=notification.kind,
            user_id=notification.user_id,
            attempts=retries + 1,
        )
        return False


class MilestoneSignals:
    """Last unconsumed milestone per user; reading it clears it.

    At most ``max_pending`` users are held; the oldest unread signal is dropped first.
    """

    def __init__(self, *, max_pending: int = MILESTONE_SIGNALS_MAX_PENDING) -> None:
        self._max_pending = max(1, int(max_pending))
        self._pending: dict[str, MilestoneReached] = {}
        self._lock = threading.Lock()

    def publish(self, event: MilestoneReached) -> None:
        with self._lock:
            self._pending.pop(event.user_id, None)
            while len(self._pending) >= self._max_pending:
                dropped_user_id = next(iter(self._pending))
                del self._pending[dropped_user_id]
                logger.info("referral_milestone_signal_evicted", user_id=dropped_user_id)
            self._pending[event.user_id] = event

    def consume(self, user_id: str) -> MilestoneReached | None:
        with self._lock:
            return self._pending.pop(user_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)
