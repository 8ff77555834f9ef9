from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.outbox_events import OutboxEvent


class OutboxEventsRepo:
    @staticmethod
    async def create(
        session: AsyncSession,
        *,
        event_type: str,
        payload: dict[str, object],
        status: str,
        user_id: str | None = None,
    ) -> OutboxEvent:
        event = OutboxEvent(
            event_type=event_type,
            user_id=user_id,
            payload=payload,
            status=status,
        )
        session.add(event)
        await session.flush()
        return event

    @staticmethod
    async def list_for_user(
        session: AsyncSession,
        *,
        user_id: str,
        event_types: tuple[str, ...],
    ) -> list[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(
                OutboxEvent.user_id == user_id,
                OutboxEvent.event_type.in_(event_types),
            )
            .order_by(OutboxEvent.id.asc())
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())
