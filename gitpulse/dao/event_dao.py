"""EventDAO — events table operations."""

import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from gitpulse.dao.base import BaseDAO
from gitpulse.models.event import Event


class EventDAO(BaseDAO[Event]):
    model = Event

    async def get_by_content_hash(self, session: AsyncSession, content_hash: str) -> Event | None:
        stmt = select(Event).where(Event.content_hash == content_hash)
        result = await session.execute(stmt)
        return result.scalars().first()

    async def insert_if_absent(
        self, session: AsyncSession, values: dict[str, Any]
    ) -> uuid.UUID | None:
        """INSERT ... ON CONFLICT (content_hash) DO NOTHING.

        Returns the new id, or None when an event with the same hash exists.
        """
        stmt = (
            insert(Event)
            .values(**values)
            .on_conflict_do_nothing(constraint="uq_events_content_hash")
            .returning(Event.id)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()
