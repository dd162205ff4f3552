"""InstallationDAO — installations table operations."""

import uuid
from datetime import datetime

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gitpulse.dao.base import BaseDAO
from gitpulse.models.installation import Installation


class InstallationDAO(BaseDAO[Installation]):
    model = Installation

    # ── read ──────────────────────────────────────────────────────────────

    async def list_for_user(self, session: AsyncSession, user_id: str) -> list[Installation]:
        """All installations owned by *user_id*, oldest first."""
        stmt = (
            select(Installation)
            .where(Installation.user_id == user_id)
            .order_by(Installation.created_at)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def list_active(self, session: AsyncSession) -> list[Installation]:
        stmt = (
            select(Installation)
            .where(Installation.status == "active")
            .order_by(Installation.created_at)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def list_stale(
        self, session: AsyncSession, before: datetime, limit: int = 50
    ) -> list[Installation]:
        """Active installations never synced, or last synced before *before*.

        Never-synced rows come first.
        """
        stmt = (
            select(Installation)
            .where(
                Installation.status == "active",
                or_(
                    Installation.last_synced_at.is_(None),
                    Installation.last_synced_at < before,
                ),
            )
            .order_by(Installation.last_synced_at.asc().nulls_first())
            .limit(limit)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    # ── write ─────────────────────────────────────────────────────────────

    async def record_rate_limit(
        self,
        session: AsyncSession,
        pk: uuid.UUID,
        remaining: int | None,
        reset: datetime | None,
    ) -> None:
        """Store the latest quota observation. Unknown values leave the row as-is."""
        values: dict = {}
        if remaining is not None:
            values["rate_limit_remaining"] = remaining
        if reset is not None:
            values["rate_limit_reset"] = reset
        if not values:
            return
        stmt = update(Installation).where(Installation.id == pk).values(**values)
        await session.execute(stmt)

    async def set_sync_state(self, session: AsyncSession, pk: uuid.UUID, **values) -> None:
        """Write sync bookkeeping columns (sync_status, last_synced_at, ...)."""
        self._require_pk(pk)
        self._check_columns(values)
        stmt = update(Installation).where(Installation.id == pk).values(**values)
        await session.execute(stmt)

    async def increment_recovery_attempts(
        self, session: AsyncSession, pk: uuid.UUID, now: datetime
    ) -> int:
        """Bump the recovery counter atomically and return the new value."""
        stmt = (
            update(Installation)
            .where(Installation.id == pk)
            .values(
                recovery_attempts=Installation.recovery_attempts + 1,
                last_recovery_at=now,
            )
            .returning(Installation.recovery_attempts)
        )
        result = await session.execute(stmt)
        return result.scalar_one()
