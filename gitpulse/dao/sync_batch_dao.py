"""SyncBatchDAO — sync_batches table operations."""

import uuid
from datetime import datetime

from sqlalchemy import select, text, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from gitpulse.dao.base import BaseDAO
from gitpulse.models.sync_batch import SyncBatch


class SyncBatchDAO(BaseDAO[SyncBatch]):
    model = SyncBatch

    # ── read ──────────────────────────────────────────────────────────────

    async def get_running(
        self, session: AsyncSession, installation_id: uuid.UUID
    ) -> SyncBatch | None:
        stmt = select(SyncBatch).where(
            SyncBatch.installation_id == installation_id,
            SyncBatch.status == "running",
        )
        result = await session.execute(stmt)
        return result.scalars().first()

    async def get_latest(
        self, session: AsyncSession, installation_id: uuid.UUID
    ) -> SyncBatch | None:
        stmt = (
            select(SyncBatch)
            .where(SyncBatch.installation_id == installation_id)
            .order_by(SyncBatch.created_at.desc())
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalars().first()

    # ── write ─────────────────────────────────────────────────────────────

    async def create_running(
        self,
        session: AsyncSession,
        installation_id: uuid.UUID,
        trigger: str,
        total_repos: int,
    ) -> SyncBatch | None:
        """Insert a running batch, or return None if one is already running.

        Backed by the partial unique index on running batches, so two
        concurrent callers can never both succeed.
        """
        stmt = (
            insert(SyncBatch)
            .values(
                installation_id=installation_id,
                trigger=trigger,
                status="running",
                total_repos=total_repos,
            )
            .on_conflict_do_nothing(
                index_elements=[SyncBatch.installation_id],
                index_where=text("status = 'running'"),
            )
            .returning(SyncBatch.id)
        )
        result = await session.execute(stmt)
        batch_id = result.scalar_one_or_none()
        if batch_id is None:
            return None
        return await self.get_by_id(session, batch_id)

    async def record_job_outcome(
        self,
        session: AsyncSession,
        pk: uuid.UUID,
        *,
        completed: int = 0,
        failed: int = 0,
    ) -> SyncBatch | None:
        """Atomically add to the per-repo counters of a running batch."""
        stmt = (
            update(SyncBatch)
            .where(SyncBatch.id == pk, SyncBatch.status == "running")
            .values(
                completed_repos=SyncBatch.completed_repos + completed,
                failed_repos=SyncBatch.failed_repos + failed,
            )
            .returning(SyncBatch)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        row = result.scalars().first()
        if row is not None:
            await session.refresh(row)
        return row

    async def add_events(self, session: AsyncSession, pk: uuid.UUID, count: int) -> None:
        if count <= 0:
            return
        stmt = (
            update(SyncBatch)
            .where(SyncBatch.id == pk)
            .values(events_ingested=SyncBatch.events_ingested + count)
        )
        await session.execute(stmt)

    async def finish(
        self, session: AsyncSession, pk: uuid.UUID, status: str, now: datetime
    ) -> SyncBatch | None:
        """Move a running batch whose repos are all accounted for to *status*."""
        return await self.compare_and_set(
            session,
            pk,
            SyncBatch.status == "running",
            SyncBatch.completed_repos + SyncBatch.failed_repos == SyncBatch.total_repos,
            status=status,
            completed_at=now,
        )

    async def abort(self, session: AsyncSession, pk: uuid.UUID, now: datetime) -> SyncBatch | None:
        """Fail a running batch, counting every unfinished repo as failed."""
        return await self.compare_and_set(
            session,
            pk,
            SyncBatch.status == "running",
            status="failed",
            failed_repos=SyncBatch.total_repos - SyncBatch.completed_repos,
            completed_at=now,
        )
