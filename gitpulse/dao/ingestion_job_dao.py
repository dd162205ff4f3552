"""IngestionJobDAO — ingestion_jobs table operations."""

import uuid
from datetime import datetime

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gitpulse.dao.base import BaseDAO
from gitpulse.models.ingestion_job import (
    ACTIVE_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    IngestionJob,
)


class IngestionJobDAO(BaseDAO[IngestionJob]):
    model = IngestionJob

    # ── read ──────────────────────────────────────────────────────────────

    async def list_active(
        self, session: AsyncSession, installation_id: uuid.UUID
    ) -> list[IngestionJob]:
        """Running and blocked jobs of an installation, oldest first."""
        stmt = (
            select(IngestionJob)
            .where(
                IngestionJob.installation_id == installation_id,
                IngestionJob.status.in_(ACTIVE_JOB_STATUSES),
            )
            .order_by(IngestionJob.created_at)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def list_for_batch(
        self, session: AsyncSession, batch_id: uuid.UUID
    ) -> list[IngestionJob]:
        stmt = (
            select(IngestionJob)
            .where(IngestionJob.batch_id == batch_id)
            .order_by(IngestionJob.created_at, IngestionJob.repo_full_name)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def list_pending(self, session: AsyncSession, batch_id: uuid.UUID) -> list[IngestionJob]:
        stmt = (
            select(IngestionJob)
            .where(IngestionJob.batch_id == batch_id, IngestionJob.status == "pending")
            .order_by(IngestionJob.created_at, IngestionJob.repo_full_name)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def list_resumable(
        self,
        session: AsyncSession,
        now: datetime,
        stale_before: datetime,
        limit: int = 20,
    ) -> list[IngestionJob]:
        """Blocked jobs whose wait has elapsed, plus running jobs with a stale heartbeat."""
        stmt = (
            select(IngestionJob)
            .where(
                or_(
                    and_(
                        IngestionJob.status == "blocked",
                        IngestionJob.blocked_until <= now,
                    ),
                    and_(
                        IngestionJob.status == "running",
                        IngestionJob.updated_at < stale_before,
                    ),
                )
            )
            .order_by(IngestionJob.updated_at)
            .limit(limit)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    # ── write ─────────────────────────────────────────────────────────────

    async def claim_blocked(
        self, session: AsyncSession, pk: uuid.UUID, now: datetime
    ) -> IngestionJob | None:
        """blocked → running, only once the wait is over."""
        return await self.compare_and_set(
            session,
            pk,
            IngestionJob.status == "blocked",
            IngestionJob.blocked_until <= now,
            status="running",
            blocked_until=None,
        )

    async def claim_stale(
        self, session: AsyncSession, pk: uuid.UUID, stale_before: datetime
    ) -> IngestionJob | None:
        """Take over an orphaned running job. Refreshes its heartbeat."""
        return await self.compare_and_set(
            session,
            pk,
            IngestionJob.status == "running",
            IngestionJob.updated_at < stale_before,
            status="running",
        )

    async def claim_pending(
        self,
        session: AsyncSession,
        pk: uuid.UUID,
        repos_remaining: list[str],
        now: datetime,
    ) -> IngestionJob | None:
        """pending → running, handing over the rest of the batch queue."""
        return await self.compare_and_set(
            session,
            pk,
            IngestionJob.status == "pending",
            status="running",
            repos_remaining=repos_remaining,
            started_at=now,
        )

    async def save_progress(self, session: AsyncSession, pk: uuid.UUID, **values) -> None:
        """Persist cursor and counters of a running job. Bumps the heartbeat."""
        self._check_columns(values)
        stmt = (
            update(IngestionJob)
            .where(IngestionJob.id == pk, IngestionJob.status == "running")
            .values(**values)
        )
        await session.execute(stmt)

    async def mark_blocked(
        self,
        session: AsyncSession,
        pk: uuid.UUID,
        blocked_until: datetime,
        error_message: str | None = None,
    ) -> IngestionJob | None:
        return await self.compare_and_set(
            session,
            pk,
            IngestionJob.status == "running",
            status="blocked",
            blocked_until=blocked_until,
            error_message=error_message,
        )

    async def mark_finished(
        self,
        session: AsyncSession,
        pk: uuid.UUID,
        status: str,
        now: datetime,
        error_message: str | None = None,
    ) -> IngestionJob | None:
        """running/blocked → completed/failed. None if already finished elsewhere."""
        if status not in TERMINAL_JOB_STATUSES:
            raise ValueError(f"not a terminal job status: {status!r}")
        values: dict = {
            "status": status,
            "completed_at": now,
            "blocked_until": None,
            "error_message": error_message,
        }
        if status == "completed":
            values["progress"] = 100
        return await self.compare_and_set(
            session,
            pk,
            IngestionJob.status.in_(ACTIVE_JOB_STATUSES),
            **values,
        )

    async def fail_pending(
        self, session: AsyncSession, batch_id: uuid.UUID, error_message: str, now: datetime
    ) -> int:
        """Fail every not-yet-started job of a batch. Returns the row count."""
        stmt = (
            update(IngestionJob)
            .where(IngestionJob.batch_id == batch_id, IngestionJob.status == "pending")
            .values(status="failed", error_message=error_message, completed_at=now)
        )
        result = await session.execute(stmt)
        return result.rowcount
