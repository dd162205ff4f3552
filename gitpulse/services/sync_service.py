"""SyncService — the sync request command (manual, cron, webhook, maintenance, recovery)."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gitpulse.core.database import utcnow
from gitpulse.dao.ingestion_job_dao import IngestionJobDAO
from gitpulse.dao.installation_dao import InstallationDAO
from gitpulse.dao.sync_batch_dao import SyncBatchDAO
from gitpulse.engines.ingestion.orchestrator import IngestionJobOrchestrator
from gitpulse.engines.sync_policy.policy import (
    DEFAULT_POLICY,
    TRIGGERS,
    InstallationState,
    SyncPolicyConfig,
    SyncTrigger,
    calculate_sync_since,
    evaluate,
    reason_to_user_message,
)
from gitpulse.models.installation import Installation
from gitpulse.services import ConflictError, NotFoundError, ValidationError

log = structlog.get_logger("gitpulse.services")


@dataclass
class SyncRequestResult:
    started: bool
    message: str
    reason: str
    batch_id: uuid.UUID | None = None
    job_id: uuid.UUID | None = None
    installation_id: uuid.UUID | None = None
    cooldown_ms: int | None = None
    blocked_until: datetime | None = None


class SyncService:
    """Decides whether a sync may start and, if so, creates its batch.

    The running batch itself is driven elsewhere (request handler background
    task or scheduler) once this transaction has committed.
    """

    def __init__(
        self,
        installation_dao: InstallationDAO,
        batch_dao: SyncBatchDAO,
        job_dao: IngestionJobDAO,
        orchestrator: IngestionJobOrchestrator,
        policy: SyncPolicyConfig = DEFAULT_POLICY,
    ) -> None:
        self._installation_dao = installation_dao
        self._batch_dao = batch_dao
        self._job_dao = job_dao
        self._orchestrator = orchestrator
        self._policy = policy

    async def installation_state(
        self, session: AsyncSession, installation: Installation
    ) -> InstallationState:
        """Snapshot the inputs of the sync policy for *installation*."""
        active_jobs = await self._job_dao.list_active(session, installation.id)
        running_batch = await self._batch_dao.get_running(session, installation.id)
        return InstallationState(
            has_active_job=bool(active_jobs) or running_batch is not None,
            has_user=bool(installation.user_id),
            repository_count=len(installation.repositories or []),
            last_synced_at=installation.last_synced_at,
            last_manual_sync_at=installation.last_manual_sync_at,
            rate_limit_remaining=installation.rate_limit_remaining,
            rate_limit_reset=installation.rate_limit_reset,
        )

    async def request(
        self,
        session: AsyncSession,
        installation_id: uuid.UUID,
        trigger: SyncTrigger,
        now: datetime | None = None,
    ) -> SyncRequestResult:
        """Evaluate the policy for *trigger* and start a batch when allowed.

        Raises :class:`NotFoundError` for an unknown installation and
        :class:`ValidationError` for an unknown trigger or an inactive
        installation.
        """
        if trigger not in TRIGGERS:
            raise ValidationError(f"unknown sync trigger: {trigger}")
        now = now or utcnow()

        installation = await self._installation_dao.get_by_id(session, installation_id)
        if installation is None:
            raise NotFoundError("installation not found")
        if installation.status != "active":
            raise ValidationError(f"installation is {installation.status}")

        state = await self.installation_state(session, installation)
        decision = evaluate(state, trigger, now, self._policy)
        message = reason_to_user_message(decision.reason, decision.metadata)

        if decision.action == "skip":
            log.info(
                "sync.request_skipped",
                installation_id=str(installation_id),
                trigger=trigger,
                reason=decision.reason,
            )
            return SyncRequestResult(
                started=False,
                message=message,
                reason=decision.reason,
                installation_id=installation_id,
                cooldown_ms=decision.cooldown_ms,
            )

        if decision.action == "block":
            await self._installation_dao.set_sync_state(
                session,
                installation_id,
                last_sync_error=(
                    f"rate limit: {decision.metadata.get('available_budget')} requests left, "
                    f"{decision.metadata.get('required_budget')} required"
                ),
            )
            log.warning(
                "sync.request_blocked",
                installation_id=str(installation_id),
                trigger=trigger,
                blocked_until=decision.blocked_until.isoformat() if decision.blocked_until else None,
            )
            return SyncRequestResult(
                started=False,
                message=message,
                reason=decision.reason,
                installation_id=installation_id,
                blocked_until=decision.blocked_until,
            )

        since = calculate_sync_since(installation.last_synced_at, now)
        try:
            async with session.begin_nested():
                batch, job = await self._orchestrator.create_batch(
                    session,
                    installation,
                    trigger,
                    list(installation.repositories),
                    since=since,
                )
        except (ConflictError, IntegrityError):
            log.info(
                "sync.request_skipped",
                installation_id=str(installation_id),
                trigger=trigger,
                reason="already_syncing",
            )
            return SyncRequestResult(
                started=False,
                message=reason_to_user_message("already_syncing"),
                reason="already_syncing",
                installation_id=installation_id,
            )

        values: dict = {"sync_status": "syncing", "last_sync_error": None}
        if trigger == "manual":
            values["last_manual_sync_at"] = now
        await self._installation_dao.set_sync_state(session, installation_id, **values)
        if trigger == "recovery":
            attempts = await self._installation_dao.increment_recovery_attempts(
                session, installation_id, now
            )
            log.info("sync.recovery_attempt", installation_id=str(installation_id), attempts=attempts)

        log.info(
            "sync.request_started",
            installation_id=str(installation_id),
            trigger=trigger,
            batch_id=str(batch.id),
            job_id=str(job.id),
            since=since.isoformat(),
        )
        return SyncRequestResult(
            started=True,
            message=message,
            reason=decision.reason,
            batch_id=batch.id,
            job_id=job.id,
            installation_id=installation_id,
        )

    async def request_manual_sync(
        self,
        session: AsyncSession,
        installation_id: uuid.UUID,
        now: datetime | None = None,
    ) -> SyncRequestResult:
        """User-initiated sync. Repeated calls never start a second batch."""
        return await self.request(session, installation_id, "manual", now)

    async def list_due_for_catch_up(
        self, session: AsyncSession, stale_before: datetime, limit: int = 50
    ) -> list[Installation]:
        return await self._installation_dao.list_stale(session, stale_before, limit)

    async def list_active(self, session: AsyncSession) -> list[Installation]:
        return await self._installation_dao.list_active(session)
