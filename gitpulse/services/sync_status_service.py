"""SyncStatusService — read-side projection of an installation's sync state."""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from gitpulse.core.database import utcnow
from gitpulse.dao.ingestion_job_dao import IngestionJobDAO
from gitpulse.dao.installation_dao import InstallationDAO
from gitpulse.dao.sync_batch_dao import SyncBatchDAO
from gitpulse.engines.sync_policy.policy import (
    DEFAULT_POLICY,
    InstallationState,
    SyncPolicyConfig,
    evaluate,
)
from gitpulse.models.installation import Installation
from gitpulse.services import NotFoundError

RATE_LIMIT_MESSAGE = "GitHub API rate limit reached. Sync will resume automatically."
AUTH_MESSAGE = "GitHub authentication failed. Please reconnect your account."
NETWORK_MESSAGE = "Connection to GitHub failed. Please try again."
GENERIC_MESSAGE = "Sync encountered an error. Please try again."

NEEDS_ATTENTION_AFTER = 3

_RATE_LIMIT_RE = re.compile(r"rate.?limit|\b429\b|secondary limit|abuse", re.IGNORECASE)
_AUTH_RE = re.compile(
    r"auth|\b401\b|bad credentials|token (?:expired|revoked|invalid)|permission", re.IGNORECASE
)
_NETWORK_RE = re.compile(
    r"timeout|timed out|network|connect|econnreset|dns|unreachable|\b50[234]\b", re.IGNORECASE
)


def normalize_error_message(raw: str | None) -> str | None:
    """Map a stored error to one of four fixed, user-safe messages."""
    if not raw:
        return None
    if _RATE_LIMIT_RE.search(raw):
        return RATE_LIMIT_MESSAGE
    if _AUTH_RE.search(raw):
        return AUTH_MESSAGE
    if _NETWORK_RE.search(raw):
        return NETWORK_MESSAGE
    return GENERIC_MESSAGE


def cached_sync_status(state: str) -> str:
    """Collapse a projected state into the installations.sync_status vocabulary."""
    if state in ("syncing", "blocked", "recovering"):
        return "syncing"
    if state == "error":
        return "error"
    return "idle"


@dataclass
class SyncStatus:
    installation_id: uuid.UUID
    account_login: str
    state: str  # idle | syncing | blocked | recovering | error
    can_sync_now: bool
    cooldown_ms: int | None = None
    blocked_until: datetime | None = None
    active_job_progress: int | None = None
    active_repo: str | None = None
    last_synced_at: datetime | None = None
    last_sync_error: str | None = None
    batch_total: int | None = None
    batch_completed: int | None = None
    batch_failed: int | None = None
    events_ingested: int | None = None
    needs_attention: bool = False


class SyncStatusService:
    """Derives the externally visible sync status from jobs, batches and policy.

    Read-only apart from :meth:`reconcile`, which writes the derived state
    back to the cached ``installations.sync_status`` column.
    """

    def __init__(
        self,
        installation_dao: InstallationDAO,
        batch_dao: SyncBatchDAO,
        job_dao: IngestionJobDAO,
        policy: SyncPolicyConfig = DEFAULT_POLICY,
    ) -> None:
        self._installation_dao = installation_dao
        self._batch_dao = batch_dao
        self._job_dao = job_dao
        self._policy = policy

    async def status(
        self,
        session: AsyncSession,
        installation_id: uuid.UUID,
        now: datetime | None = None,
    ) -> SyncStatus:
        """Raises :class:`NotFoundError` if the installation does not exist."""
        installation = await self._installation_dao.get_by_id(session, installation_id)
        if installation is None:
            raise NotFoundError("installation not found")
        return await self._project(session, installation, now or utcnow())

    async def status_for_user(
        self,
        session: AsyncSession,
        user_id: str,
        now: datetime | None = None,
    ) -> list[SyncStatus]:
        now = now or utcnow()
        installations = await self._installation_dao.list_for_user(session, user_id)
        return [await self._project(session, inst, now) for inst in installations]

    async def reconcile(
        self,
        session: AsyncSession,
        installation_id: uuid.UUID,
        now: datetime | None = None,
    ) -> SyncStatus:
        """Write the derived state back to the cached sync_status column."""
        status = await self.status(session, installation_id, now)
        cached = cached_sync_status(status.state)
        installation = await self._installation_dao.get_by_id(session, installation_id)
        if installation is not None and installation.sync_status != cached:
            await self._installation_dao.set_sync_state(
                session, installation_id, sync_status=cached
            )
        return status

    # ── internal ──────────────────────────────────────────────────────────

    async def _project(
        self, session: AsyncSession, installation: Installation, now: datetime
    ) -> SyncStatus:
        active_jobs = await self._job_dao.list_active(session, installation.id)
        running_batch = await self._batch_dao.get_running(session, installation.id)
        blocked = next((j for j in active_jobs if j.status == "blocked"), None)
        running = next((j for j in active_jobs if j.status == "running"), None)

        if blocked is not None:
            state = "blocked"
        elif running is not None or running_batch is not None:
            recovering = running_batch is not None and running_batch.trigger == "recovery"
            state = "recovering" if recovering else "syncing"
        elif installation.sync_status == "error":
            state = "error"
        else:
            # a cached "syncing" without an active job is stale
            state = "idle"

        policy_state = InstallationState(
            has_active_job=bool(active_jobs) or running_batch is not None,
            has_user=bool(installation.user_id),
            repository_count=len(installation.repositories or []),
            last_synced_at=installation.last_synced_at,
            last_manual_sync_at=installation.last_manual_sync_at,
            rate_limit_remaining=installation.rate_limit_remaining,
            rate_limit_reset=installation.rate_limit_reset,
        )
        decision = evaluate(policy_state, "manual", now, self._policy)

        active = blocked or running
        raw_error = installation.last_sync_error
        if blocked is not None and blocked.error_message:
            raw_error = blocked.error_message

        batch = running_batch
        if batch is None:
            batch = await self._batch_dao.get_latest(session, installation.id)

        return SyncStatus(
            installation_id=installation.id,
            account_login=installation.account_login,
            state=state,
            can_sync_now=decision.action == "start",
            cooldown_ms=decision.cooldown_ms,
            blocked_until=blocked.blocked_until if blocked is not None else decision.blocked_until,
            active_job_progress=active.progress if active is not None else None,
            active_repo=active.repo_full_name if active is not None else None,
            last_synced_at=installation.last_synced_at,
            last_sync_error=normalize_error_message(raw_error),
            batch_total=batch.total_repos if batch is not None else None,
            batch_completed=batch.completed_repos if batch is not None else None,
            batch_failed=batch.failed_repos if batch is not None else None,
            events_ingested=batch.events_ingested if batch is not None else None,
            needs_attention=installation.recovery_attempts >= NEEDS_ATTENTION_AFTER,
        )
