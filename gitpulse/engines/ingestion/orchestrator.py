"""IngestionJobOrchestrator — job-per-repository batch state machine.

A sync batch covers every selected repository of one installation. Each
repository gets its own ingestion job; exactly one job of a batch is active
(running or blocked) at a time and carries the rest of the queue in
``repos_remaining``. Jobs page through the GitHub timeline, persisting the
cursor after every page, so a blocked or orphaned job resumes where it
stopped.

Job lifecycle::

    pending ──claim──▶ running ──page──▶ running ──last page──▶ completed
                        │  ▲                │
               budget / │  │ resume sweep   └── permanent error ──▶ failed
           rate limit / ▼  │
             transient  blocked

Every transition is a compare-and-swap on the current status, so two
workers racing for the same job cannot both win.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from functools import partial

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gitpulse.core.database import utcnow
from gitpulse.dao.installation_dao import InstallationDAO
from gitpulse.dao.ingestion_job_dao import IngestionJobDAO
from gitpulse.dao.sync_batch_dao import SyncBatchDAO
from gitpulse.engines.canonical.canonicalizer import canonicalize
from gitpulse.engines.github.errors import GitHubAuthError
from gitpulse.engines.github.models import TimelinePage
from gitpulse.engines.ingestion.models import (
    JobOutcome,
    OrchestratorConfig,
    PageStats,
    TimelineClient,
)
from gitpulse.engines.rate_limit.adaptive_limiter import (
    AdaptiveRateLimiter,
    RateLimiterRegistry,
    is_rate_limit_error,
    retry_after_seconds,
)
from gitpulse.engines.rate_limit.errors import CircuitOpenError, TokenUnavailableError
from gitpulse.models.ingestion_job import IngestionJob
from gitpulse.models.installation import Installation
from gitpulse.models.sync_batch import SyncBatch
from gitpulse.services import ConflictError, ValidationError
from gitpulse.services.canonical_fact_service import CanonicalFactService

log = structlog.get_logger("gitpulse.ingestion")

SessionFactory = async_sessionmaker[AsyncSession]


class IngestionJobOrchestrator:
    """Creates batches and drives their jobs through the lifecycle."""

    def __init__(
        self,
        installation_dao: InstallationDAO,
        batch_dao: SyncBatchDAO,
        job_dao: IngestionJobDAO,
        fact_service: CanonicalFactService,
        config: OrchestratorConfig | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._installation_dao = installation_dao
        self._batch_dao = batch_dao
        self._job_dao = job_dao
        self._fact_service = fact_service
        self._config = config or OrchestratorConfig()
        self._clock = clock

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    # ── public ────────────────────────────────────────────────────────────

    async def create_batch(
        self,
        session: AsyncSession,
        installation: Installation,
        trigger: str,
        repos: list[str],
        *,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> tuple[SyncBatch, IngestionJob]:
        """Create a running batch with one job per repository.

        The first job starts out running; the rest wait as pending. Raises
        :class:`ConflictError` when the installation already has a running
        batch.
        """
        queue = list(dict.fromkeys(r for r in repos if r))
        if not queue:
            raise ValidationError("no repositories to sync")

        batch = await self._batch_dao.create_running(
            session, installation.id, trigger, len(queue)
        )
        if batch is None:
            raise ConflictError("already_syncing")

        now = self._clock()
        rows = []
        for i, repo in enumerate(queue):
            row = {
                "batch_id": batch.id,
                "installation_id": installation.id,
                "repo_full_name": repo,
                "since": since,
                "until": until,
                "status": "pending",
            }
            if i == 0:
                row.update(status="running", repos_remaining=queue[1:], started_at=now)
            rows.append(row)
        jobs = await self._job_dao.bulk_create(session, rows)

        log.info(
            "ingestion.batch_created",
            installation_id=str(installation.id),
            batch_id=str(batch.id),
            trigger=trigger,
            total_repos=len(queue),
        )
        return batch, jobs[0]

    async def run_job(
        self,
        session_factory: SessionFactory,
        job_id: uuid.UUID,
        client: TimelineClient,
        limiter: AdaptiveRateLimiter,
    ) -> JobOutcome:
        """Page through one repository until it finishes, blocks, or fails.

        Only a running job is worked on; any other status is returned as-is.
        """
        outcome = JobOutcome(job_id=job_id)
        async with session_factory() as session:
            async with session.begin():
                job = await self._job_dao.get_by_id(session, job_id)
        if job is None:
            outcome.status = "missing"
            outcome.error = "job not found"
            return outcome
        if job.status != "running":
            outcome.status = job.status
            return outcome

        cursor = job.cursor
        processed = job.items_processed
        ingested = job.events_ingested
        total = job.total_count
        progress = job.progress
        remaining = job.rate_limit_remaining
        reset = job.rate_limit_reset

        while True:
            now = self._clock()

            async with session_factory() as session:
                async with session.begin():
                    installation = await self._installation_dao.get_by_id(
                        session, job.installation_id
                    )
            if installation is None or installation.status != "active":
                reason = (
                    "installation removed"
                    if installation is None
                    else f"installation {installation.status}"
                )
                return await self._cancel(session_factory, job, outcome, reason, installation)

            # The budget is shared by the installation; a freshly promoted job has no reading yet.
            if remaining is None:
                remaining = installation.rate_limit_remaining
                reset = installation.rate_limit_reset

            if (
                remaining is not None
                and remaining < self._config.min_budget
                and (reset is None or reset > now)
            ):
                until = reset or now + self._config.blocked_delay
                return await self._block(
                    session_factory, job, outcome, until, "rate limit budget exhausted"
                )

            fetch = partial(
                client.fetch_timeline_page,
                job.repo_full_name,
                since=job.since,
                until=job.until,
                cursor=cursor,
            )
            try:
                page = await limiter.execute(fetch)
            except CircuitOpenError as exc:
                return await self._block(
                    session_factory,
                    job,
                    outcome,
                    now + timedelta(seconds=exc.wait_seconds),
                    str(exc),
                    rate_limited=True,
                )
            except TokenUnavailableError as exc:
                return await self._block(
                    session_factory,
                    job,
                    outcome,
                    now + timedelta(milliseconds=exc.wait_ms),
                    str(exc),
                )
            except Exception as exc:
                return await self._on_fetch_error(session_factory, job, outcome, exc, now)

            processed += len(page.items)
            total = page.total_count or total
            if total:
                progress = min(99, processed * 100 // total)
            if page.rate_limit.remaining is not None:
                remaining = page.rate_limit.remaining
            if page.rate_limit.reset is not None:
                reset = page.rate_limit.reset
            next_cursor = page.cursor if page.has_next_page else None

            stats = await self._persist_page(
                session_factory,
                job,
                page,
                cursor=next_cursor,
                items_processed=processed,
                events_ingested=ingested,
                total_count=total,
                progress=progress,
                rate_limit_remaining=remaining,
                rate_limit_reset=reset,
            )
            ingested += stats.inserted
            outcome.pages += 1
            outcome.events_ingested += stats.inserted
            outcome.duplicates += stats.duplicates
            outcome.skipped += stats.skipped
            outcome.item_errors += stats.errors

            log.info(
                "ingestion.page",
                job_id=str(job.id),
                repo=job.repo_full_name,
                items=len(page.items),
                inserted=stats.inserted,
                duplicates=stats.duplicates,
                errors=stats.errors,
                progress=progress,
                rate_limit_remaining=remaining,
            )

            if next_cursor is None:
                return await self._finish(session_factory, job, outcome, "completed")
            cursor = next_cursor

    async def run_batch(
        self,
        session_factory: SessionFactory,
        job_id: uuid.UUID,
        client: TimelineClient,
        limiter: AdaptiveRateLimiter,
    ) -> list[JobOutcome]:
        """Run jobs of one batch in sequence until one blocks or the batch ends."""
        outcomes: list[JobOutcome] = []
        current: uuid.UUID | None = job_id
        while current is not None:
            try:
                outcome = await self.run_job(session_factory, current, client, limiter)
            except Exception as exc:
                # Left running: the resume sweep reclaims it once its heartbeat is stale.
                log.exception("ingestion.job_crashed", job_id=str(current))
                outcomes.append(JobOutcome(job_id=current, status="running", error=str(exc)))
                break
            outcomes.append(outcome)
            current = outcome.next_job_id
        return outcomes

    async def resume_due_jobs(
        self,
        session_factory: SessionFactory,
        client: TimelineClient,
        limiters: RateLimiterRegistry,
        now: datetime | None = None,
    ) -> int:
        """Claim blocked jobs that are due and orphaned running jobs, then run them.

        Returns the number of jobs claimed.
        """
        now = now or self._clock()
        stale_before = now - self._config.stale_after

        async with session_factory() as session:
            async with session.begin():
                due = await self._job_dao.list_resumable(
                    session, now, stale_before, limit=self._config.resume_limit
                )

        claimed: list[IngestionJob] = []
        for job in due:
            orphaned = job.status == "running"
            last_heartbeat = job.updated_at
            async with session_factory() as session:
                async with session.begin():
                    if not orphaned:
                        got = await self._job_dao.claim_blocked(session, job.id, now)
                    else:
                        got = await self._job_dao.claim_stale(session, job.id, stale_before)
            if got is None:
                continue
            if orphaned:
                log.warning(
                    "ingestion.orphan_reclaimed",
                    job_id=str(job.id),
                    repo=job.repo_full_name,
                    last_heartbeat=last_heartbeat.isoformat() if last_heartbeat else None,
                )
            claimed.append(got)

        if not claimed:
            return 0

        sem = asyncio.Semaphore(self._config.max_concurrency)

        async def _run_one(job: IngestionJob) -> None:
            async with sem:
                await self.run_batch(
                    session_factory, job.id, client, limiters.get(job.installation_id)
                )

        await asyncio.gather(*(_run_one(job) for job in claimed))
        log.info("ingestion.resumed", count=len(claimed))
        return len(claimed)

    # ── internal ──────────────────────────────────────────────────────────

    async def _persist_page(
        self,
        session_factory: SessionFactory,
        job: IngestionJob,
        page: TimelinePage,
        **progress,
    ) -> PageStats:
        """Persist items and the job's new resumption point in one transaction.

        Each item gets its own savepoint, so one bad item never aborts the page.
        """
        stats = PageStats()
        async with session_factory() as session:
            async with session.begin():
                for item in page.items:
                    try:
                        event = canonicalize("timeline", item, repo_full_name=job.repo_full_name)
                        if event is None:
                            stats.skipped += 1
                            continue
                        async with session.begin_nested():
                            result = await self._fact_service.persist_canonical_event(
                                session, event
                            )
                    except Exception:
                        stats.errors += 1
                        log.warning(
                            "ingestion.item_failed",
                            job_id=str(job.id),
                            item_id=item.get("id") if isinstance(item, dict) else None,
                            exc_info=True,
                        )
                        continue
                    if result.status == "inserted":
                        stats.inserted += 1
                    elif result.status == "duplicate":
                        stats.duplicates += 1
                    else:
                        stats.skipped += 1

                progress["events_ingested"] += stats.inserted
                await self._job_dao.save_progress(session, job.id, **progress)
                await self._installation_dao.record_rate_limit(
                    session,
                    job.installation_id,
                    progress.get("rate_limit_remaining"),
                    progress.get("rate_limit_reset"),
                )
                await self._batch_dao.add_events(session, job.batch_id, stats.inserted)
        return stats

    async def _on_fetch_error(
        self,
        session_factory: SessionFactory,
        job: IngestionJob,
        outcome: JobOutcome,
        exc: Exception,
        now: datetime,
    ) -> JobOutcome:
        if is_rate_limit_error(exc):
            until = getattr(exc, "reset_at", None)
            if until is None or until <= now:
                wait = retry_after_seconds(exc, now)
                until = now + (timedelta(seconds=wait) if wait else self._config.blocked_delay)
            return await self._block(
                session_factory, job, outcome, until, str(exc), rate_limited=True
            )

        if isinstance(exc, GitHubAuthError):
            message = f"GitHub authentication failed ({exc.status_code}): {exc}"
            return await self._finish(session_factory, job, outcome, "failed", message)

        if getattr(exc, "permanent", False):
            status_code = getattr(exc, "status_code", None)
            message = f"repository unavailable ({status_code}): {exc}"
            return await self._finish(session_factory, job, outcome, "failed", message)

        # Transient: keep the cursor and retry after the default delay.
        return await self._block(
            session_factory, job, outcome, now + self._config.blocked_delay, str(exc)
        )

    async def _block(
        self,
        session_factory: SessionFactory,
        job: IngestionJob,
        outcome: JobOutcome,
        until: datetime,
        message: str,
        *,
        rate_limited: bool = False,
    ) -> JobOutcome:
        async with session_factory() as session:
            async with session.begin():
                blocked = await self._job_dao.mark_blocked(session, job.id, until, message)
                if rate_limited:
                    await self._installation_dao.record_rate_limit(
                        session, job.installation_id, 0, until
                    )
        outcome.status = "blocked" if blocked is not None else outcome.status
        outcome.blocked_until = until
        outcome.error = message
        log.warning(
            "ingestion.job_blocked",
            job_id=str(job.id),
            repo=job.repo_full_name,
            blocked_until=until.isoformat(),
            reason=message,
        )
        return outcome

    async def _finish(
        self,
        session_factory: SessionFactory,
        job: IngestionJob,
        outcome: JobOutcome,
        status: str,
        error_message: str | None = None,
    ) -> JobOutcome:
        """Finish a job, count it on the batch, and hand the queue to the next job."""
        now = self._clock()
        async with session_factory() as session:
            async with session.begin():
                finished = await self._job_dao.mark_finished(
                    session, job.id, status, now, error_message
                )
                if finished is None:
                    current = await self._job_dao.get_by_id(session, job.id)
                    outcome.status = current.status if current is not None else "missing"
                    return outcome

                batch = await self._batch_dao.record_job_outcome(
                    session,
                    job.batch_id,
                    completed=1 if status == "completed" else 0,
                    failed=1 if status == "failed" else 0,
                )
                next_job = await self._promote_next(session, finished, now)
                if (
                    next_job is None
                    and batch is not None
                    and batch.completed_repos + batch.failed_repos >= batch.total_repos
                ):
                    outcome.batch_status = await self._close_batch(
                        session, batch, now, error_message
                    )

        outcome.status = status
        outcome.error = error_message
        outcome.next_job_id = next_job.id if next_job is not None else None
        log_fn = log.info if status == "completed" else log.warning
        log_fn(
            "ingestion.job_finished",
            job_id=str(job.id),
            repo=job.repo_full_name,
            status=status,
            error=error_message,
            next_job_id=str(outcome.next_job_id) if outcome.next_job_id else None,
        )
        return outcome

    async def _promote_next(
        self, session: AsyncSession, finished: IngestionJob, now: datetime
    ) -> IngestionJob | None:
        """Move the next pending job of the batch to running, following the queue order."""
        pending = await self._job_dao.list_pending(session, finished.batch_id)
        if not pending:
            return None
        by_repo = {j.repo_full_name: j for j in pending}
        queued = [r for r in (finished.repos_remaining or []) if r in by_repo]
        queue = queued + [j.repo_full_name for j in pending if j.repo_full_name not in queued]
        for i, repo in enumerate(queue):
            claimed = await self._job_dao.claim_pending(
                session, by_repo[repo].id, queue[i + 1 :], now
            )
            if claimed is not None:
                return claimed
        return None

    async def _close_batch(
        self,
        session: AsyncSession,
        batch: SyncBatch,
        now: datetime,
        last_error: str | None,
    ) -> str | None:
        # A batch fails only if no repository made it; partial failure still completes.
        status = "failed" if batch.completed_repos == 0 and batch.failed_repos > 0 else "completed"
        closed = await self._batch_dao.finish(session, batch.id, status, now)
        if closed is None:
            return None

        if status == "completed":
            await self._installation_dao.set_sync_state(
                session,
                batch.installation_id,
                sync_status="idle",
                last_synced_at=now,
                last_sync_error=None,
                recovery_attempts=0,
            )
        else:
            await self._installation_dao.set_sync_state(
                session,
                batch.installation_id,
                sync_status="error",
                last_sync_error=last_error or "sync failed",
            )
        log.info(
            "ingestion.batch_finished",
            batch_id=str(batch.id),
            installation_id=str(batch.installation_id),
            status=status,
            completed_repos=closed.completed_repos,
            failed_repos=closed.failed_repos,
            events_ingested=closed.events_ingested,
        )
        return status

    async def _cancel(
        self,
        session_factory: SessionFactory,
        job: IngestionJob,
        outcome: JobOutcome,
        reason: str,
        installation: Installation | None,
    ) -> JobOutcome:
        """Fail the job, every pending job, and the batch of a deactivated installation."""
        now = self._clock()
        async with session_factory() as session:
            async with session.begin():
                await self._job_dao.mark_finished(session, job.id, "failed", now, reason)
                skipped = await self._job_dao.fail_pending(session, job.batch_id, reason, now)
                await self._batch_dao.abort(session, job.batch_id, now)
                if installation is not None:
                    await self._installation_dao.set_sync_state(
                        session, installation.id, sync_status="idle"
                    )
        outcome.status = "failed"
        outcome.error = reason
        outcome.batch_status = "failed"
        log.warning(
            "ingestion.batch_cancelled",
            job_id=str(job.id),
            batch_id=str(job.batch_id),
            reason=reason,
            pending_failed=skipped,
        )
        return outcome
