"""Scheduler — maintenance sweeps that keep every installation in sync.

Loops:
    resume     resume due blocked jobs and reclaim orphaned running ones
    catch_up   start a maintenance sync for installations not synced recently
    cron       start a periodic sync for every active installation
    reconcile  write the derived sync status back to the installation row

catch_up and cron trigger resume when they start anything, so jobs that
block right away are picked up as soon as they are due.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gitpulse.core.config import env_float, env_int
from gitpulse.core.database import utcnow
from gitpulse.engines.ingestion.models import TimelineClient
from gitpulse.engines.ingestion.orchestrator import IngestionJobOrchestrator
from gitpulse.engines.rate_limit.adaptive_limiter import RateLimiterRegistry
from gitpulse.models.installation import Installation
from gitpulse.services.sync_service import SyncService
from gitpulse.services.sync_status_service import SyncStatusService, cached_sync_status

logger = structlog.get_logger(__name__)


class EngineLoop:
    """Single sweep loop with trigger/timeout wake mechanism."""

    def __init__(
        self,
        name: str,
        run_fn: Callable[[], Awaitable[int]],
        interval: float,
        downstream: asyncio.Event | None = None,
    ) -> None:
        self.name = name
        self.run_fn = run_fn
        self.interval = interval
        self.trigger = asyncio.Event()
        self.downstream = downstream

    async def loop(self) -> None:
        """Run the sweep forever, waking on trigger or timeout."""
        while True:
            try:
                await asyncio.wait_for(self.trigger.wait(), timeout=self.interval)
                self.trigger.clear()
            except asyncio.TimeoutError:
                pass

            try:
                processed = await self.run_fn()
                logger.info("engine.cycle", engine=self.name, processed=processed)
                if processed > 0 and self.downstream is not None:
                    self.downstream.set()
            except Exception:
                logger.exception("engine.error", engine=self.name)


class Scheduler:
    """Manages lifecycle of all EngineLoop tasks."""

    def __init__(self, loops: list[EngineLoop]) -> None:
        self._loops = loops
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def loops(self) -> list[EngineLoop]:
        return list(self._loops)

    async def start(self) -> None:
        """Start all loops as asyncio tasks."""
        self._tasks = [
            asyncio.create_task(loop.loop(), name=f"engine-{loop.name}") for loop in self._loops
        ]
        # Resume first: picks up work orphaned by a previous process.
        if self._loops:
            self._loops[0].trigger.set()
        logger.info("scheduler.started", engines=[loop.name for loop in self._loops])

    async def stop(self) -> None:
        """Cancel all loops and wait for them to exit."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("scheduler.stopped")


@dataclass(frozen=True)
class SchedulerConfig:
    resume_interval: float = 60
    catch_up_interval: float = 3600
    cron_interval: float = 6 * 3600
    reconcile_interval: float = 300
    catch_up_after: timedelta = timedelta(hours=24)
    max_concurrency: int = 5

    @classmethod
    def from_env(cls) -> SchedulerConfig:
        d = cls()
        return cls(
            resume_interval=env_float("RESUME_INTERVAL", d.resume_interval),
            catch_up_interval=env_float("CATCH_UP_INTERVAL", d.catch_up_interval),
            cron_interval=env_float("CRON_INTERVAL", d.cron_interval),
            reconcile_interval=env_float("RECONCILE_INTERVAL", d.reconcile_interval),
            catch_up_after=timedelta(
                hours=env_float("CATCH_UP_AFTER_HOURS", d.catch_up_after.total_seconds() / 3600)
            ),
            max_concurrency=env_int("SWEEP_MAX_CONCURRENCY", d.max_concurrency),
        )


def create_scheduler(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    orchestrator: IngestionJobOrchestrator,
    sync_service: SyncService,
    status_service: SyncStatusService,
    github_client: TimelineClient,
    limiters: RateLimiterRegistry,
    config: SchedulerConfig | None = None,
) -> Scheduler:
    """Build a Scheduler with the sweeps wired to the resume loop."""
    config = config or SchedulerConfig.from_env()
    trigger_resume = asyncio.Event()

    async def _start_sync(installation: Installation, trigger: str) -> bool:
        try:
            async with session_factory() as session:
                async with session.begin():
                    result = await sync_service.request(session, installation.id, trigger)
        except Exception:
            logger.exception(
                "sync.sweep_request_failed", installation_id=str(installation.id), trigger=trigger
            )
            return False
        if not result.started:
            return False
        await orchestrator.run_batch(
            session_factory, result.job_id, github_client, limiters.get(installation.id)
        )
        return True

    async def _sweep(installations: list[Installation], trigger: str) -> int:
        if not installations:
            return 0
        sem = asyncio.Semaphore(config.max_concurrency)

        async def _one(inst: Installation) -> bool:
            async with sem:
                return await _start_sync(inst, trigger)

        started = await asyncio.gather(*(_one(inst) for inst in installations))
        return sum(1 for s in started if s)

    # -- Adapter functions (closures over services + session_factory) --

    async def _resume() -> int:
        return await orchestrator.resume_due_jobs(session_factory, github_client, limiters)

    async def _catch_up() -> int:
        async with session_factory() as session:
            async with session.begin():
                installations = await sync_service.list_due_for_catch_up(
                    session, utcnow() - config.catch_up_after
                )
        return await _sweep(installations, "maintenance")

    async def _cron() -> int:
        async with session_factory() as session:
            async with session.begin():
                installations = await sync_service.list_active(session)
        return await _sweep(installations, "cron")

    async def _reconcile() -> int:
        async with session_factory() as session:
            async with session.begin():
                installations = await sync_service.list_active(session)
        changed = 0
        for inst in installations:
            try:
                async with session_factory() as session:
                    async with session.begin():
                        before = inst.sync_status
                        status = await status_service.reconcile(session, inst.id)
                        if cached_sync_status(status.state) != before:
                            changed += 1
            except Exception:
                logger.exception("sync.reconcile_failed", installation_id=str(inst.id))
        return changed

    # -- Build loops (resume first so start() kicks it immediately) --

    resume_loop = EngineLoop("resume", _resume, config.resume_interval)
    resume_loop.trigger = trigger_resume

    catch_up_loop = EngineLoop(
        "catch_up", _catch_up, config.catch_up_interval, downstream=trigger_resume
    )
    cron_loop = EngineLoop("cron", _cron, config.cron_interval, downstream=trigger_resume)
    reconcile_loop = EngineLoop("reconcile", _reconcile, config.reconcile_interval)

    return Scheduler([resume_loop, catch_up_loop, cron_loop, reconcile_loop])
