"""Data models for the ingestion orchestrator."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from gitpulse.core.config import env_float, env_int
from gitpulse.engines.github.models import TimelinePage


class TimelineClient(Protocol):
    """Anything that can fetch one page of repository activity."""

    async def fetch_timeline_page(
        self,
        repo_full_name: str,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
        cursor: str | None = None,
    ) -> TimelinePage: ...


@dataclass(frozen=True)
class OrchestratorConfig:
    min_budget: int = 100
    blocked_delay: timedelta = timedelta(minutes=5)
    stale_after: timedelta = timedelta(minutes=15)
    resume_limit: int = 20
    max_concurrency: int = 5

    @classmethod
    def from_env(cls) -> OrchestratorConfig:
        d = cls()
        return cls(
            min_budget=env_int("INGEST_MIN_BUDGET", d.min_budget),
            blocked_delay=timedelta(
                seconds=env_float("INGEST_BLOCKED_DELAY_SECONDS", d.blocked_delay.total_seconds())
            ),
            stale_after=timedelta(
                seconds=env_float("INGEST_STALE_AFTER_SECONDS", d.stale_after.total_seconds())
            ),
            resume_limit=env_int("INGEST_RESUME_LIMIT", d.resume_limit),
            max_concurrency=env_int("INGEST_MAX_CONCURRENCY", d.max_concurrency),
        )


@dataclass
class PageStats:
    """Per-page persistence counters."""

    inserted: int = 0
    duplicates: int = 0
    skipped: int = 0
    errors: int = 0


@dataclass
class JobOutcome:
    """Summary of one ``run_job`` call.

    ``status`` is the job status when the call returned. ``next_job_id`` is
    set when finishing this job promoted the next repository of the batch.
    """

    job_id: uuid.UUID
    status: str = "running"
    pages: int = 0
    events_ingested: int = 0
    duplicates: int = 0
    skipped: int = 0
    item_errors: int = 0
    blocked_until: datetime | None = None
    error: str | None = None
    next_job_id: uuid.UUID | None = None
    batch_status: str | None = None
