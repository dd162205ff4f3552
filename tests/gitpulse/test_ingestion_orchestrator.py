"""Tests for IngestionJobOrchestrator against in-memory DAOs (no DB required)."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from gitpulse.engines.github.errors import (
    GitHubAPIError,
    GitHubAuthError,
    GitHubRateLimitError,
    RepositoryUnavailableError,
)
from gitpulse.engines.ingestion import IngestionJobOrchestrator, OrchestratorConfig
from gitpulse.engines.rate_limit import AdaptiveRateLimiter, RateLimiterConfig, RateLimiterRegistry
from gitpulse.services import ConflictError, ValidationError

REPOS = ["acme/api", "acme/web", "acme/docs"]


@pytest.fixture
def orchestrator(installation_dao, batch_dao, job_dao, fact_service, clock):
    return IngestionJobOrchestrator(
        installation_dao, batch_dao, job_dao, fact_service, OrchestratorConfig(), clock=clock
    )


@pytest.fixture
def limiters():
    config = RateLimiterConfig(jitter=0.0)
    return RateLimiterRegistry(
        config, factory=lambda key: AdaptiveRateLimiter(config, name=key, sleep=AsyncMock())
    )


@pytest.fixture
def start_batch(orchestrator, store, session_factory, clock):
    async def _start(repos=None, trigger="manual", **overrides):
        inst = store.add_installation(repositories=list(repos or REPOS), **overrides)
        batch, job = await orchestrator.create_batch(
            session_factory(),
            inst,
            trigger,
            inst.repositories,
            since=clock() - timedelta(days=30),
        )
        return inst, batch, job

    return _start


def _one_page(make_page, make_item, repo, *numbers):
    return [make_page([make_item(n, repo=repo) for n in numbers])]


# ── create_batch ──────────────────────────────────────────────────────────


class TestCreateBatch:
    async def test_first_job_running_rest_pending(self, start_batch, store):
        inst, batch, first = await start_batch()
        jobs = store.jobs_for_batch(batch.id)

        assert batch.status == "running"
        assert batch.total_repos == 3
        assert [j.repo_full_name for j in jobs] == REPOS
        assert first.status == "running"
        assert first.repos_remaining == ["acme/web", "acme/docs"]
        assert [j.status for j in jobs[1:]] == ["pending", "pending"]

    async def test_second_batch_conflicts(self, start_batch, orchestrator, store, session_factory):
        inst, _, _ = await start_batch()
        with pytest.raises(ConflictError, match="already_syncing"):
            await orchestrator.create_batch(session_factory(), inst, "cron", REPOS)
        assert len(store.batches) == 1

    async def test_duplicate_repos_collapse(self, start_batch, store):
        _, batch, _ = await start_batch(repos=["acme/api", "acme/api", "acme/web"])
        assert batch.total_repos == 2
        assert len(store.jobs_for_batch(batch.id)) == 2

    async def test_no_repos_rejected(self, orchestrator, store, session_factory):
        inst = store.add_installation(repositories=[])
        with pytest.raises(ValidationError):
            await orchestrator.create_batch(session_factory(), inst, "manual", [])
        assert store.batches == {}


# ── run_batch ─────────────────────────────────────────────────────────────


class TestRunBatch:
    async def test_all_repos_complete(
        self, start_batch, orchestrator, session_factory, limiter, make_client, make_page,
        make_item, store, clock,
    ):
        inst, batch, job = await start_batch()
        client = make_client(
            {
                "acme/api": _one_page(make_page, make_item, "acme/api", 1, 2),
                "acme/web": _one_page(make_page, make_item, "acme/web", 3),
                "acme/docs": _one_page(make_page, make_item, "acme/docs", 4, 5, 6),
            }
        )

        outcomes = await orchestrator.run_batch(session_factory, job.id, client, limiter)

        assert [o.status for o in outcomes] == ["completed"] * 3
        assert [repo for repo, _ in client.calls] == REPOS
        assert batch.status == "completed"
        assert (batch.completed_repos, batch.failed_repos) == (3, 0)
        assert batch.events_ingested == 6
        assert outcomes[-1].batch_status == "completed"
        assert all(j.progress == 100 for j in store.jobs_for_batch(batch.id))
        assert inst.last_synced_at == clock()
        assert inst.sync_status == "idle"

    async def test_partial_failure_still_completes(
        self, start_batch, orchestrator, session_factory, limiter, make_client, make_page,
        make_item, store,
    ):
        inst, batch, job = await start_batch()
        client = make_client(
            {
                "acme/api": _one_page(make_page, make_item, "acme/api", 1),
                "acme/web": [RepositoryUnavailableError(404, "Not Found")],
                "acme/docs": _one_page(make_page, make_item, "acme/docs", 2),
            }
        )

        outcomes = await orchestrator.run_batch(session_factory, job.id, client, limiter)

        assert [o.status for o in outcomes] == ["completed", "failed", "completed"]
        assert batch.status == "completed"
        assert (batch.completed_repos, batch.failed_repos) == (2, 1)
        web = store.jobs_for_batch(batch.id)[1]
        assert "repository unavailable (404)" in web.error_message
        assert inst.sync_status == "idle"

    async def test_every_repo_failing_fails_batch(
        self, start_batch, orchestrator, session_factory, limiter, make_client
    ):
        inst, batch, job = await start_batch(repos=["acme/gone"])
        client = make_client({"acme/gone": [RepositoryUnavailableError(410, "Gone")]})

        outcomes = await orchestrator.run_batch(session_factory, job.id, client, limiter)

        assert outcomes[-1].batch_status == "failed"
        assert batch.status == "failed"
        assert inst.sync_status == "error"
        assert "repository unavailable" in inst.last_sync_error
        assert inst.last_synced_at is None

    async def test_auth_error_fails_job_and_advances(
        self, start_batch, orchestrator, session_factory, limiter, make_client, make_page,
        make_item, store,
    ):
        _, batch, job = await start_batch()
        client = make_client(
            {
                "acme/api": [GitHubAuthError(401, "Bad credentials")],
                "acme/web": _one_page(make_page, make_item, "acme/web", 1),
                "acme/docs": _one_page(make_page, make_item, "acme/docs", 2),
            }
        )

        outcomes = await orchestrator.run_batch(session_factory, job.id, client, limiter)

        assert outcomes[0].status == "failed"
        assert "authentication failed" in store.jobs[job.id].error_message
        assert (batch.completed_repos, batch.failed_repos) == (2, 1)

    async def test_item_errors_do_not_abort_page(
        self, start_batch, orchestrator, session_factory, limiter, make_client, make_page,
        make_item,
    ):
        _, batch, job = await start_batch(repos=["acme/api"])
        items = [make_item(1), make_item(2, title="EXPLODE"), make_item(3), make_item(4, user=None)]
        client = make_client({"acme/api": [make_page(items)]})

        [outcome] = await orchestrator.run_batch(session_factory, job.id, client, limiter)

        assert outcome.status == "completed"
        assert outcome.item_errors == 1
        assert outcome.skipped == 1
        assert outcome.events_ingested == 2
        assert batch.events_ingested == 2

    async def test_rerun_reports_duplicates(
        self, start_batch, orchestrator, session_factory, limiter, make_client, make_page,
        make_item, store,
    ):
        inst, _, job = await start_batch(repos=["acme/api"])
        items = [make_item(1), make_item(2)]
        await orchestrator.run_batch(
            session_factory, job.id, make_client({"acme/api": [make_page(items)]}), limiter
        )

        _, second_job = await orchestrator.create_batch(
            session_factory(), inst, "cron", ["acme/api"]
        )
        [outcome] = await orchestrator.run_batch(
            session_factory, second_job.id, make_client({"acme/api": [make_page(items)]}), limiter
        )

        assert outcome.events_ingested == 0
        assert outcome.duplicates == 2

    async def test_terminal_job_is_noop(
        self, start_batch, orchestrator, session_factory, limiter, make_client
    ):
        _, _, job = await start_batch(repos=["acme/api"])
        await orchestrator.run_batch(session_factory, job.id, make_client(), limiter)

        client = make_client()
        outcome = await orchestrator.run_job(session_factory, job.id, client, limiter)

        assert outcome.status == "completed"
        assert client.calls == []

    async def test_deactivated_installation_cancels_batch(
        self, start_batch, orchestrator, session_factory, limiter, make_client, store
    ):
        inst, batch, job = await start_batch()
        inst.status = "suspended"
        client = make_client()

        outcomes = await orchestrator.run_batch(session_factory, job.id, client, limiter)

        assert [o.status for o in outcomes] == ["failed"]
        assert client.calls == []
        assert {j.status for j in store.jobs_for_batch(batch.id)} == {"failed"}
        assert batch.status == "failed"
        assert (batch.completed_repos, batch.failed_repos) == (0, 3)


# ── blocking and resumption ───────────────────────────────────────────────


class TestBlocking:
    async def test_transient_error_blocks_and_resumes_from_cursor(
        self, start_batch, orchestrator, session_factory, limiters, make_client, make_page,
        make_item, store, clock,
    ):
        inst, batch, job = await start_batch(repos=["acme/api"])
        client = make_client(
            {
                "acme/api": [
                    make_page([make_item(1), make_item(2)], cursor="page-2", total=3),
                    GitHubAPIError(None, "timeout fetching acme/api"),
                    make_page([make_item(3)]),
                ]
            }
        )

        [outcome] = await orchestrator.run_batch(
            session_factory, job.id, client, limiters.get(inst.id)
        )

        stored = store.jobs[job.id]
        assert outcome.status == "blocked"
        assert stored.status == "blocked"
        assert stored.cursor == "page-2"
        assert stored.items_processed == 2
        assert stored.progress == 66
        assert stored.blocked_until == clock() + timedelta(minutes=5)
        assert "timeout" in stored.error_message

        # not due yet
        assert await orchestrator.resume_due_jobs(session_factory, client, limiters) == 0

        clock.advance(minutes=6)
        resumed = await orchestrator.resume_due_jobs(session_factory, client, limiters)

        assert resumed == 1
        assert stored.status == "completed"
        assert stored.events_ingested == 3
        assert client.calls == [("acme/api", None), ("acme/api", "page-2"), ("acme/api", "page-2")]
        assert batch.status == "completed"
        assert inst.last_synced_at == clock()

    async def test_low_budget_blocks_until_reset(
        self, start_batch, orchestrator, session_factory, limiter, make_client, make_page,
        make_item, store, clock,
    ):
        inst, _, job = await start_batch(repos=["acme/api"])
        reset = clock() + timedelta(minutes=10)
        client = make_client(
            {
                "acme/api": [
                    make_page([make_item(1)], cursor="page-2", remaining=50, reset=reset),
                    make_page([make_item(2)]),
                ]
            }
        )

        [outcome] = await orchestrator.run_batch(session_factory, job.id, client, limiter)

        assert outcome.status == "blocked"
        assert outcome.blocked_until == reset
        assert store.jobs[job.id].cursor == "page-2"
        assert inst.rate_limit_remaining == 50
        assert len(client.calls) == 1

    async def test_next_repo_checks_installation_budget(
        self, start_batch, orchestrator, session_factory, limiter, make_client, make_page,
        make_item, store, clock,
    ):
        inst, batch, job = await start_batch(repos=["acme/api", "acme/web"])
        reset = clock() + timedelta(minutes=10)
        client = make_client(
            {
                "acme/api": [make_page([make_item(1)], remaining=50, reset=reset)],
                "acme/web": [make_page([make_item(2, repo="acme/web")])],
            }
        )

        outcomes = await orchestrator.run_batch(session_factory, job.id, client, limiter)

        assert [o.status for o in outcomes] == ["completed", "blocked"]
        assert client.calls == [("acme/api", None)]
        web = store.jobs_for_batch(batch.id)[1]
        assert web.status == "blocked"
        assert web.blocked_until == reset
        assert batch.status == "running"
        assert inst.rate_limit_remaining == 50

    async def test_installation_budget_after_reset_allows_fetch(
        self, start_batch, orchestrator, session_factory, limiter, make_client, make_page,
        make_item, clock,
    ):
        inst, _, job = await start_batch(repos=["acme/api"])
        inst.rate_limit_remaining = 10
        inst.rate_limit_reset = clock() - timedelta(minutes=1)
        client = make_client({"acme/api": [make_page([make_item(1)])]})

        [outcome] = await orchestrator.run_batch(session_factory, job.id, client, limiter)

        assert outcome.status == "completed"
        assert client.calls == [("acme/api", None)]

    async def test_rate_limit_error_blocks_until_provider_reset(
        self, start_batch, orchestrator, session_factory, limiter, make_client, store, clock
    ):
        inst, _, job = await start_batch(repos=["acme/api"])
        reset_at = clock() + timedelta(minutes=20)
        client = make_client(
            {"acme/api": [GitHubRateLimitError(403, "API rate limit exceeded", reset_at=reset_at)]}
        )

        [outcome] = await orchestrator.run_batch(session_factory, job.id, client, limiter)

        assert outcome.status == "blocked"
        assert store.jobs[job.id].blocked_until == reset_at
        assert inst.rate_limit_remaining == 0
        assert inst.rate_limit_reset == reset_at
        assert limiter.metrics.rate_limit_hits == 1

    async def test_open_circuit_blocks_without_calling(
        self, start_batch, orchestrator, session_factory, make_client, store
    ):
        limiter = AdaptiveRateLimiter(
            RateLimiterConfig(circuit_breaker_threshold=1, jitter=0.0), sleep=AsyncMock()
        )
        with pytest.raises(GitHubRateLimitError):
            await limiter.execute(AsyncMock(side_effect=GitHubRateLimitError(429, "slow down")))
        assert limiter.circuit_open

        _, _, job = await start_batch(repos=["acme/api"])
        client = make_client()
        [outcome] = await orchestrator.run_batch(session_factory, job.id, client, limiter)

        assert outcome.status == "blocked"
        assert client.calls == []
        assert store.jobs[job.id].blocked_until is not None

    async def test_orphaned_running_job_is_reclaimed(
        self, start_batch, orchestrator, session_factory, limiters, make_client, make_page,
        make_item, store, clock,
    ):
        _, batch, job = await start_batch(repos=["acme/api"])
        client = make_client({"acme/api": [make_page([make_item(1)])]})

        clock.advance(minutes=10)
        assert await orchestrator.resume_due_jobs(session_factory, client, limiters) == 0

        clock.advance(minutes=6)
        assert await orchestrator.resume_due_jobs(session_factory, client, limiters) == 1
        assert store.jobs[job.id].status == "completed"
        assert batch.status == "completed"
